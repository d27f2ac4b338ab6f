# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Models for parsed Dockerfile instructions.
"""
from typing import List
from pydantic import BaseModel

class Instruction(BaseModel):
    """
    A single Dockerfile instruction.

    ``flags`` holds leading '--option' arguments (e.g. '--chown=app'),
    ``arguments`` the remaining ones.
    """
    instruction: str
    arguments: List[str]
    flags: List[str] = []
    raw: str

    @property
    def first_argument(self) -> str:
        return self.arguments[0] if self.arguments else ""
