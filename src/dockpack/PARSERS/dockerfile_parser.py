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
Parser for Dockerfiles, extracting instructions and their arguments.
"""
import json
import re
import shlex
from typing import List

from ..MODELS.dockerfile_ast import Instruction


class DockerfileParser:
    """
    Parser for Dockerfile instructions.
    """
    def parse(self, dockerfile_path: str) -> List[Instruction]:
        """
        Parses a Dockerfile from a file path.

        Args:
            dockerfile_path (str): Path to the Dockerfile.

        Returns:
            List[Instruction]: List of parsed instructions.
        """
        with open(dockerfile_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> List[Instruction]:
        """
        Parses a Dockerfile from a string content.

        Args:
            content (str): Content of the Dockerfile.

        Returns:
            List[Instruction]: List of parsed instructions.
        """
        instructions = []

        # Comments first, then line continuations
        content = re.sub(r'^\s*#.*$', '', content, flags=re.MULTILINE)
        content = re.sub(r'\\\s*\n', ' ', content)

        pattern = re.compile(r'^\s*([A-Za-z]+)\s+(.*)$', re.MULTILINE)

        for match in pattern.finditer(content):
            inst = match.group(1).upper()
            args_str = match.group(2).strip()

            flags = []
            while args_str.startswith('--'):
                flag, _, args_str = args_str.partition(' ')
                flags.append(flag)
                args_str = args_str.strip()

            if args_str.startswith('[') and args_str.endswith(']'):
                try:
                    args = [str(a) for a in json.loads(args_str)]
                except json.JSONDecodeError:
                    args = [args_str]
            elif inst in ('COPY', 'ADD'):
                try:
                    args = shlex.split(args_str)
                except ValueError:
                    args = args_str.split()
            elif inst == 'FROM':
                args = args_str.split()
            elif inst == 'ENV' and '=' in args_str:
                args = re.findall(r'(\S+=\S+)', args_str)
            elif inst == 'ENV':
                args = args_str.split(None, 1)
            else:
                args = [args_str]

            instructions.append(Instruction(
                instruction=inst,
                arguments=args,
                flags=flags,
                raw=match.group(0).strip()
            ))

        return instructions

    def copy_sources(self, instructions: List[Instruction]) -> List[str]:
        """
        The first source argument of every COPY and ADD instruction,
        skipping '--' flags.
        """
        return [
            i.first_argument for i in instructions
            if i.instruction in ('COPY', 'ADD') and i.arguments
        ]
