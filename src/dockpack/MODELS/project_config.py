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
Top-level project configuration as loaded from dockpack.yml.
"""
from typing import List, Optional

from pydantic import BaseModel, Field

from .auth_config import RegistryConfig
from .image_configuration import ImageConfiguration, WatchMode

DEFAULT_DOCKER_HOST = "unix:///var/run/docker.sock"


class EngineSettings(BaseModel):
    """
    Connection to the container engine.
    """
    host: Optional[str] = None
    api_version: Optional[str] = None
    timeout: float = 60.0


class WatchSettings(BaseModel):
    """
    Defaults for the watch loop.
    """
    interval: float = 5.0
    mode: WatchMode = WatchMode.BOTH
    post_exec: Optional[str] = None


class ProjectConfiguration(BaseModel):
    """
    Everything needed to build, push, pull and watch a project's images.
    """
    base_dir: str = "."
    output_dir: str = "target/docker"
    images: List[ImageConfiguration] = []
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    watch: WatchSettings = Field(default_factory=WatchSettings)
    pull_policy: Optional[str] = None
    retries: int = 0
    skip_tag: bool = False
