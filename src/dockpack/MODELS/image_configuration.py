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
Models describing the images to build, their assemblies and how they are
run and watched.
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..REGISTRY.image_reference import ImageName


class Arguments(BaseModel):
    """
    A command given either in shell form (single string) or exec form
    (list of arguments). A plain string or list is accepted as input.
    """
    model_config = ConfigDict(populate_by_name=True)

    shell: Optional[str] = None
    exec_args: List[str] = Field(default_factory=list, alias="exec")

    @model_validator(mode="before")
    @classmethod
    def _from_plain(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"shell": value}
        if isinstance(value, (list, tuple)):
            return {"exec": [str(v) for v in value]}
        return value

    @property
    def is_exec(self) -> bool:
        return not self.shell and bool(self.exec_args)

    def is_empty(self) -> bool:
        return not self.shell and not self.exec_args

    def as_strings(self) -> List[str]:
        """Arguments as a list, wrapping shell form in ``sh -c``."""
        if self.shell:
            return ["sh", "-c", self.shell]
        return list(self.exec_args)


class HealthCheckMode(str, Enum):
    """
    How the image health check is declared.
    """
    CMD = "cmd"
    NONE = "none"


class HealthCheckConfiguration(BaseModel):
    """
    HEALTHCHECK instruction settings. Durations use the engine notation (e.g. '5s').
    """
    mode: HealthCheckMode = HealthCheckMode.CMD
    cmd: Optional[Arguments] = None
    interval: Optional[str] = None
    timeout: Optional[str] = None
    start_period: Optional[str] = None
    retries: Optional[int] = None


class FileSet(BaseModel):
    """
    A directory to copy into an assembly, filtered by include/exclude globs.

    ``output_directory`` left unset nests the directory under its own name in
    the target; '.' copies its contents directly into the target.
    """
    directory: str
    output_directory: Optional[str] = None
    includes: List[str] = []
    excludes: List[str] = []
    file_mode: Optional[str] = None
    directory_mode: Optional[str] = None


class FileEntry(BaseModel):
    """
    A single file to copy into an assembly.
    """
    source: str
    output_directory: Optional[str] = None
    dest_name: Optional[str] = None
    file_mode: Optional[str] = None


class AssemblyDescriptor(BaseModel):
    """
    One assembly layer. Each layer becomes its own COPY instruction, in
    declaration order; the layer without ``id`` is the default layer.
    """
    id: Optional[str] = None
    target_dir: str = "/deployments"
    user: Optional[str] = None
    file_mode: Optional[str] = None
    directory_mode: Optional[str] = None
    file_sets: List[FileSet] = []
    files: List[FileEntry] = []

    @field_validator("target_dir")
    @classmethod
    def _absolute_target(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError(f"target_dir '{value}' must be an absolute path")
        if len(value) > 1:
            value = value.rstrip("/")
        return value


class BuildDescription(BaseModel):
    """
    Structural description of an image build.
    Either synthesised into a Dockerfile or driven by an explicit one.
    """
    from_image: Optional[str] = None
    maintainer: Optional[str] = None
    env: Dict[str, str] = {}
    labels: Dict[str, str] = {}
    ports: List[str] = []
    volumes: List[str] = []
    run_commands: List[str] = []
    optimise: bool = False
    entry_point: Optional[Arguments] = None
    cmd: Optional[Arguments] = None
    shell: Optional[Arguments] = None
    health_check: Optional[HealthCheckConfiguration] = None
    user: Optional[str] = None
    workdir: Optional[str] = None
    assemblies: List[AssemblyDescriptor] = []
    export_target_dir: bool = True

    dockerfile: Optional[str] = None
    context_dir: Optional[str] = None
    interpolate: bool = True

    tags: List[str] = []
    compression: str = "none"
    build_args: Dict[str, str] = {}
    no_cache: bool = False
    platform: Optional[str] = None

    @field_validator("ports", mode="before")
    @classmethod
    def _ports_as_strings(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [str(v) for v in value]
        return value

    @property
    def is_dockerfile_mode(self) -> bool:
        return self.dockerfile is not None


class WatchMode(str, Enum):
    """
    What the watch loop does when an image's sources change.
    """
    BOTH = "both"
    BUILD = "build"
    RUN = "run"
    COPY = "copy"
    NONE = "none"

    @property
    def is_build(self) -> bool:
        return self in (WatchMode.BOTH, WatchMode.BUILD)

    @property
    def is_run(self) -> bool:
        return self in (WatchMode.BOTH, WatchMode.RUN)

    @property
    def is_copy(self) -> bool:
        return self == WatchMode.COPY


class WatchDescription(BaseModel):
    """
    Per-image watch overrides.
    """
    interval: Optional[float] = None
    mode: Optional[WatchMode] = None
    post_exec: Optional[str] = None
    # host command run after a rebuild
    post_goal: Optional[str] = None


class RunDescription(BaseModel):
    """
    How the watch loop (re)creates a container for the image.
    """
    container_name: Optional[str] = None
    ports: List[str] = []
    env: Dict[str, str] = {}
    cmd: Optional[Arguments] = None


class ImageConfiguration(BaseModel):
    """
    An image to build and publish.
    """
    name: str
    alias: Optional[str] = None
    registry: Optional[str] = None
    build: Optional[BuildDescription] = None
    run: RunDescription = Field(default_factory=RunDescription)
    watch: WatchDescription = Field(default_factory=WatchDescription)

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: str) -> str:
        ImageName.parse(value)
        return value

    @property
    def image_name(self) -> ImageName:
        return ImageName.parse(self.name)

    @property
    def description(self) -> str:
        if self.alias:
            return f"[{self.name}] \"{self.alias}\""
        return f"[{self.name}]"
