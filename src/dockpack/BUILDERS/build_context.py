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
Build context assembly.

Turns an image configuration into the tar archive sent to the engine's
build endpoint: either a synthesised Dockerfile plus the assembled files, or
a user supplied Dockerfile together with its context directory.
"""

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

from ..ARCHIVE.tar_archiver import ArchiveCompression, TarArchiver
from ..ASSEMBLY.assembly_resolver import AssemblyResolver, permission_map
from ..errors import ArchiveError, ConfigurationError
from ..MODELS.assembly import AssemblyFileEntry, AssemblyFiles
from ..MODELS.image_configuration import (
    AssemblyDescriptor,
    BuildDescription,
    FileSet,
    ImageConfiguration,
)
from ..PARSERS.dockerfile_parser import DockerfileParser
from ..UTILS.string_interpolation import EnvironmentInterpolator
from .dockerfile_builder import DOCKERFILE_NAME, DockerfileBuilder

logger = logging.getLogger(__name__)

ArchiverCustomizer = Callable[[TarArchiver], TarArchiver]

BUILD_ARCHIVE_NAME = "docker-build"
CHANGED_FILES_NAME = "changed-files"
CONTEXT_DIRECTORY_MODE = "0775"


class BuildDirs:
    """
    Per-image working directories below the project output directory::

        <output root>/<image name, ':' as '/'>/build   assembled context
        <output root>/<image name, ':' as '/'>/work    scratch space
        <output root>/<image name, ':' as '/'>/tmp     archives
    """

    def __init__(self, output_root: Union[str, Path], image_name: str):
        top = Path(output_root).absolute()
        for part in image_name.replace(":", "/").split("/"):
            if part and part not in (".", ".."):
                top = top / part
        self.top_directory = top
        self.output_directory = top / "build"
        self.working_directory = top / "work"
        self.temporary_root_directory = top / "tmp"

    def create_dirs(self, clean_output: bool = False) -> "BuildDirs":
        if clean_output and self.output_directory.exists():
            shutil.rmtree(self.output_directory)
        for directory in (self.output_directory, self.working_directory, self.temporary_root_directory):
            directory.mkdir(parents=True, exist_ok=True)
        return self


@dataclass
class BuildContext:
    """The prepared context for one image build."""

    image_name: str
    archive: Path
    dockerfile: str
    entries: List[AssemblyFileEntry] = field(default_factory=list)
    unreferenced_targets: List[str] = field(default_factory=list)


class BuildContextAssembler:
    """
    Prepares build context archives and incremental change archives.
    """

    def __init__(
        self,
        base_dir: Union[str, Path],
        output_root: Union[str, Path],
        properties: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize the assembler.

        Args:
            base_dir: Project directory relative paths are resolved against
            output_root: Directory below which per-image build dirs are created
            properties: Values for ${...} placeholders in user Dockerfiles
        """
        self.base_dir = Path(base_dir).absolute()
        self.output_root = Path(output_root)
        if not self.output_root.is_absolute():
            self.output_root = self.base_dir / self.output_root
        self.properties = dict(properties or {})
        self.parser = DockerfileParser()

    def build_dirs(self, image_name: str) -> BuildDirs:
        return BuildDirs(self.output_root, image_name)

    def create_build_archive(
        self,
        image: ImageConfiguration,
        customizers: Sequence[ArchiverCustomizer] = (),
    ) -> BuildContext:
        """
        Assemble the build context of an image into a tar archive.

        Args:
            image: Image configuration with a build description
            customizers: Archiver customizers applied before writing

        Returns:
            The prepared BuildContext

        Raises:
            ConfigurationError: If there is no build description or the configured Dockerfile is missing.
            ArchiveError: If copying files or writing the archive fails.
        """
        build = self._require_build(image)
        dirs = self.build_dirs(image.name).create_dirs(clean_output=True)
        resolver = AssemblyResolver(self.base_dir, dirs.output_directory, skip_dirs=[self.output_root])
        entries: List[AssemblyFileEntry] = []
        unreferenced: List[str] = []

        if build.is_dockerfile_mode:
            dockerfile = self.resolve_dockerfile(build)
            unreferenced = self.verify_dockerfile(dockerfile, build)
            context_dir = self.resolve_context_dir(build, dockerfile)
            entries.extend(resolver.resolve(self._context_layer(context_dir)))
            for assembly in build.assemblies:
                entries.extend(resolver.resolve(assembly))
            dockerfile_name = self._write_interpolated(dockerfile, context_dir, dirs.output_directory, build)
        else:
            for assembly in build.assemblies:
                entries.extend(resolver.resolve(assembly))
            DockerfileBuilder(build).write(str(dirs.output_directory))
            dockerfile_name = DOCKERFILE_NAME

        compression = ArchiveCompression.parse(build.compression)
        archive = dirs.temporary_root_directory / f"{BUILD_ARCHIVE_NAME}.{compression.file_suffix}"
        archiver = TarArchiver().customize(*customizers)
        archiver.create_archive(
            dirs.output_directory,
            archive,
            compression,
            permission_map(entries, relative_to=dirs.output_directory),
        )
        logger.info("%s: Created build context %s", image.description, archive)
        return BuildContext(
            image_name=image.name,
            archive=archive,
            dockerfile=dockerfile_name,
            entries=entries,
            unreferenced_targets=unreferenced,
        )

    def resolve_dockerfile(self, build: BuildDescription) -> Path:
        path = Path(build.dockerfile)
        if not path.is_absolute():
            base = Path(build.context_dir) if build.context_dir else self.base_dir
            if not base.is_absolute():
                base = self.base_dir / base
            path = base / path
        path = Path(os.path.normpath(path))
        if not path.is_file():
            raise ConfigurationError(
                f"Configured Dockerfile \"{build.dockerfile}\" (resolved to \"{path}\") doesn't exist"
            )
        return path

    def resolve_context_dir(self, build: BuildDescription, dockerfile: Path) -> Path:
        if not build.context_dir:
            return dockerfile.parent
        context = Path(build.context_dir)
        if not context.is_absolute():
            context = self.base_dir / context
        return Path(os.path.normpath(context))

    def verify_dockerfile(self, dockerfile: Path, build: BuildDescription) -> List[str]:
        """
        Check that every assembly is referenced by a COPY or ADD source.

        Unreferenced assemblies are only warned about; the build goes on.

        Returns:
            The target directories of unreferenced assemblies
        """
        sources = self.parser.copy_sources(self.parser.parse(str(dockerfile)))
        missing = []
        for assembly in build.assemblies:
            reference = assembly.id or assembly.target_dir.strip("/")
            if not reference:
                continue
            if not any(reference in source for source in sources):
                logger.warning(
                    "Dockerfile %s does not contain an ADD or COPY directive to include assembly "
                    "created at %s. Ignoring assembly.", dockerfile, assembly.target_dir,
                )
                missing.append(assembly.target_dir)
        return missing

    def get_assembly_files(self, image: ImageConfiguration) -> List[AssemblyFiles]:
        """
        Resolve the assemblies of an image again, one AssemblyFiles per layer,
        each rooted at its layer directory so that entry destinations relative
        to it are the paths inside the image.
        """
        build = self._require_build(image)
        dirs = self.build_dirs(image.name).create_dirs()
        resolver = AssemblyResolver(self.base_dir, dirs.output_directory, skip_dirs=[self.output_root])
        return [resolver.assembly_files(assembly) for assembly in build.assemblies]

    def create_changed_files_archive(
        self,
        entries: List[AssemblyFileEntry],
        assembly_dir: Union[str, Path],
        image_name: str,
    ) -> Path:
        """
        Archive only the given entries, with paths relative to ``assembly_dir``.

        Returns:
            Path of <tmp>/changed-files.tar
        """
        dirs = self.build_dirs(image_name).create_dirs()
        archive_dir = dirs.temporary_root_directory / CHANGED_FILES_NAME
        archive = dirs.temporary_root_directory / f"{CHANGED_FILES_NAME}.tar"
        try:
            if archive_dir.exists():
                shutil.rmtree(archive_dir)
            archive_dir.mkdir(parents=True)
            for entry in entries:
                relative = os.path.relpath(entry.dest, assembly_dir)
                dest = archive_dir / relative
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(entry.source, dest)
        except OSError as e:
            raise ArchiveError(f"Error while creating {archive}", cause=e, context={"error": str(e)}) from e
        return TarArchiver().create_archive(archive_dir, archive, ArchiveCompression.NONE)

    @staticmethod
    def _require_build(image: ImageConfiguration) -> BuildDescription:
        if image.build is None:
            raise ConfigurationError(f"{image.description}: no build configuration")
        return image.build

    @staticmethod
    def _context_layer(context_dir: Path) -> AssemblyDescriptor:
        return AssemblyDescriptor(
            target_dir="/",
            file_sets=[
                FileSet(
                    directory=str(context_dir),
                    output_directory=".",
                    directory_mode=CONTEXT_DIRECTORY_MODE,
                )
            ],
        )

    def _write_interpolated(self, dockerfile: Path, context_dir: Path, output_dir: Path, build: BuildDescription) -> str:
        try:
            relative = dockerfile.relative_to(context_dir)
        except ValueError:
            relative = Path(dockerfile.name)
        target = output_dir / relative
        try:
            content = dockerfile.read_text()
            if build.interpolate:
                content = EnvironmentInterpolator.interpolate(content, self.properties, strict=False)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        except OSError as e:
            raise ArchiveError(f"Cannot write {target}", cause=e) from e
        return relative.as_posix()
