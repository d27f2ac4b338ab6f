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
Expands assembly descriptors into concrete file entries.

Matched files are copied into the build output directory while they are
resolved, so the output directory ends up holding exactly the tree that is
archived into the build context.
"""

import logging
import os
import shutil
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from ..errors import ArchiveError
from ..MODELS.assembly import AssemblyFileEntry, AssemblyFiles
from ..MODELS.image_configuration import AssemblyDescriptor, FileEntry, FileSet
from .glob_matcher import GlobMatcher, matches_any, normalize

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# r-x for everyone, no write: assembled directories are not meant to be modified
DEFAULT_DIRECTORY_MODE = "040111"
SELF_PATH = "."


class AssemblyResolver:
    """
    Resolves assembly descriptors against a project base directory, copying
    the selected files below an output directory.

    Layout of the output directory::

        <output>/<layer id>/<target dir>/...   (layer with an id)
        <output>/<target dir>/...              (default layer)
    """

    def __init__(self, base_dir: PathLike, output_dir: PathLike, skip_dirs: Sequence[PathLike] = ()):
        """
        Initialize the resolver.

        Args:
            base_dir: Directory relative source paths are resolved against
            output_dir: Directory receiving the assembled files
            skip_dirs: Further directories never taken into an assembly
        """
        self.base_dir = Path(base_dir).absolute()
        self.output_dir = Path(output_dir).absolute()
        self.skip_dirs = [self.output_dir] + [Path(d).absolute() for d in skip_dirs]

    def layer_root(self, descriptor: AssemblyDescriptor) -> Path:
        if descriptor.id and descriptor.id.strip():
            return self.output_dir / descriptor.id
        return self.output_dir

    def target_directory(self, descriptor: AssemblyDescriptor) -> Path:
        return self.layer_root(descriptor) / descriptor.target_dir.lstrip("/")

    def resolve(self, descriptor: AssemblyDescriptor) -> List[AssemblyFileEntry]:
        """
        Resolve all file sets and files of a descriptor.

        Args:
            descriptor: Assembly layer to resolve

        Returns:
            Entries in resolution order, without duplicate destinations
        """
        ordered: Dict[Path, AssemblyFileEntry] = {}
        for file_set in descriptor.file_sets:
            for entry in self.resolve_file_set(file_set, descriptor):
                ordered.setdefault(entry.dest, entry)
        for file_entry in descriptor.files:
            entry = self.resolve_file_entry(file_entry, descriptor)
            ordered.setdefault(entry.dest, entry)
        return list(ordered.values())

    def assembly_files(self, descriptor: AssemblyDescriptor) -> AssemblyFiles:
        """Resolve a descriptor into an AssemblyFiles rooted at its layer directory."""
        files = AssemblyFiles(assembly_directory=self.layer_root(descriptor), layer_id=descriptor.id)
        for entry in self.resolve(descriptor):
            files.add_entry(entry)
        return files

    def resolve_source_directory(self, file_set: FileSet) -> Path:
        directory = Path(file_set.directory)
        if not directory.is_absolute():
            directory = self.base_dir / directory
        return Path(os.path.normpath(directory))

    def destination_directory(self, file_set: FileSet, source_dir: Path, descriptor: AssemblyDescriptor) -> Path:
        target = self.target_directory(descriptor)
        output = file_set.output_directory
        if output is None:
            return target / source_dir.name
        if output.startswith("/"):
            return self.layer_root(descriptor) / output.lstrip("/")
        if normalize(output) == "":
            return target
        return target / normalize(output)

    def resolve_file_set(self, file_set: FileSet, descriptor: AssemblyDescriptor) -> List[AssemblyFileEntry]:
        """
        Copy the files of one file set and return their entries.

        A source directory that does not exist contributes nothing. A path is
        taken when it matches an include (no includes means everything) and
        no exclude; a matched directory brings its whole subtree, minus
        excluded paths.
        """
        source_dir = self.resolve_source_directory(file_set)
        if not source_dir.is_dir():
            logger.debug("Skipping missing file set directory %s", source_dir)
            return []

        dest_dir = self.destination_directory(file_set, source_dir, descriptor)
        directory_mode = file_set.directory_mode or descriptor.directory_mode or DEFAULT_DIRECTORY_MODE
        file_mode = file_set.file_mode or descriptor.file_mode
        includes = [
            GlobMatcher("**" if not inc or inc == SELF_PATH else inc)
            for inc in (file_set.includes or [SELF_PATH])
        ]
        excludes = [GlobMatcher(exc) for exc in file_set.excludes]
        collected: Dict[Path, AssemblyFileEntry] = {}

        def excluded(path: Path) -> bool:
            return matches_any(excludes, self._relative(source_dir, path))

        def copy(source: Path, dest: Path) -> None:
            if dest in collected or self._is_output(source) or excluded(source):
                return
            if source.is_dir():
                dest.mkdir(parents=True, exist_ok=True)
                collected[dest] = AssemblyFileEntry(source, dest, directory_mode)
                for child in sorted(os.listdir(source)):
                    copy(source / child, dest / child)
            elif source.exists():
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, dest)
                collected[dest] = AssemblyFileEntry(source, dest, file_mode)

        try:
            for root, dirs, files in os.walk(source_dir):
                root_path = Path(root)
                dirs.sort()
                dirs[:] = [
                    d for d in dirs
                    if not excluded(root_path / d) and not self._is_output(root_path / d)
                ]
                for path in [root_path] + [root_path / f for f in sorted(files)]:
                    rel = self._relative(source_dir, path)
                    if matches_any(includes, rel):
                        copy(path, dest_dir / rel if rel else dest_dir)
        except OSError as e:
            raise ArchiveError(
                f"Cannot copy file set {file_set.directory}", cause=e, context={"error": str(e)}
            ) from e
        return list(collected.values())

    def resolve_file_entry(self, file_entry: FileEntry, descriptor: AssemblyDescriptor) -> AssemblyFileEntry:
        """
        Copy a single file into the assembly.

        Raises:
            ArchiveError: If the source file cannot be copied.
        """
        source = Path(file_entry.source)
        if not source.is_absolute():
            source = self.base_dir / source
        source = Path(os.path.normpath(source))

        target = self.target_directory(descriptor)
        output = file_entry.output_directory
        if output is None or normalize(output) == "":
            out_dir = target
        elif output.startswith("/"):
            out_dir = self.layer_root(descriptor) / output.lstrip("/")
        else:
            out_dir = target / normalize(output)
        dest = out_dir / (file_entry.dest_name or source.name)

        try:
            out_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)
        except OSError as e:
            raise ArchiveError(
                f"Cannot copy assembly file {file_entry.source}", cause=e, context={"error": str(e)}
            ) from e
        return AssemblyFileEntry(source, dest, file_entry.file_mode or descriptor.file_mode)

    def _is_output(self, path: Path) -> bool:
        return any(path == skip or skip in path.parents for skip in self.skip_dirs)

    @staticmethod
    def _relative(base: Path, path: Path) -> str:
        return normalize(os.path.relpath(path, base).replace(os.sep, "/"))


def permission_map(entries: List[AssemblyFileEntry], relative_to: Optional[PathLike] = None) -> Dict[str, str]:
    """
    Map destinations to their permission, leaving out entries without one.

    Args:
        entries: Resolved entries
        relative_to: Directory to make destinations relative to (archive paths)

    Returns:
        Destination -> permission mode
    """
    result: Dict[str, str] = {}
    for entry in entries:
        if not entry.file_mode:
            continue
        key = entry.dest
        if relative_to is not None:
            key = Path(os.path.relpath(entry.dest, relative_to))
        result[key.as_posix()] = entry.file_mode
    return result
