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
Tar archive creation for build contexts.

Archives are written entry by entry in the order given, owned by root with
empty owner names, and compressed without embedding a timestamp so that the
same file tree always gives the same bytes.
"""

import bz2
import gzip
import logging
import os
import tarfile
import tempfile
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from ..errors import ArchiveError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
EntryCustomizer = Callable[[tarfile.TarInfo], Optional[tarfile.TarInfo]]

USTAR_NAME_LIMIT = 100
ARCHIVE_FILE_MODE = 0o644


class ArchiveCompression(str, Enum):
    """Compression applied to the whole tar stream."""

    NONE = "none"
    GZIP = "gzip"
    BZIP2 = "bzip2"

    @property
    def file_suffix(self) -> str:
        return {
            ArchiveCompression.NONE: "tar",
            ArchiveCompression.GZIP: "tar.gz",
            ArchiveCompression.BZIP2: "tar.bz2",
        }[self]

    @classmethod
    def parse(cls, value: Union[str, "ArchiveCompression", None]) -> "ArchiveCompression":
        if value is None:
            return cls.NONE
        if isinstance(value, cls):
            return value
        aliases = {"": cls.NONE, "gz": cls.GZIP, "tgz": cls.GZIP, "bz2": cls.BZIP2}
        lowered = str(value).lower()
        if lowered in aliases:
            return aliases[lowered]
        try:
            return cls(lowered)
        except ValueError as e:
            raise ArchiveError(f"Unknown compression '{value}'", cause=e) from e


class LongFileMode(str, Enum):
    """How entry names longer than the classic tar limit are stored."""

    POSIX = "posix"
    GNU = "gnu"
    TRUNCATE = "truncate"
    ERROR = "error"

    @property
    def tar_format(self) -> int:
        if self == LongFileMode.POSIX:
            return tarfile.PAX_FORMAT
        if self == LongFileMode.GNU:
            return tarfile.GNU_FORMAT
        return tarfile.USTAR_FORMAT


def parse_mode(mode: str) -> int:
    """
    Parse an octal permission string such as '0644' or '040755'.

    Only the permission bits are kept; a leading file type part is dropped.
    """
    try:
        return int(mode, 8) & 0o7777
    except (TypeError, ValueError) as e:
        raise ArchiveError(f"Invalid permission mode '{mode}'", cause=e) from e


class TarArchiver:
    """
    Writes tar archives from an ordered list of files and directories.

    Additional files can be included, archive paths excluded and permissions
    overridden before calling one of the ``create_*`` methods. Entry
    customizers receive every ``TarInfo`` and may return a modified copy, or
    None to drop the entry.
    """

    def __init__(self, long_file_mode: LongFileMode = LongFileMode.POSIX):
        self.long_file_mode = long_file_mode
        self._included: List[Tuple[Path, str]] = []
        self._file_modes: Dict[str, str] = {}
        self._excluded: set = set()
        self._entry_customizers: List[EntryCustomizer] = []

    def include_file(self, source: PathLike, dest_name: str) -> "TarArchiver":
        """Add ``source`` to the archive under ``dest_name``."""
        self._included.append((Path(source), dest_name.lstrip("/")))
        return self

    def set_file_mode(self, archive_path: str, mode: str) -> "TarArchiver":
        self._file_modes[archive_path.strip("/")] = mode
        return self

    def exclude_file(self, archive_path: str) -> "TarArchiver":
        self._excluded.add(archive_path.strip("/"))
        return self

    def add_entry_customizer(self, customizer: EntryCustomizer) -> "TarArchiver":
        self._entry_customizers.append(customizer)
        return self

    def customize(self, *customizers: Callable[["TarArchiver"], "TarArchiver"]) -> "TarArchiver":
        """Apply archiver customizers in order, each returning the archiver to continue with."""
        archiver = self
        for customizer in customizers:
            archiver = customizer(archiver)
        return archiver

    def create_archive(
        self,
        input_dir: PathLike,
        output_file: PathLike,
        compression: Union[str, ArchiveCompression] = ArchiveCompression.NONE,
        file_modes: Optional[Dict[str, str]] = None,
    ) -> Path:
        """
        Archive a whole directory tree.

        Args:
            input_dir: Directory whose contents become the archive root
            output_file: Archive to write
            compression: Compression mode
            file_modes: Archive path -> permission overrides

        Returns:
            Path of the written archive
        """
        base = Path(input_dir)
        files = list(walk_sorted(base)) if base.is_dir() else []
        return self.create_tarball(output_file, base, files, compression, file_modes)

    def create_tarball(
        self,
        output_file: PathLike,
        base_dir: PathLike,
        files: Iterable[PathLike],
        compression: Union[str, ArchiveCompression] = ArchiveCompression.NONE,
        file_modes: Optional[Dict[str, str]] = None,
    ) -> Path:
        """
        Write ``files`` (absolute, or relative to ``base_dir``) in the given
        order. Directories are stored as single entries, not recursed into.

        The archive is written next to ``output_file`` and moved into place
        once complete. On failure nothing is left behind and an existing
        ``output_file`` keeps its previous content.

        Raises:
            ArchiveError: On any I/O failure.
        """
        output = Path(output_file)
        base = Path(base_dir)
        comp = ArchiveCompression.parse(compression)
        modes = dict(self._file_modes)
        for key, value in (file_modes or {}).items():
            modes[str(key).strip("/")] = value

        entries: List[Tuple[Path, str]] = []
        for item in files:
            path = Path(item)
            if not path.is_absolute():
                path = base / path
            entries.append((path, _relative_name(path, base)))
        entries.extend(self._included)

        try:
            output.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{output.name}.", suffix=".tmp", dir=str(output.parent)
            )
        except OSError as e:
            raise ArchiveError(f"Cannot create archive {output}", cause=e) from e

        try:
            with os.fdopen(fd, "wb") as raw:
                stream = _open_compressed(raw, comp)
                try:
                    with tarfile.open(
                        fileobj=stream, mode="w", format=self.long_file_mode.tar_format
                    ) as tar:
                        for source, name in entries:
                            self._add_entry(tar, source, name, modes)
                finally:
                    if stream is not raw:
                        stream.close()
            os.chmod(tmp_name, ARCHIVE_FILE_MODE)
            os.replace(tmp_name, output)
        except (OSError, tarfile.TarError, ValueError) as e:
            raise ArchiveError(
                f"Cannot create archive {output}", cause=e, context={"error": str(e)}
            ) from e
        finally:
            # gone after a successful replace
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass

        logger.debug("Created %s with %d entries", output, len(entries))
        return output

    def _add_entry(self, tar: tarfile.TarFile, source: Path, name: str, modes: Dict[str, str]) -> None:
        if not name or name in self._excluded:
            return
        info = tar.gettarinfo(str(source), arcname=name)
        if info is None:
            logger.warning("Skipping %s: sockets and other special files cannot be archived", source)
            return
        info.uid = 0
        info.gid = 0
        info.uname = ""
        info.gname = ""
        if name in modes:
            info.mode = parse_mode(modes[name])
        info.name = self._apply_long_file_mode(info)
        for customizer in self._entry_customizers:
            info = customizer(info)
            if info is None:
                return
        if info.isreg():
            with open(source, "rb") as f:
                tar.addfile(info, f)
        else:
            tar.addfile(info)

    def _apply_long_file_mode(self, info: tarfile.TarInfo) -> str:
        name = info.name
        limit = USTAR_NAME_LIMIT - 1 if info.isdir() else USTAR_NAME_LIMIT
        if len(name.encode("utf-8")) <= limit:
            return name
        if self.long_file_mode == LongFileMode.TRUNCATE:
            return name.encode("utf-8")[:limit].decode("utf-8", "ignore")
        if self.long_file_mode == LongFileMode.ERROR:
            raise ArchiveError(
                f"Entry name '{name}' is longer than {limit} bytes",
                context={"long_file_mode": self.long_file_mode.value},
            )
        return name


def _open_compressed(raw, compression: ArchiveCompression):
    if compression == ArchiveCompression.GZIP:
        return gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0)
    if compression == ArchiveCompression.BZIP2:
        return bz2.BZ2File(raw, mode="wb")
    return raw


def _relative_name(path: Path, base: Path) -> str:
    try:
        rel = os.path.relpath(path, base)
    except ValueError:
        rel = path.name
    rel = rel.replace(os.sep, "/")
    if rel == "." or rel.startswith("../"):
        return path.name if rel != "." else ""
    return rel


def walk_sorted(base: Path) -> Iterable[Path]:
    """All directories and files below ``base``, parents first, names sorted."""
    for root, dirs, files in os.walk(base):
        dirs.sort()
        root_path = Path(root)
        if root_path != base:
            yield root_path
        for name in sorted(files):
            yield root_path / name
