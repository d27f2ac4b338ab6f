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
Resolved assembly entries and the change tracking used for incremental syncs.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class AssemblyFileEntry:
    """A resolved (source, destination, permission) triple."""

    source: Path
    dest: Path
    file_mode: Optional[str] = None

    @property
    def is_directory(self) -> bool:
        return self.source.is_dir()


def _snapshot(path: Path) -> Optional[Tuple[float, int]]:
    try:
        stat = os.stat(path)
    except FileNotFoundError:
        return None
    return stat.st_mtime, stat.st_size


@dataclass
class AssemblyFiles:
    """
    The resolved entries of one assembly layer together with a snapshot of
    each source's modification time and size.
    """

    assembly_directory: Path
    layer_id: Optional[str] = None
    entries: List[AssemblyFileEntry] = field(default_factory=list)
    _snapshots: Dict[Path, Optional[Tuple[float, int]]] = field(default_factory=dict, repr=False)

    def add_entry(self, entry: AssemblyFileEntry) -> None:
        self.entries.append(entry)
        self._snapshots[entry.source] = _snapshot(entry.source)

    def is_updated(self, entry: AssemblyFileEntry) -> bool:
        return _snapshot(entry.source) != self._snapshots.get(entry.source)

    def updated_entries_and_refresh(self) -> List[AssemblyFileEntry]:
        """
        Get the entries whose source changed since the last call (or since
        they were added) and record their current state.

        Returns:
            Changed entries, in resolution order
        """
        updated = []
        for entry in self.entries:
            if entry.is_directory:
                continue
            current = _snapshot(entry.source)
            if current != self._snapshots.get(entry.source):
                updated.append(entry)
                self._snapshots[entry.source] = current
        return updated

    def is_changed_and_refresh(self) -> bool:
        return bool(self.updated_entries_and_refresh())
