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
Polling watch loop that rebuilds images, restarts containers or copies
changed files into running containers.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from ..MODELS.assembly import AssemblyFiles
from ..MODELS.image_configuration import ImageConfiguration, WatchMode
from .build_orchestrator import BuildOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class WatchContext:
    """
    Loop defaults plus the container side actions.

    Images override interval, mode and post_exec through their own watch
    section. Actions left as None are skipped.
    """

    interval: float = 5.0
    mode: WatchMode = WatchMode.BOTH
    post_exec: Optional[str] = None
    copy: Optional[Callable[[ImageConfiguration, Path], None]] = None
    restart: Optional[Callable[[ImageConfiguration], None]] = None
    exec_in_container: Optional[Callable[[ImageConfiguration, str], str]] = None
    post_build: Optional[Callable[[ImageConfiguration, str], str]] = None


@dataclass
class ImageWatcher:
    """Watch state of one image."""

    image: ImageConfiguration
    mode: WatchMode
    interval: float
    post_exec: Optional[str] = None
    post_goal: Optional[str] = None
    assembly_files: List[AssemblyFiles] = field(default_factory=list)
    image_id: Optional[str] = None
    next_check: float = 0.0

    def changed_layers(self) -> List[AssemblyFiles]:
        """Layers with changed files; every layer's snapshot is refreshed."""
        return [files for files in self.assembly_files if files.is_changed_and_refresh()]


class WatchService:
    """
    Runs the watch loop for a set of images.

    One tick checks every image whose interval elapsed. A failing tick is
    logged and the loop goes on; ``stop()`` takes effect between ticks.
    """

    def __init__(
        self,
        orchestrator: BuildOrchestrator,
        context: Optional[WatchContext] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.orchestrator = orchestrator
        self.context = context or WatchContext()
        self.clock = clock
        self.watchers: List[ImageWatcher] = []
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def prepare(self, images: List[ImageConfiguration]) -> List[ImageWatcher]:
        """
        Take the initial snapshot for every watched image.

        Args:
            images: Image configurations

        Returns:
            The watchers that will be checked by ``tick()``
        """
        watchers = []
        for image in images:
            mode = image.watch.mode or self.context.mode
            if mode == WatchMode.NONE:
                continue
            if image.build is None and (mode.is_build or mode.is_copy):
                logger.debug("%s: No build configuration, not watching assemblies", image.description)
                if not mode.is_run:
                    continue
            watcher = ImageWatcher(
                image=image,
                mode=mode,
                interval=image.watch.interval or self.context.interval,
                post_exec=image.watch.post_exec or self.context.post_exec,
                post_goal=image.watch.post_goal,
            )
            if image.build is not None and (mode.is_build or mode.is_copy):
                watcher.assembly_files = self.orchestrator.assembler.get_assembly_files(image)
            if mode.is_run:
                watcher.image_id = self.orchestrator.client.inspect_image(image.name)
            logger.info("%s: Watching (mode %s, every %ss)", image.description, mode.value, watcher.interval)
            watchers.append(watcher)
        self.watchers = watchers
        return watchers

    def tick(self) -> List[str]:
        """
        Check every image that is due.

        Returns:
            Names of the images for which an action was triggered
        """
        now = self.clock()
        triggered = []
        for watcher in self.watchers:
            if now < watcher.next_check:
                continue
            watcher.next_check = now + watcher.interval
            if self._check(watcher):
                triggered.append(watcher.image.name)
        return triggered

    def watch(self, images: List[ImageConfiguration]) -> None:
        """Blocking loop until ``stop()`` is called."""
        self.prepare(images)
        self._stop_event.clear()
        self._run()

    def start(self, images: List[ImageConfiguration]) -> threading.Thread:
        """Run the loop on a background thread."""
        self.prepare(images)
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="dockpack-watch", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Error while watching images")
            self._stop_event.wait(self._sleep_time())

    def _sleep_time(self) -> float:
        intervals = [w.interval for w in self.watchers]
        return min(intervals) if intervals else self.context.interval

    def _check(self, watcher: ImageWatcher) -> bool:
        image = watcher.image
        if watcher.mode.is_copy:
            return self._copy_changes(watcher)

        acted = False
        if watcher.mode.is_build and watcher.changed_layers():
            logger.info("%s: Assembly changed. Rebuilding image", image.description)
            self.orchestrator.build_image(image)
            watcher.assembly_files = self.orchestrator.assembler.get_assembly_files(image)
            if watcher.post_goal and self.context.post_build:
                output = self.context.post_build(image, watcher.post_goal)
                logger.info("%s: Post goal '%s' finished: %s", image.description, watcher.post_goal, output)
            acted = True

        if watcher.mode.is_run:
            current = self.orchestrator.client.inspect_image(image.name)
            if current is not None and current != watcher.image_id:
                watcher.image_id = current
                if self.context.restart:
                    logger.info("%s: Image changed. Restarting container", image.description)
                    self.context.restart(image)
                acted = True
        if acted:
            self._post_exec(watcher)
        return acted

    def _copy_changes(self, watcher: ImageWatcher) -> bool:
        image = watcher.image
        copied = False
        for files in watcher.assembly_files:
            entries = files.updated_entries_and_refresh()
            if not entries:
                continue
            archive = self.orchestrator.assembler.create_changed_files_archive(
                entries, files.assembly_directory, image.name
            )
            logger.info("%s: %d file(s) changed. Copying into container", image.description, len(entries))
            if self.context.copy:
                self.context.copy(image, archive)
            copied = True
        if copied:
            self._post_exec(watcher)
        return copied

    def _post_exec(self, watcher: ImageWatcher) -> None:
        if not watcher.post_exec or not self.context.exec_in_container:
            return
        output = self.context.exec_in_container(watcher.image, watcher.post_exec)
        logger.info("%s: Post exec '%s': %s", watcher.image.description, watcher.post_exec, output.strip())
