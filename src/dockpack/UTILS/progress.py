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
Progress reporting for engine operations.

A reporter is created per build/push/pull invocation and handed down to the
code doing the work; nothing is kept in global or thread-local state.
"""
import logging
from typing import Any, Dict, Optional

import click

logger = logging.getLogger(__name__)


class ProgressReporter:
    """
    Receives progress events. The base implementation logs them at debug level.
    """

    def start(self, operation: str, image: str) -> None:
        logger.debug("%s %s", operation, image)

    def update(self, event: Dict[str, Any]) -> None:
        """One decoded object of an engine JSON progress stream."""
        message = format_event(event)
        if message:
            logger.debug(message)

    def finish(self, operation: str, image: str, detail: Optional[str] = None) -> None:
        logger.debug("%s %s done%s", operation, image, f" ({detail})" if detail else "")


class ConsoleProgressReporter(ProgressReporter):
    """
    Writes one line per progress event to the console.

    Layer progress bars are collapsed: only status changes per layer id are
    printed.
    """

    def __init__(self, prefix: str = "dockpack"):
        self.prefix = prefix
        self._last_status: Dict[str, str] = {}

    def start(self, operation: str, image: str) -> None:
        self._last_status.clear()
        click.echo(f"{self.prefix}: {operation} {image}")

    def update(self, event: Dict[str, Any]) -> None:
        layer = event.get("id")
        status = event.get("status")
        if layer and status:
            if self._last_status.get(layer) == status:
                return
            self._last_status[layer] = status
        message = format_event(event)
        if message:
            click.echo(f"{self.prefix}: {message}")

    def finish(self, operation: str, image: str, detail: Optional[str] = None) -> None:
        suffix = f" ({detail})" if detail else ""
        click.echo(f"{self.prefix}: {operation} {image} finished{suffix}")


def format_event(event: Dict[str, Any]) -> Optional[str]:
    """Render a progress stream object as a single line, or None if it carries nothing to show."""
    if "stream" in event:
        text = str(event["stream"]).rstrip("\n")
        return text or None
    status = event.get("status")
    if not status:
        return None
    layer = event.get("id")
    return f"{layer}: {status}" if layer else str(status)
