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
Container side actions of the watch loop, backed by the engine API.
"""
import logging
import re
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from ..errors import RegistryProtocolError
from ..MODELS.image_configuration import ImageConfiguration
from ..MODELS.project_config import WatchSettings
from ..REGISTRY.registry_client import RegistryClient
from .watch_manager import WatchContext

logger = logging.getLogger(__name__)

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")


def container_config(image: ImageConfiguration) -> Dict[str, Any]:
    """
    Engine create payload (without 'Image') for the image's run section.

    Ports are 'container', 'host:container' or 'ip:host:container', each
    optionally suffixed with '/tcp' or '/udp'.
    """
    run = image.run
    config: Dict[str, Any] = {}
    if run.env:
        config["Env"] = [f"{key}={value}" for key, value in run.env.items()]
    if run.cmd is not None and not run.cmd.is_empty():
        config["Cmd"] = run.cmd.as_strings()

    exposed: Dict[str, Dict] = {}
    bindings: Dict[str, list] = {}
    for spec in run.ports:
        mapping, _, protocol = spec.partition("/")
        parts = mapping.split(":")
        container_port = f"{parts[-1]}/{protocol or 'tcp'}"
        exposed[container_port] = {}
        if len(parts) >= 2:
            binding = {"HostPort": parts[-2]}
            if len(parts) == 3:
                binding["HostIp"] = parts[0]
            bindings.setdefault(container_port, []).append(binding)
    if exposed:
        config["ExposedPorts"] = exposed
    if bindings:
        config["HostConfig"] = {"PortBindings": bindings}
    return config


class ContainerTasks:
    """
    Copies, restarts and executes in the container belonging to an image.

    The container is found by the run section's container name, falling back
    to the image alias, then to the image's simple name.
    """

    def __init__(
        self,
        client: RegistryClient,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.client = client
        self.runner = runner

    @staticmethod
    def container_name(image: ImageConfiguration) -> str:
        name = image.run.container_name or image.alias or image.image_name.simple_name
        return _INVALID_NAME_CHARS.sub("_", name)

    def running_container(self, image: ImageConfiguration) -> Optional[str]:
        details = self.client.inspect_container(self.container_name(image))
        if not details or not (details.get("State") or {}).get("Running"):
            return None
        return details.get("Id")

    def copy(self, image: ImageConfiguration, archive: Path) -> None:
        container_id = self.running_container(image)
        if container_id is None:
            logger.warning("%s: No running container %s, not copying", image.description, self.container_name(image))
            return
        self.client.copy_archive(container_id, archive, "/")
        logger.info("%s: Copied %s into %s", image.description, archive.name, self.container_name(image))

    def restart(self, image: ImageConfiguration) -> str:
        """
        Stop and remove the current container (if any) and start a new one
        from the image.

        Returns:
            Id of the new container
        """
        name = self.container_name(image)
        existing = self.client.inspect_container(name)
        if existing:
            if (existing.get("State") or {}).get("Running"):
                self.client.stop_container(existing["Id"])
            self.client.remove_container(existing["Id"], force=True)
        container_id = self.client.create_container(image.name, name=name, config=container_config(image))
        self.client.start_container(container_id)
        logger.info("%s: Started container %s (%s)", image.description, name, container_id[:12])
        return container_id

    def exec_in_container(self, image: ImageConfiguration, command: str) -> str:
        container_id = self.running_container(image)
        if container_id is None:
            raise RegistryProtocolError(
                f"{image.description}: no running container {self.container_name(image)} to execute '{command}' in"
            )
        exit_code, output = self.client.exec_command(container_id, ["sh", "-c", command])
        if exit_code != 0:
            logger.warning("%s: '%s' exited with %d", image.description, command, exit_code)
        return output

    def post_build(self, image: ImageConfiguration, command: str) -> str:
        """Run a host command after a rebuild and return its output."""
        result = self.runner(command, shell=True, capture_output=True, text=True, check=False)
        if result.returncode != 0:
            logger.warning("%s: '%s' exited with %d: %s", image.description, command, result.returncode, result.stderr.strip())
        return result.stdout

    def context(self, settings: Optional[WatchSettings] = None) -> WatchContext:
        settings = settings or WatchSettings()
        return WatchContext(
            interval=settings.interval,
            mode=settings.mode,
            post_exec=settings.post_exec,
            copy=self.copy,
            restart=self.restart,
            exec_in_container=self.exec_in_container,
            post_build=self.post_build,
        )
