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
Client for the container engine remote API.

Builds, tags, pushes, pulls and inspects images and drives the few container
operations the watch loop needs. The engine is reached over a Unix socket or
plain HTTP(S).
"""

import http.client
import json
import logging
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import AbstractHTTPHandler, OpenerDirector, Request, build_opener

from tenacity import Retrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_none

from ..errors import ConfigurationError, RegistryProtocolError
from ..MODELS.auth_config import AuthConfig
from ..MODELS.project_config import DEFAULT_DOCKER_HOST, EngineSettings
from ..UTILS.progress import ProgressReporter
from .image_reference import ImageName

logger = logging.getLogger(__name__)

# base64url of '{}', sent when pushing or pulling anonymously
ANONYMOUS_AUTH = "e30="


class UnixHTTPConnection(http.client.HTTPConnection):
    """HTTP connection over a Unix domain socket."""

    def __init__(self, socket_path: str, timeout: Optional[float] = None):
        super().__init__("localhost", timeout=timeout)
        self.socket_path = socket_path

    def connect(self):
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        if self.timeout is not None:
            sock.settimeout(self.timeout)
        sock.connect(self.socket_path)
        self.sock = sock


class UnixSocketHandler(AbstractHTTPHandler):
    """urllib handler for ``unix://localhost/...`` URLs bound to one socket path."""

    def __init__(self, socket_path: str):
        super().__init__()
        self.socket_path = socket_path

    def _connection(self, host, timeout=None, **kwargs):
        return UnixHTTPConnection(self.socket_path, timeout=timeout)

    def unix_open(self, req):
        return self.do_open(self._connection, req)

    unix_request = AbstractHTTPHandler.do_request_


@dataclass
class BuildOptions:
    """Query options of the engine build endpoint."""

    dockerfile: str = "Dockerfile"
    no_cache: bool = False
    pull: bool = False
    force_remove: bool = True
    build_args: Dict[str, str] = field(default_factory=dict)
    platform: Optional[str] = None

    def to_params(self, image_name: str) -> Dict[str, str]:
        params = {"t": image_name, "dockerfile": self.dockerfile}
        if self.no_cache:
            params["nocache"] = "1"
        if self.pull:
            params["pull"] = "1"
        if self.force_remove:
            params["forcerm"] = "1"
        if self.build_args:
            params["buildargs"] = json.dumps(self.build_args)
        if self.platform:
            params["platform"] = self.platform
        return params


def resolve_engine_url(host: Optional[str], environ: Optional[Mapping[str, str]] = None) -> Tuple[str, Optional[str]]:
    """
    Map an engine host spec to a base URL and, for Unix sockets, the socket path.

    Args:
        host: 'unix:///path', 'tcp://host:port', 'http(s)://host:port' or None
        environ: Environment consulted for DOCKER_HOST when host is None

    Returns:
        (base url, socket path or None)
    """
    environ = environ if environ is not None else os.environ
    host = host or environ.get("DOCKER_HOST") or DEFAULT_DOCKER_HOST
    if host.startswith("unix://"):
        path = host[len("unix://"):]
        if not path:
            raise ConfigurationError(f"No socket path in engine host '{host}'")
        return "unix://localhost", path
    if host.startswith("tcp://"):
        return "http://" + host[len("tcp://"):].rstrip("/"), None
    if host.startswith(("http://", "https://")):
        return host.rstrip("/"), None
    raise ConfigurationError(f"Unsupported engine host '{host}'", context={"expected": "unix://, tcp://, http:// or https://"})


def iter_json_stream(chunks: Iterable[bytes]) -> Iterator[Dict[str, Any]]:
    """Decode concatenated JSON objects as streamed by build, push and pull."""
    decoder = json.JSONDecoder()
    buffer = ""
    for chunk in chunks:
        buffer += chunk.decode("utf-8", errors="replace")
        while True:
            buffer = buffer.lstrip()
            if not buffer:
                break
            try:
                obj, end = decoder.raw_decode(buffer)
            except ValueError:
                break
            buffer = buffer[end:]
            if isinstance(obj, dict):
                yield obj
    if buffer.strip():
        raise RegistryProtocolError("Truncated progress stream from container engine", context={"remaining": buffer[:200]})


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, RegistryProtocolError) and error.retryable


def _error_detail(body: bytes, default: str) -> str:
    text = body.decode("utf-8", errors="replace").strip()
    if not text:
        return default
    try:
        message = json.loads(text).get("message")
    except (ValueError, AttributeError):
        return text
    return message or text


class RegistryClient:
    """
    Thin synchronous client for the engine remote API.

    Only push and pull are retried; build, tag, remove and inspect fail on the
    first error.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout: float = 60.0,
        environ: Optional[Mapping[str, str]] = None,
        opener: Optional[OpenerDirector] = None,
    ):
        """
        Initialize the client.

        Args:
            host: Engine host, DOCKER_HOST or the local socket when None
            api_version: API version path prefix, e.g. '1.41'; unversioned when None
            timeout: Socket timeout in seconds for every call
            environ: Environment used to look up DOCKER_HOST
            opener: urllib opener, built for the host when None
        """
        self.base_url, self.socket_path = resolve_engine_url(host, environ)
        self.api_version = api_version.lstrip("v") if api_version else None
        self.timeout = timeout
        if opener is None:
            handlers = [UnixSocketHandler(self.socket_path)] if self.socket_path else []
            opener = build_opener(*handlers)
        self.opener = opener

    @classmethod
    def from_settings(cls, settings: EngineSettings, environ: Optional[Mapping[str, str]] = None) -> "RegistryClient":
        return cls(settings.host, settings.api_version, settings.timeout, environ)

    @property
    def description(self) -> str:
        return f"unix://{self.socket_path}" if self.socket_path else self.base_url

    # ------------------------------------------------------------------
    # images

    def build_image(
        self,
        image_name: str,
        archive: Union[str, Path],
        options: Optional[BuildOptions] = None,
        reporter: Optional[ProgressReporter] = None,
    ) -> Optional[str]:
        """
        Build an image from a context archive.

        Args:
            image_name: Name to tag the result with
            archive: Path of the tar build context
            options: Build endpoint options
            reporter: Receives build progress

        Returns:
            The image id reported by the engine, or looked up after the build

        Raises:
            RegistryProtocolError: On a non-2xx answer or an error in the build output.
        """
        options = options or BuildOptions()
        reporter = reporter or ProgressReporter()
        archive = Path(archive)
        reporter.start("Building", image_name)
        with archive.open("rb") as data:
            response = self._open(
                "POST",
                "/build",
                params=options.to_params(image_name),
                data=data,
                headers={"Content-Type": "application/x-tar", "Content-Length": str(archive.stat().st_size)},
            )
            events = self._consume_stream(response, f"build image {image_name}", reporter)
        image_id = None
        for event in events:
            aux = event.get("aux")
            if isinstance(aux, dict) and aux.get("ID"):
                image_id = aux["ID"]
        if image_id is None:
            image_id = self.inspect_image(image_name)
        reporter.finish("Building", image_name, image_id)
        return image_id

    def tag_image(self, source: str, target: str, force: bool = False) -> None:
        """Tag ``source`` as ``target`` (a full name including tag)."""
        name = ImageName.parse(target)
        params = {"repo": name.name_without_tag(), "tag": name.tag or ImageName.DEFAULT_TAG}
        if force:
            params["force"] = "1"
        response = self._open("POST", f"/images/{_path(source)}/tag", params=params)
        self._check(response, f"tag image {source} as {target}")
        response.close()
        logger.debug("Tagged %s as %s", source, target)

    def remove_image(self, name: str, force: bool = False) -> bool:
        """Remove an image; False if it did not exist."""
        response = self._open("DELETE", f"/images/{_path(name)}", params={"force": "1"} if force else None)
        if response.getcode() == 404:
            response.close()
            return False
        self._check(response, f"remove image {name}")
        response.close()
        return True

    def inspect_image(self, name: str) -> Optional[str]:
        """Id of a local image or None if the engine does not know it."""
        details = self._get_json(f"/images/{_path(name)}/json", f"inspect image {name}")
        return details.get("Id") if details is not None else None

    def has_image(self, name: str) -> bool:
        return self.inspect_image(name) is not None

    def push_image(
        self,
        name: str,
        registry: Optional[str],
        auth: Optional[AuthConfig],
        retries: int = 0,
        reporter: Optional[ProgressReporter] = None,
    ) -> None:
        """
        Push ``name`` (already carrying its target registry) to the registry.

        Args:
            name: Full image name
            registry: Registry host, used for the auth header and error messages
            auth: Credentials; anonymous when None
            retries: Extra attempts after a retryable failure
            reporter: Receives push progress

        Raises:
            RegistryProtocolError: When the last attempt failed.
        """
        image = ImageName.parse(name)
        params = {"tag": image.tag} if image.tag else None
        headers = {"X-Registry-Auth": auth.to_header_value(registry) if auth else ANONYMOUS_AUTH}
        reporter = reporter or ProgressReporter()

        def push():
            reporter.start("Pushing", name)
            response = self._open(
                "POST", f"/images/{_path(image.name_without_tag())}/push",
                params=params, headers=headers, registry=registry,
            )
            self._consume_stream(response, f"push image {name}", reporter, registry)
            reporter.finish("Pushing", name)

        self._with_retries(retries, push)

    def pull_image(
        self,
        name: str,
        auth: Optional[AuthConfig] = None,
        registry: Optional[str] = None,
        platform: Optional[str] = None,
        retries: int = 0,
        reporter: Optional[ProgressReporter] = None,
    ) -> None:
        """
        Pull ``name`` from ``registry`` (or the registry the name embeds).

        Raises:
            RegistryProtocolError: When the last attempt failed.
        """
        image = ImageName.parse(name)
        params = {"fromImage": image.name_without_tag(registry)}
        if image.digest:
            params["fromImage"] += f"@{image.digest}"
        elif image.tag:
            params["tag"] = image.tag
        if platform:
            params["platform"] = platform
        effective_registry = image.registry or registry
        headers = {"X-Registry-Auth": auth.to_header_value(effective_registry) if auth else ANONYMOUS_AUTH}
        reporter = reporter or ProgressReporter()

        def pull():
            reporter.start("Pulling", name)
            response = self._open("POST", "/images/create", params=params, headers=headers, registry=effective_registry)
            self._consume_stream(response, f"pull image {name}", reporter, effective_registry)
            reporter.finish("Pulling", name)

        self._with_retries(retries, pull)

    # ------------------------------------------------------------------
    # containers

    def inspect_container(self, container_id: str) -> Optional[Dict[str, Any]]:
        return self._get_json(f"/containers/{_path(container_id)}/json", f"inspect container {container_id}")

    def create_container(self, image: str, name: Optional[str] = None, config: Optional[Dict[str, Any]] = None) -> str:
        body = dict(config or {})
        body["Image"] = image
        response = self._open(
            "POST", "/containers/create",
            params={"name": name} if name else None,
            data=json.dumps(body).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        self._check(response, f"create container from {image}")
        with response:
            return json.loads(response.read().decode("utf-8"))["Id"]

    def start_container(self, container_id: str) -> None:
        response = self._open("POST", f"/containers/{_path(container_id)}/start")
        if response.getcode() != 304:
            self._check(response, f"start container {container_id}")
        response.close()

    def stop_container(self, container_id: str, timeout: int = 10) -> None:
        response = self._open("POST", f"/containers/{_path(container_id)}/stop", params={"t": str(timeout)})
        if response.getcode() != 304:
            self._check(response, f"stop container {container_id}")
        response.close()

    def remove_container(self, container_id: str, force: bool = False, volumes: bool = False) -> bool:
        params = {}
        if force:
            params["force"] = "1"
        if volumes:
            params["v"] = "1"
        response = self._open("DELETE", f"/containers/{_path(container_id)}", params=params or None)
        if response.getcode() == 404:
            response.close()
            return False
        self._check(response, f"remove container {container_id}")
        response.close()
        return True

    def copy_archive(self, container_id: str, archive: Union[str, Path], target_path: str = "/") -> None:
        """Extract a tar archive into a running container below ``target_path``."""
        archive = Path(archive)
        with archive.open("rb") as data:
            response = self._open(
                "PUT", f"/containers/{_path(container_id)}/archive",
                params={"path": target_path},
                data=data,
                headers={"Content-Type": "application/x-tar", "Content-Length": str(archive.stat().st_size)},
            )
            self._check(response, f"copy {archive.name} into container {container_id}")
            response.close()

    def exec_command(self, container_id: str, command: List[str]) -> Tuple[int, str]:
        """
        Run a command inside a running container and wait for it.

        Returns:
            (exit code, combined output)
        """
        response = self._open(
            "POST", f"/containers/{_path(container_id)}/exec",
            data=json.dumps({"AttachStdout": True, "AttachStderr": True, "Tty": True, "Cmd": command}).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        self._check(response, f"create exec in container {container_id}")
        with response:
            exec_id = json.loads(response.read().decode("utf-8"))["Id"]

        response = self._open(
            "POST", f"/exec/{exec_id}/start",
            data=json.dumps({"Detach": False, "Tty": True}).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        self._check(response, f"start exec {exec_id}")
        with response:
            output = response.read().decode("utf-8", errors="replace")

        details = self._get_json(f"/exec/{exec_id}/json", f"inspect exec {exec_id}") or {}
        return int(details.get("ExitCode") or 0), output

    # ------------------------------------------------------------------
    # plumbing

    def _url(self, path: str, params: Optional[Dict[str, str]] = None) -> str:
        prefix = f"/v{self.api_version}" if self.api_version else ""
        url = f"{self.base_url}{prefix}{path}"
        if params:
            url += "?" + urlencode(params)
        return url

    def _open(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        data: Any = None,
        headers: Optional[Dict[str, str]] = None,
        registry: Optional[str] = None,
    ):
        request = Request(self._url(path, params), data=data, headers=headers or {}, method=method)
        try:
            return self.opener.open(request, timeout=self.timeout)
        except HTTPError as e:
            return e
        except (URLError, OSError) as e:
            reason = getattr(e, "reason", e)
            raise RegistryProtocolError(
                f"Cannot reach container engine at {self.description}: {reason}",
                registry=registry,
                retryable=True,
                cause=e,
            ) from e

    def _check(self, response, action: str, registry: Optional[str] = None) -> None:
        status = response.getcode()
        if 200 <= status < 300:
            return
        try:
            detail = _error_detail(response.read(), getattr(response, "reason", "") or f"HTTP {status}")
        finally:
            response.close()
        raise RegistryProtocolError(
            f"Unable to {action}: {detail}",
            status=status,
            registry=registry,
            retryable=status >= 500,
        )

    def _get_json(self, path: str, action: str) -> Optional[Dict[str, Any]]:
        response = self._open("GET", path)
        if response.getcode() == 404:
            response.close()
            return None
        self._check(response, action)
        with response:
            return json.loads(response.read().decode("utf-8"))

    def _consume_stream(
        self,
        response,
        action: str,
        reporter: ProgressReporter,
        registry: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        self._check(response, action, registry)
        events = []
        with response:
            try:
                for event in iter_json_stream(iter(lambda: response.read(8192), b"")):
                    if "error" in event:
                        detail = event.get("errorDetail") or {}
                        code = detail.get("code") if isinstance(detail, dict) else None
                        raise RegistryProtocolError(
                            f"Unable to {action}: {event['error']}",
                            status=code,
                            registry=registry,
                            retryable=bool(code and code >= 500),
                        )
                    reporter.update(event)
                    events.append(event)
            except (OSError, http.client.HTTPException) as e:
                raise RegistryProtocolError(
                    f"Unable to {action}: connection to container engine lost",
                    registry=registry,
                    retryable=True,
                    cause=e,
                ) from e
        return events

    @staticmethod
    def _with_retries(retries: int, operation: Callable[[], None]) -> None:
        retrying = Retrying(
            stop=stop_after_attempt(max(retries, 0) + 1),
            retry=retry_if_exception(_is_retryable),
            wait=wait_none(),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        retrying(operation)


def _path(name: str) -> str:
    return quote(name, safe="/:@")
