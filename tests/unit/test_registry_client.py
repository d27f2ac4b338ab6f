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
Unit tests for the engine API client, run against an in-process HTTP server.
"""
import base64
import json
import socketserver
import sys
import threading
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qsl, urlsplit

import pytest

from dockpack.errors import ConfigurationError, RegistryProtocolError
from dockpack.MODELS.auth_config import AuthConfig
from dockpack.REGISTRY.registry_client import (
    ANONYMOUS_AUTH,
    BuildOptions,
    RegistryClient,
    iter_json_stream,
    resolve_engine_url,
)
from dockpack.UTILS.progress import ProgressReporter


@dataclass
class EngineRequest:
    method: str
    path: str
    query: dict
    headers: object
    body: bytes


class EngineHandler(BaseHTTPRequestHandler):
    """Answers from the server's route table and records every request."""

    def _handle(self):
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length else b""
        parsed = urlsplit(self.path)
        request = EngineRequest(self.command, parsed.path, dict(parse_qsl(parsed.query)), self.headers, body)
        self.server.requests.append(request)
        status, payload = self.server.respond(request)
        if isinstance(payload, (dict, list)):
            payload = json.dumps(payload)
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    do_GET = do_POST = do_PUT = do_DELETE = _handle

    def log_message(self, format, *args):
        pass


class RouteTable:
    def setup_routes(self):
        self.routes = {}
        self.requests = []

    def route(self, method, path, *responses):
        """Responses are served in order; the last one repeats."""
        self.routes[(method, path)] = list(responses)

    def respond(self, request):
        responses = self.routes.get((request.method, request.path))
        if not responses:
            return 404, {"message": f"no route {request.method} {request.path}"}
        if len(responses) > 1:
            return responses.pop(0)
        return responses[0]


class FakeEngine(RouteTable, ThreadingHTTPServer):
    def __init__(self):
        ThreadingHTTPServer.__init__(self, ("127.0.0.1", 0), EngineHandler)
        self.setup_routes()

    @property
    def url(self):
        return f"http://127.0.0.1:{self.server_address[1]}"


class UnixFakeEngine(RouteTable, socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    daemon_threads = True

    def __init__(self, path):
        socketserver.UnixStreamServer.__init__(self, path, EngineHandler)
        self.setup_routes()


class RecordingReporter(ProgressReporter):
    def __init__(self):
        self.events = []

    def start(self, operation, image):
        self.events.append(("start", operation, image))

    def update(self, event):
        self.events.append(("update", event))

    def finish(self, operation, image, detail=None):
        self.events.append(("finish", operation, image, detail))


def _stream(*events):
    return "\r\n".join(json.dumps(e) for e in events)


def _serve(server):
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return thread


@pytest.fixture
def engine():
    server = FakeEngine()
    _serve(server)
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def client(engine):
    return RegistryClient(engine.url, timeout=5)


@pytest.fixture
def archive(tmp_path):
    path = tmp_path / "context.tar"
    path.write_bytes(b"tar-bytes")
    return path


class TestEngineUrl:
    """Tests for engine host resolution."""

    def test_unix_socket(self):
        assert resolve_engine_url("unix:///var/run/docker.sock", {}) == ("unix://localhost", "/var/run/docker.sock")

    def test_tcp_becomes_http(self):
        assert resolve_engine_url("tcp://10.0.0.1:2375/", {}) == ("http://10.0.0.1:2375", None)

    def test_docker_host_environment(self):
        assert resolve_engine_url(None, {"DOCKER_HOST": "https://engine:2376"}) == ("https://engine:2376", None)

    def test_default_socket(self):
        assert resolve_engine_url(None, {})[1] == "/var/run/docker.sock"

    @pytest.mark.parametrize("host", ["ssh://user@host", "unix://"])
    def test_unsupported(self, host):
        with pytest.raises(ConfigurationError):
            resolve_engine_url(host, {})


def test_json_stream_across_chunk_boundaries():
    chunks = [b'{"stream": "Step 1"}\r\n{"sta', b'tus": "Pushing", "id": "abc"}', b"\n"]
    assert list(iter_json_stream(chunks)) == [{"stream": "Step 1"}, {"status": "Pushing", "id": "abc"}]


def test_truncated_json_stream():
    with pytest.raises(RegistryProtocolError):
        list(iter_json_stream([b'{"stream": "Step 1"}{"status": ']))


def test_build_options():
    params = BuildOptions(dockerfile="src/Dockerfile", no_cache=True, build_args={"A": "1"}).to_params("app:1")
    assert params == {
        "t": "app:1", "dockerfile": "src/Dockerfile", "nocache": "1", "forcerm": "1", "buildargs": '{"A": "1"}',
    }


def test_build_image(engine, client, archive):
    engine.route("POST", "/build", (200, _stream(
        {"stream": "Step 1/2 : FROM alpine\n"},
        {"aux": {"ID": "sha256:abc"}},
        {"stream": "Successfully built abc\n"},
    )))
    reporter = RecordingReporter()
    image_id = client.build_image("app:1", archive, BuildOptions(platform="linux/arm64"), reporter)

    assert image_id == "sha256:abc"
    [request] = engine.requests
    assert request.body == b"tar-bytes"
    assert request.headers["Content-Type"] == "application/x-tar"
    assert request.query == {"t": "app:1", "dockerfile": "Dockerfile", "forcerm": "1", "platform": "linux/arm64"}
    assert reporter.events[0] == ("start", "Building", "app:1")
    assert reporter.events[-1] == ("finish", "Building", "app:1", "sha256:abc")


def test_build_image_id_from_inspect(engine, client, archive):
    engine.route("POST", "/build", (200, _stream({"stream": "done\n"})))
    engine.route("GET", "/images/app:1/json", (200, {"Id": "sha256:def"}))
    assert client.build_image("app:1", archive) == "sha256:def"


def test_build_error_in_stream(engine, client, archive):
    engine.route("POST", "/build", (200, _stream(
        {"stream": "Step 1/2 : RUN false\n"},
        {"error": "The command returned a non-zero code: 1", "errorDetail": {"code": 1}},
    )))
    with pytest.raises(RegistryProtocolError) as exc:
        client.build_image("app:1", archive)
    assert "Unable to build image app:1: The command returned a non-zero code: 1" in str(exc.value)
    assert not exc.value.retryable


def test_build_rejected(engine, client, archive):
    engine.route("POST", "/build", (400, {"message": "dockerfile parse error"}))
    with pytest.raises(RegistryProtocolError) as exc:
        client.build_image("app:1", archive)
    assert exc.value.status == 400
    assert "dockerfile parse error" in str(exc.value)


def test_api_version_prefix(engine, archive):
    engine.route("GET", "/v1.41/images/app:1/json", (200, {"Id": "sha256:abc"}))
    assert RegistryClient(engine.url, api_version="v1.41").inspect_image("app:1") == "sha256:abc"


def test_tag_image(engine, client):
    engine.route("POST", "/images/app:1/tag", (201, ""))
    client.tag_image("app:1", "quay.io/org/app:1", force=True)
    assert engine.requests[0].query == {"repo": "quay.io/org/app", "tag": "1", "force": "1"}


def test_remove_image(engine, client):
    engine.route("DELETE", "/images/quay.io/app:1", (200, []))
    assert client.remove_image("quay.io/app:1")
    assert not client.remove_image("missing:1")


def test_inspect_missing_image(client):
    assert client.inspect_image("missing:1") is None
    assert not client.has_image("missing:1")


def test_inspect_server_error(engine, client):
    engine.route("GET", "/images/app:1/json", (500, {"message": "boom"}))
    with pytest.raises(RegistryProtocolError) as exc:
        client.inspect_image("app:1")
    assert exc.value.retryable


def test_push_anonymous(engine, client):
    engine.route("POST", "/images/quay.io/org/app/push", (200, _stream({"status": "Pushed", "id": "abc"})))
    client.push_image("quay.io/org/app:1", "quay.io", None)
    [request] = engine.requests
    assert request.query == {"tag": "1"}
    assert request.headers["X-Registry-Auth"] == ANONYMOUS_AUTH


def test_push_with_credentials(engine, client):
    engine.route("POST", "/images/quay.io/app/push", (200, ""))
    client.push_image("quay.io/app:1", "quay.io", AuthConfig(username="user", password="pw"))
    header = engine.requests[0].headers["X-Registry-Auth"]
    assert json.loads(base64.urlsafe_b64decode(header)) == {
        "username": "user", "password": "pw", "serveraddress": "quay.io",
    }


def test_push_retries_server_errors(engine, client):
    engine.route(
        "POST", "/images/quay.io/app/push",
        (500, {"message": "unavailable"}),
        (200, _stream({"error": "blob upload unknown", "errorDetail": {"code": 503}})),
        (200, _stream({"status": "Pushed"})),
    )
    client.push_image("quay.io/app:1", "quay.io", None, retries=2)
    assert len(engine.requests) == 3


def test_push_gives_up_after_retries(engine, client):
    engine.route("POST", "/images/quay.io/app/push", (500, {"message": "unavailable"}))
    with pytest.raises(RegistryProtocolError) as exc:
        client.push_image("quay.io/app:1", "quay.io", None, retries=1)
    assert len(engine.requests) == 2
    assert exc.value.status == 500
    assert exc.value.registry == "quay.io"


def test_push_client_errors_not_retried(engine, client):
    engine.route("POST", "/images/quay.io/app/push", (404, {"message": "No such image"}))
    with pytest.raises(RegistryProtocolError):
        client.push_image("quay.io/app:1", "quay.io", None, retries=3)
    assert len(engine.requests) == 1


def test_pull_image(engine, client):
    engine.route("POST", "/images/create", (200, _stream({"status": "Downloaded newer image"})))
    reporter = RecordingReporter()
    client.pull_image("org/app:1", registry="registry.example.com", platform="linux/amd64", reporter=reporter)
    assert engine.requests[0].query == {
        "fromImage": "registry.example.com/org/app", "tag": "1", "platform": "linux/amd64",
    }
    assert ("update", {"status": "Downloaded newer image"}) in reporter.events


def test_pull_retries_server_errors(engine, client):
    engine.route(
        "POST", "/images/create",
        (502, {"message": "bad gateway"}),
        (200, _stream({"error": "net/http: TLS handshake timeout", "errorDetail": {"code": 500}})),
        (200, _stream({"status": "Downloaded newer image"})),
    )
    client.pull_image("org/app:1", registry="registry.example.com", retries=2)
    assert len(engine.requests) == 3


def test_pull_gives_up_after_retries(engine, client):
    engine.route("POST", "/images/create", (503, {"message": "unavailable"}))
    with pytest.raises(RegistryProtocolError) as exc:
        client.pull_image("org/app:1", registry="registry.example.com", retries=1)
    assert len(engine.requests) == 2
    assert exc.value.status == 503
    assert exc.value.registry == "registry.example.com"


def test_pull_client_errors_not_retried(engine, client):
    engine.route("POST", "/images/create", (404, {"message": "manifest unknown"}))
    with pytest.raises(RegistryProtocolError) as exc:
        client.pull_image("quay.io/org/app:1", retries=3)
    assert len(engine.requests) == 1
    assert exc.value.registry == "quay.io"


def test_pull_by_digest(engine, client):
    engine.route("POST", "/images/create", (200, ""))
    digest = "sha256:" + "a" * 64
    client.pull_image(f"alpine@{digest}")
    assert engine.requests[0].query == {"fromImage": f"alpine@{digest}"}


def test_unreachable_engine():
    client = RegistryClient("tcp://127.0.0.1:1", timeout=2)
    with pytest.raises(RegistryProtocolError) as exc:
        client.inspect_image("app:1")
    assert exc.value.retryable
    assert "Cannot reach container engine" in str(exc.value)


def test_container_lifecycle(engine, client, archive):
    engine.route("POST", "/containers/create", (201, {"Id": "c1"}))
    engine.route("POST", "/containers/c1/start", (304, ""))
    engine.route("POST", "/containers/c1/stop", (204, ""))
    engine.route("PUT", "/containers/c1/archive", (200, ""))
    engine.route("DELETE", "/containers/c1", (204, ""))

    assert client.create_container("app:1", name="app", config={"Env": ["A=1"]}) == "c1"
    client.start_container("c1")
    client.copy_archive("c1", archive, "/opt")
    client.stop_container("c1", timeout=3)
    assert client.remove_container("c1", force=True)
    assert not client.remove_container("c2")

    create, _, copy, stop, *_ = engine.requests
    assert create.query == {"name": "app"}
    assert json.loads(create.body) == {"Env": ["A=1"], "Image": "app:1"}
    assert copy.query == {"path": "/opt"}
    assert copy.body == b"tar-bytes"
    assert stop.query == {"t": "3"}


def test_exec_command(engine, client):
    engine.route("POST", "/containers/c1/exec", (201, {"Id": "e1"}))
    engine.route("POST", "/exec/e1/start", (200, "reloaded\n"))
    engine.route("GET", "/exec/e1/json", (200, {"ExitCode": 3}))
    assert client.exec_command("c1", ["sh", "-c", "reload"]) == (3, "reloaded\n")
    assert json.loads(engine.requests[0].body)["Cmd"] == ["sh", "-c", "reload"]


@pytest.mark.skipif(sys.platform == "win32", reason="Unix domain sockets")
def test_unix_socket_engine(tmp_path):
    socket_path = tmp_path / "engine.sock"
    server = UnixFakeEngine(str(socket_path))
    server.route("GET", "/images/app:1/json", (200, {"Id": "sha256:abc"}))
    server.route("DELETE", "/images/app:1", (409, {"message": "image is in use"}))
    _serve(server)
    try:
        client = RegistryClient(f"unix://{socket_path}", timeout=5)
        assert client.inspect_image("app:1") == "sha256:abc"
        assert client.inspect_image("missing:1") is None
        with pytest.raises(RegistryProtocolError) as exc:
            client.remove_image("app:1")
        assert exc.value.status == 409
        assert "image is in use" in str(exc.value)
    finally:
        server.shutdown()
        server.server_close()
