import subprocess

import pytest

from dockpack.errors import RegistryProtocolError
from dockpack.MANAGERS.container_tasks import ContainerTasks, container_config
from dockpack.MODELS.image_configuration import ImageConfiguration, RunDescription, WatchMode
from dockpack.MODELS.project_config import WatchSettings


class FakeClient:
    def __init__(self, containers=None):
        self.containers = containers or {}
        self.calls = []
        self.exit_code = 0

    def inspect_container(self, name):
        return self.containers.get(name)

    def copy_archive(self, container_id, archive, target_path="/"):
        self.calls.append(("copy", container_id, target_path))

    def stop_container(self, container_id, timeout=10):
        self.calls.append(("stop", container_id))

    def remove_container(self, container_id, force=False, volumes=False):
        self.calls.append(("remove", container_id, force))
        return True

    def create_container(self, image, name=None, config=None):
        self.calls.append(("create", image, name, config))
        return "new0123456789abcdef"

    def start_container(self, container_id):
        self.calls.append(("start", container_id))

    def exec_command(self, container_id, command):
        self.calls.append(("exec", container_id, command))
        return self.exit_code, "output\n"


def _running(container_id="c1"):
    return {"Id": container_id, "State": {"Running": True}}


def test_container_config():
    image = ImageConfiguration(
        name="app",
        run=RunDescription(
            ports=["8080", "9000:9090", "127.0.0.1:5353:53/udp"],
            env={"MODE": "dev"},
            cmd="serve --reload",
        ),
    )
    assert container_config(image) == {
        "Env": ["MODE=dev"],
        "Cmd": ["sh", "-c", "serve --reload"],
        "ExposedPorts": {"8080/tcp": {}, "9090/tcp": {}, "53/udp": {}},
        "HostConfig": {"PortBindings": {
            "9090/tcp": [{"HostPort": "9000"}],
            "53/udp": [{"HostPort": "5353", "HostIp": "127.0.0.1"}],
        }},
    }
    assert container_config(ImageConfiguration(name="app")) == {}


@pytest.mark.parametrize("image,expected", [
    (ImageConfiguration(name="org/app:1", run=RunDescription(container_name="my-app")), "my-app"),
    (ImageConfiguration(name="org/app:1", alias="web service"), "web_service"),
    (ImageConfiguration(name="registry:5000/org/app:1"), "app"),
])
def test_container_name(image, expected):
    assert ContainerTasks.container_name(image) == expected


def test_copy_into_running_container(tmp_path):
    client = FakeClient({"app": _running()})
    ContainerTasks(client).copy(ImageConfiguration(name="app"), tmp_path / "changed-files.tar")
    assert client.calls == [("copy", "c1", "/")]


def test_copy_without_container(tmp_path, caplog):
    client = FakeClient({"app": {"Id": "c1", "State": {"Running": False}}})
    ContainerTasks(client).copy(ImageConfiguration(name="app"), tmp_path / "changed-files.tar")
    assert client.calls == []
    assert "No running container app" in caplog.text


def test_restart_replaces_container():
    client = FakeClient({"app": _running("old")})
    image = ImageConfiguration(name="app", run=RunDescription(env={"A": "1"}))
    assert ContainerTasks(client).restart(image) == "new0123456789abcdef"
    assert client.calls == [
        ("stop", "old"),
        ("remove", "old", True),
        ("create", "app", "app", {"Env": ["A=1"]}),
        ("start", "new0123456789abcdef"),
    ]


def test_restart_without_existing_container():
    client = FakeClient()
    ContainerTasks(client).restart(ImageConfiguration(name="app"))
    assert [c[0] for c in client.calls] == ["create", "start"]


def test_exec_in_container(caplog):
    client = FakeClient({"app": _running()})
    client.exit_code = 2
    output = ContainerTasks(client).exec_in_container(ImageConfiguration(name="app"), "reload")
    assert output == "output\n"
    assert client.calls == [("exec", "c1", ["sh", "-c", "reload"])]
    assert "exited with 2" in caplog.text


def test_exec_without_container():
    with pytest.raises(RegistryProtocolError):
        ContainerTasks(FakeClient()).exec_in_container(ImageConfiguration(name="app"), "reload")


def test_post_build_runs_host_command():
    seen = []

    def runner(command, **kwargs):
        seen.append((command, kwargs["shell"]))
        return subprocess.CompletedProcess(command, 0, stdout="built\n", stderr="")

    output = ContainerTasks(FakeClient(), runner=runner).post_build(ImageConfiguration(name="app"), "make reload")
    assert output == "built\n"
    assert seen == [("make reload", True)]


def test_context_wires_actions():
    tasks = ContainerTasks(FakeClient())
    context = tasks.context(WatchSettings(interval=1.5, mode=WatchMode.COPY, post_exec="reload"))
    assert (context.interval, context.mode, context.post_exec) == (1.5, WatchMode.COPY, "reload")
    assert context.restart == tasks.restart
    assert context.copy == tasks.copy
