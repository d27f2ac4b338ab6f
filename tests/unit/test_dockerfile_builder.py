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
Unit tests for Dockerfile generation.
"""
import pytest

from dockpack.BUILDERS.dockerfile_builder import DockerfileBuilder, chown_user, quote_value
from dockpack.errors import ConfigurationError
from dockpack.MODELS.image_configuration import (
    AssemblyDescriptor,
    BuildDescription,
    HealthCheckConfiguration,
    HealthCheckMode,
)


def _lines(build):
    return DockerfileBuilder(build).content().splitlines()


def test_minimal_dockerfile():
    build = BuildDescription(
        from_image="alpine:3.19",
        assemblies=[AssemblyDescriptor(id="app", target_dir="/opt/app")],
        cmd=["sh", "-c", "run"],
    )
    assert DockerfileBuilder(build).content() == (
        "FROM alpine:3.19\n"
        "COPY /app/opt/app /opt/app/\n"
        'VOLUME ["/opt/app"]\n'
        'CMD ["sh","-c","run"]\n'
    )


def test_instruction_order():
    build = BuildDescription(
        from_image="openjdk:17",
        maintainer="dev@example.com",
        env={"JAVA_OPTS": "-Xmx1g -Xms1g", "APP": "demo"},
        labels={"version": "1.0"},
        ports=[8080, "9090/udp"],
        assemblies=[AssemblyDescriptor(target_dir="/deployments", user="app:app:app")],
        volumes=["/data"],
        run_commands=["apt-get update", "apt-get install -y curl"],
        entry_point=["java", "-jar", "/deployments/app.jar"],
        cmd="--verbose",
        user="1000",
        workdir="/deployments",
    )
    assert _lines(build) == [
        "FROM openjdk:17",
        "MAINTAINER dev@example.com",
        'ENV JAVA_OPTS="-Xmx1g -Xms1g"',
        "ENV APP=demo",
        "LABEL version=1.0",
        "EXPOSE 8080",
        "EXPOSE 9090/udp",
        "COPY --chown=app:app /deployments /deployments/",
        'VOLUME ["/deployments"]',
        "WORKDIR /deployments",
        'VOLUME ["/data"]',
        "RUN apt-get update",
        "RUN apt-get install -y curl",
        'ENTRYPOINT ["java","-jar","/deployments/app.jar"]',
        "CMD --verbose",
        "USER 1000",
    ]


def test_empty_values_are_left_out():
    assert DockerfileBuilder(BuildDescription()).content() == ""


def test_invalid_port_rejected():
    build = BuildDescription(from_image="alpine", ports=["80:8080"])
    with pytest.raises(ConfigurationError):
        DockerfileBuilder(build).content()


def test_optimise_joins_run_commands():
    build = BuildDescription(from_image="alpine", run_commands=["a", "  ", "b"], optimise=True)
    assert "RUN a && b" in _lines(build)


def test_shell_form_becomes_exec_array():
    build = BuildDescription(from_image="alpine", shell="/bin/bash -c")
    assert 'SHELL ["/bin/bash","-c"]' in _lines(build)


def test_health_check():
    build = BuildDescription(
        from_image="alpine",
        health_check=HealthCheckConfiguration(cmd="curl -f http://localhost/", interval="5s", retries=3),
    )
    assert "HEALTHCHECK --interval=5s --retries=3 CMD curl -f http://localhost/" in _lines(build)

    disabled = BuildDescription(health_check=HealthCheckConfiguration(mode=HealthCheckMode.NONE))
    assert _lines(disabled) == ["HEALTHCHECK NONE"]


def test_health_check_without_command():
    build = BuildDescription(health_check=HealthCheckConfiguration())
    with pytest.raises(ConfigurationError):
        DockerfileBuilder(build).content()


def test_target_dir_not_exported():
    build = BuildDescription(
        from_image="alpine",
        export_target_dir=False,
        assemblies=[AssemblyDescriptor(target_dir="/maven")],
    )
    assert _lines(build) == ["FROM alpine", "COPY /maven /maven/"]


def test_each_target_dir_exported_once():
    build = BuildDescription(
        assemblies=[
            AssemblyDescriptor(id="deps", target_dir="/deployments"),
            AssemblyDescriptor(id="app", target_dir="/deployments"),
        ],
    )
    assert _lines(build) == [
        "COPY /deps/deployments /deployments/",
        'VOLUME ["/deployments"]',
        "COPY /app/deployments /deployments/",
    ]


def test_write(tmp_path):
    path = DockerfileBuilder(BuildDescription(from_image="alpine")).write(str(tmp_path / "build"))
    with open(path) as f:
        assert f.read() == "FROM alpine\n"


@pytest.mark.parametrize("value,expected", [
    ("plain", "plain"),
    ("", '""'),
    ("two words", '"two words"'),
    ("$HOME", '"$HOME"'),
])
def test_quote_value(value, expected):
    assert quote_value(value) == expected


def test_chown_user():
    assert chown_user("app:app:app") == "app:app"
    assert chown_user("app") == "app"
    assert chown_user(None) is None
