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
Generates a Dockerfile from a structural build description.
"""
import json
import os
import re
import shlex
from typing import Any, Dict, List, Optional

from jinja2 import Template

from ..errors import ConfigurationError
from ..MODELS.image_configuration import (
    Arguments,
    AssemblyDescriptor,
    BuildDescription,
    HealthCheckMode,
)

DOCKERFILE_NAME = "Dockerfile"

DOCKERFILE_TEMPLATE = """\
{% if from_image %}
FROM {{ from_image }}
{% endif %}
{% if maintainer %}
MAINTAINER {{ maintainer }}
{% endif %}
{% for key, value in env %}
ENV {{ key }}={{ value }}
{% endfor %}
{% for key, value in labels %}
LABEL {{ key }}={{ value }}
{% endfor %}
{% for port in ports %}
EXPOSE {{ port }}
{% endfor %}
{% for copy in copies %}
COPY {% if copy.chown %}--chown={{ copy.chown }} {% endif %}{{ copy.source }} {{ copy.dest }}
{% if copy.volume %}
VOLUME [{{ copy.volume }}]
{% endif %}
{% endfor %}
{% if workdir %}
WORKDIR {{ workdir }}
{% endif %}
{% for volume in volumes %}
VOLUME [{{ volume }}]
{% endfor %}
{% if shell %}
SHELL {{ shell }}
{% endif %}
{% for command in run %}
RUN {{ command }}
{% endfor %}
{% if health_check %}
HEALTHCHECK {{ health_check }}
{% endif %}
{% if entry_point %}
ENTRYPOINT {{ entry_point }}
{% endif %}
{% if cmd %}
CMD {{ cmd }}
{% endif %}
{% if user %}
USER {{ user }}
{% endif %}
"""

_PORT_RE = re.compile(r"^\d+(/(tcp|udp))?$")
_NEEDS_QUOTES = re.compile(r"[\s\"'\\$]")


def quote_value(value: str) -> str:
    """Quote a value when it holds whitespace, quotes, '$' or backslashes."""
    if value == "":
        return '""'
    if _NEEDS_QUOTES.search(value):
        return json.dumps(value, ensure_ascii=False)
    return value


def exec_form(args: List[str]) -> str:
    return json.dumps(args, separators=(",", ":"), ensure_ascii=False)


def render_arguments(args: Optional[Arguments]) -> Optional[str]:
    """Shell form stays a plain string, exec form becomes a JSON array."""
    if args is None or args.is_empty():
        return None
    if args.shell:
        return args.shell
    return exec_form(args.exec_args)


def validate_port(port: str) -> str:
    if not _PORT_RE.match(port):
        raise ConfigurationError(
            f"Invalid port mapping '{port}'",
            context={"expected": "<port> or <port>/tcp or <port>/udp"},
        )
    return port


def chown_user(user: Optional[str]) -> Optional[str]:
    """'user:group:run-user' style assembly users keep 'user:group' for ownership."""
    if not user:
        return None
    parts = user.split(":")
    return ":".join(parts[:2])


class DockerfileBuilder:
    """
    Renders a Dockerfile for a build description.

    Instructions are written in a fixed order: FROM, MAINTAINER, ENV, LABEL,
    EXPOSE, one COPY (plus VOLUME) per assembly layer, WORKDIR, VOLUME, SHELL,
    RUN, HEALTHCHECK, ENTRYPOINT, CMD and USER. Empty values are left out.
    """

    def __init__(self, build: BuildDescription):
        """
        Initializes the Dockerfile builder.

        :param build: The build description to render.
        """
        self.build = build
        self.template = Template(
            DOCKERFILE_TEMPLATE, trim_blocks=True, lstrip_blocks=True, keep_trailing_newline=True
        )

    def content(self) -> str:
        """
        Render the Dockerfile.

        :return: The Dockerfile text.
        :raises ConfigurationError: If a port is not a valid port spec.
        """
        return self.template.render(**self._context())

    def write(self, directory: str) -> str:
        """
        Writes the Dockerfile into a directory.

        :param directory: Directory to write into, created when missing.
        :return: The path of the written Dockerfile.
        """
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, DOCKERFILE_NAME)
        with open(path, "w") as f:
            f.write(self.content())
        return path

    def _context(self) -> Dict[str, Any]:
        build = self.build
        return {
            "from_image": build.from_image,
            "maintainer": build.maintainer,
            "env": [(k, quote_value(v)) for k, v in build.env.items()],
            "labels": [(k, quote_value(v)) for k, v in build.labels.items()],
            "ports": [validate_port(p) for p in build.ports],
            "copies": self._copies(build.assemblies),
            "workdir": build.workdir,
            "volumes": [json.dumps(v) for v in build.volumes],
            "shell": self._shell(build.shell),
            "run": self._run_commands(),
            "health_check": self._health_check(),
            "entry_point": render_arguments(build.entry_point),
            "cmd": render_arguments(build.cmd),
            "user": build.user,
        }

    def _copies(self, assemblies: List[AssemblyDescriptor]) -> List[Dict[str, Optional[str]]]:
        copies = []
        exported = set()
        for assembly in assemblies:
            target = assembly.target_dir
            if assembly.id:
                source = f"/{assembly.id}{target}" if target != "/" else f"/{assembly.id}/"
            else:
                source = target
            volume = None
            if self.build.export_target_dir and target != "/" and target not in exported:
                exported.add(target)
                volume = json.dumps(target)
            copies.append({
                "source": source,
                "dest": target if target.endswith("/") else f"{target}/",
                "chown": chown_user(assembly.user),
                "volume": volume,
            })
        return copies

    @staticmethod
    def _shell(shell: Optional[Arguments]) -> Optional[str]:
        if shell is None or shell.is_empty():
            return None
        if shell.shell:
            return exec_form(shlex.split(shell.shell))
        return exec_form(shell.exec_args)

    def _run_commands(self) -> List[str]:
        commands = [c for c in self.build.run_commands if c and c.strip()]
        if self.build.optimise and commands:
            return [" && ".join(commands)]
        return commands

    def _health_check(self) -> Optional[str]:
        hc = self.build.health_check
        if hc is None:
            return None
        if hc.mode == HealthCheckMode.NONE:
            return "NONE"
        command = render_arguments(hc.cmd)
        if command is None:
            raise ConfigurationError("Health check in mode 'cmd' needs a command")
        options = []
        if hc.interval:
            options.append(f"--interval={hc.interval}")
        if hc.timeout:
            options.append(f"--timeout={hc.timeout}")
        if hc.start_period:
            options.append(f"--start-period={hc.start_period}")
        if hc.retries is not None:
            options.append(f"--retries={hc.retries}")
        options.append(f"CMD {command}")
        return " ".join(options)
