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
Loader for dockpack.yml project files.
"""
import os
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

import yaml
from dotenv import dotenv_values
from pydantic import ValidationError

from ..errors import ConfigurationError
from ..MODELS.project_config import ProjectConfiguration
from ..UTILS.string_interpolation import EnvironmentInterpolator

DEFAULT_CONFIG_FILE = "dockpack.yml"


class ConfigParser:
    """
    Parser for dockpack.yml files.

    ${VAR}, ${VAR:-default} and ${VAR:+alt} are replaced before the YAML is
    read. Values come from the process environment, which wins over an
    optional .env file.
    """
    def __init__(
        self,
        context: Optional[Mapping[str, str]] = None,
        env_file: Optional[Union[str, Path]] = None,
    ):
        """
        Initializes the parser.

        :param context: Variables for interpolation; the process environment when omitted.
        :param env_file: Optional .env file providing defaults.
        """
        dotenv: Dict[str, Optional[str]] = {}
        if env_file is not None:
            if not Path(env_file).is_file():
                raise ConfigurationError(f"Env file {env_file} doesn't exist")
            dotenv = dotenv_values(env_file)
        self.context = EnvironmentInterpolator.merged_context(
            dotenv, context if context is not None else os.environ
        )

    def parse(self, config_path: Union[str, Path]) -> ProjectConfiguration:
        """
        Parses a project file. A relative ``base_dir`` is taken relative to
        the file's directory.

        :param config_path: Path to the project file.
        :return: Validated configuration.
        :raises ConfigurationError: If the file is missing, unreadable or invalid.
        """
        path = Path(config_path)
        try:
            content = path.read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration {path}", cause=e) from e
        config = self.parse_from_string(content, source=str(path))
        base_dir = Path(config.base_dir)
        if not base_dir.is_absolute():
            config.base_dir = str((path.absolute().parent / base_dir).resolve())
        return config

    def parse_from_string(self, content: str, source: str = "<string>") -> ProjectConfiguration:
        """
        Parses project configuration from YAML text.

        :param content: YAML content.
        :param source: Name used in error messages.
        :return: Validated configuration.
        """
        try:
            content = EnvironmentInterpolator.interpolate(content, self.context)
        except KeyError as e:
            raise ConfigurationError(
                f"Unresolved variable in {source}", cause=e, context={"error": e.args[0]}
            ) from e

        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"{source} is not valid YAML", cause=e, context={"error": str(e)}) from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"{source} must contain a mapping at top level")

        try:
            return ProjectConfiguration.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid configuration in {source}", cause=e, context={"errors": _summarize(e)}
            ) from e


def _summarize(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        problems.append(f"{location}: {item.get('msg')}")
    return "; ".join(problems)
