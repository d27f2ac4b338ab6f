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
Reader for the docker CLI configuration (~/.docker/config.json).
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from ..errors import ConfigurationError
from ..MODELS.auth_config import AuthConfig
from .credential_helper import CredentialHelperRunner, SubprocessCredentialHelperRunner

logger = logging.getLogger(__name__)

DOCKER_LOGIN_DEFAULT_REGISTRY = "https://index.docker.io/v1/"

HelperFactory = Callable[[str], CredentialHelperRunner]


def default_config_path(environ: Optional[Mapping[str, str]] = None) -> Path:
    environ = environ if environ is not None else os.environ
    config_dir = environ.get("DOCKER_CONFIG")
    if config_dir:
        return Path(config_dir) / "config.json"
    return Path.home() / ".docker" / "config.json"


class DockerConfigFile:
    """
    Parsed config.json.

    Lookup order for a registry: ``credHelpers`` entry, then ``credsStore``,
    then inline ``auths``. A helper that knows nothing about the registry
    lets the lookup continue with ``auths``.
    """

    def __init__(
        self,
        data: Dict[str, Any],
        path: Optional[Path] = None,
        helper_factory: HelperFactory = SubprocessCredentialHelperRunner,
    ):
        self.data = data
        self.path = path
        self.helper_factory = helper_factory

    @classmethod
    def load(
        cls,
        path: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
        helper_factory: HelperFactory = SubprocessCredentialHelperRunner,
    ) -> Optional["DockerConfigFile"]:
        """
        Read the file; None if it does not exist.

        Raises:
            ConfigurationError: If the file is not valid JSON.
        """
        path = Path(path) if path else default_config_path(environ)
        if not path.is_file():
            return None
        try:
            data = json.loads(path.read_text())
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Cannot read docker config {path}", cause=e) from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Docker config {path} is not a JSON object")
        return cls(data, path, helper_factory)

    def helper_for(self, registry: str) -> Optional[str]:
        helpers = self.data.get("credHelpers") or {}
        if registry in helpers:
            return helpers[registry]
        return self.data.get("credsStore") or None

    def get_auth_config(self, registry: Optional[str]) -> Optional[AuthConfig]:
        lookup = registry or DOCKER_LOGIN_DEFAULT_REGISTRY
        helper = self.helper_for(lookup)
        if helper:
            logger.debug("Using credential helper %s for %s", helper, lookup)
            auth = self.helper_factory(helper).resolve(lookup)
            if auth is not None:
                return auth
        return self.inline_auth(lookup)

    def inline_auth(self, registry: str) -> Optional[AuthConfig]:
        auths = self.data.get("auths") or {}
        entry = auths.get(registry)
        if entry is None and not registry.startswith(("http://", "https://")):
            entry = auths.get("https://" + registry)
        if not entry:
            return None
        if entry.get("identitytoken"):
            return AuthConfig.from_identity_token(entry["identitytoken"])
        encoded = entry.get("auth")
        if not encoded:
            return None
        return AuthConfig.from_credentials_encoded(encoded, email=entry.get("email"))
