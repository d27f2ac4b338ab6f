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
Docker credential helpers (docker-credential-<name> get).
"""

import json
import logging
import subprocess
from typing import Callable, List, Optional

from ..errors import CredentialError
from ..MODELS.auth_config import AuthConfig

logger = logging.getLogger(__name__)

HELPER_PREFIX = "docker-credential-"
IDENTITY_TOKEN_USERNAME = "<token>"
CREDENTIALS_NOT_FOUND = "credentials not found"


class CredentialHelperRunner:
    """Looks up credentials for a registry host; None when it has none."""

    def resolve(self, host: str) -> Optional[AuthConfig]:
        raise NotImplementedError


class SubprocessCredentialHelperRunner(CredentialHelperRunner):
    """
    Runs the helper executable with the server URL on stdin and parses its
    JSON answer ({"ServerURL", "Username", "Secret"}).
    """

    def __init__(self, helper: str, runner: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self.helper = helper
        self.runner = runner

    @property
    def command(self) -> str:
        return HELPER_PREFIX + self.helper

    def resolve(self, host: str) -> Optional[AuthConfig]:
        """
        Try the host as given, then its https:// form.

        Raises:
            CredentialError: If the helper is missing or fails for another
                reason than unknown credentials.
        """
        for server_url in _lookup_keys(host):
            auth = self.get(server_url)
            if auth is not None:
                return auth
        return None

    def get(self, server_url: str) -> Optional[AuthConfig]:
        try:
            result = self.runner(
                [self.command, "get"],
                input=server_url,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise CredentialError(
                f"Credential helper {self.command} could not be started", cause=e
            ) from e

        output = (result.stdout or "").strip()
        if result.returncode != 0:
            message = output or (result.stderr or "").strip()
            if CREDENTIALS_NOT_FOUND in message.lower():
                logger.debug("%s has no credentials for %s", self.command, server_url)
                return None
            raise CredentialError(
                f"Error getting the credentials for {server_url} from the configured credential helper",
                context={"helper": self.command, "output": message},
            )
        try:
            data = json.loads(output)
        except json.JSONDecodeError as e:
            raise CredentialError(
                f"Credential helper {self.command} returned invalid JSON", cause=e
            ) from e

        username = data.get("Username")
        secret = data.get("Secret")
        if username == IDENTITY_TOKEN_USERNAME:
            return AuthConfig.from_identity_token(secret)
        return AuthConfig(username=username, password=secret)


def _lookup_keys(host: str) -> List[str]:
    keys = [host]
    if not host.startswith(("http://", "https://")):
        keys.append("https://" + host)
    return keys
