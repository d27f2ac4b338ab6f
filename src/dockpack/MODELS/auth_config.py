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
Registry credentials and the settings they are resolved from.
"""
import base64
import json
from typing import Callable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..errors import ConfigurationError


def _identity(value: str) -> str:
    return value


class AuthConfig(BaseModel):
    """
    Credentials for one registry operation.

    Instances are immutable and built fresh for every push or pull; they are
    never cached or persisted.
    """
    model_config = ConfigDict(frozen=True)

    username: Optional[str] = None
    password: Optional[str] = None
    email: Optional[str] = None
    identity_token: Optional[str] = None
    auth: Optional[str] = None

    @classmethod
    def from_credentials_encoded(cls, encoded: str, email: Optional[str] = None) -> "AuthConfig":
        """
        Build credentials from a base64 'user:password' blob.

        Args:
            encoded: Base64 encoded 'user:password'
            email: Optional e-mail

        Returns:
            AuthConfig with username and password set.
        """
        try:
            decoded = base64.b64decode(encoded).decode("utf-8")
        except (ValueError, UnicodeDecodeError) as e:
            raise ConfigurationError("Cannot decode registry credentials", cause=e) from e
        username, sep, password = decoded.partition(":")
        if not sep:
            raise ConfigurationError("Registry credentials must have the form 'user:password'")
        return cls(username=username, password=password, email=email, auth=encoded)

    @classmethod
    def from_identity_token(cls, token: str) -> "AuthConfig":
        return cls(identity_token=token)

    @property
    def credentials_encoded(self) -> str:
        """Base64 'user:password', as stored in registry config files."""
        if self.auth:
            return self.auth
        raw = f"{self.username or ''}:{self.password or ''}"
        return base64.b64encode(raw.encode("utf-8")).decode("ascii")

    def to_header_value(self, registry: Optional[str] = None) -> str:
        """
        Encode for the ``X-Registry-Auth`` header of the engine API.

        Args:
            registry: Registry host to put in 'serveraddress'

        Returns:
            URL-safe base64 of the JSON credentials
        """
        payload = {}
        if self.identity_token:
            payload["identitytoken"] = self.identity_token
        else:
            if self.username is not None:
                payload["username"] = self.username
            if self.password is not None:
                payload["password"] = self.password
        if self.email:
            payload["email"] = self.email
        if registry:
            payload["serveraddress"] = registry
        raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii")

    def __repr__(self) -> str:
        return f"AuthConfig(username={self.username!r}, password=***)"


class AuthSettings(BaseModel):
    """
    Explicitly configured credentials, optionally overridden for push or pull.
    """
    username: Optional[str] = None
    password: Optional[str] = None
    email: Optional[str] = None
    identity_token: Optional[str] = None
    push: Optional["AuthSettings"] = None
    pull: Optional["AuthSettings"] = None

    def for_operation(self, is_push: bool) -> "AuthSettings":
        """The push/pull override when it carries a username, else self."""
        override = self.push if is_push else self.pull
        if override is not None and (override.username or override.identity_token):
            return override
        return self


class RegistryServer(BaseModel):
    """
    A server entry of the build tool's credential store, matched by id.
    """
    id: str
    username: Optional[str] = None
    password: Optional[str] = None
    email: Optional[str] = None


class RegistryConfig(BaseModel):
    """
    Where to push/pull and how to authenticate.

    ``registry`` may stay unset, in which case whatever the image name or the
    engine implies is used. ``password_decryptor`` is applied to every
    password taken from configuration or server settings.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    registry: Optional[str] = None
    auth: AuthSettings = Field(default_factory=AuthSettings)
    settings: List[RegistryServer] = []
    skip_extended_auth: bool = False
    password_decryptor: Callable[[str], str] = Field(default=_identity, exclude=True)

    def decrypt(self, password: Optional[str]) -> Optional[str]:
        if password is None:
            return None
        return self.password_decryptor(password)
