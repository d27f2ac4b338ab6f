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
Credential resolution for push and pull.

Sources are consulted in a fixed order and the first one yielding
credentials wins:

1. explicit configuration (DOCKPACK_DOCKER_* environment, then RegistryConfig.auth)
2. server entries of the registry settings, matched by id
3. the docker CLI config file (credential helpers, then inline auths)
4. for ECR hosts, the local AWS credentials chain

Explicit or server credentials for an ECR host are AWS keys and are
exchanged for a registry login unless extended auth is skipped.
"""

import logging
import os
from typing import Callable, List, Mapping, Optional

from ..errors import ConfigurationError
from ..MODELS.auth_config import AuthConfig, AuthSettings, RegistryConfig
from .aws_credentials import AwsCredentials, AwsCredentialsProvider, default_credentials_chain
from .docker_config import DockerConfigFile
from .ecr_auth import EcrExtendedAuth

logger = logging.getLogger(__name__)

ENV_PREFIX = "DOCKPACK_DOCKER_"
DOCKER_HUB_REGISTRIES = ("docker.io", "index.docker.io", "registry.hub.docker.com")


class CredentialResolver:
    """
    Builds a fresh AuthConfig for every registry operation.
    """

    def __init__(
        self,
        registry_config: Optional[RegistryConfig] = None,
        environ: Optional[Mapping[str, str]] = None,
        docker_config_loader: Optional[Callable[[], Optional[DockerConfigFile]]] = None,
        aws_credentials: Optional[AwsCredentialsProvider] = None,
        ecr_auth_factory: Optional[Callable[[str], EcrExtendedAuth]] = None,
    ):
        """
        Initialize the resolver.

        Args:
            registry_config: Configured registry, explicit credentials and server settings
            environ: Environment to read DOCKPACK_DOCKER_* and AWS_* from
            docker_config_loader: Returns the docker CLI config, if any
            aws_credentials: Local AWS credentials source for ECR hosts
            ecr_auth_factory: Creates the ECR exchange for a registry host
        """
        self.registry_config = registry_config or RegistryConfig()
        self.environ = environ if environ is not None else os.environ
        self.docker_config_loader = docker_config_loader or (
            lambda: DockerConfigFile.load(environ=self.environ)
        )
        self.aws_credentials = aws_credentials or default_credentials_chain(self.environ)
        self.ecr_auth_factory = ecr_auth_factory or (
            lambda registry: EcrExtendedAuth(registry, environ=self.environ)
        )

    def create_auth_config(
        self, is_push: bool, user: Optional[str], registry: Optional[str]
    ) -> Optional[AuthConfig]:
        """
        Resolve credentials for one push or pull.

        Args:
            is_push: Push (True) or pull (False) operation
            user: Repository user part, used to match server ids '<registry>/<user>'
            registry: Registry host, None for the default registry

        Returns:
            The credentials, or None to proceed anonymously

        Raises:
            ConfigurationError: A username without a password was configured
            CredentialError: A credential helper or the ECR exchange failed
        """
        auth = self._from_environment(is_push) or self._from_settings(is_push)
        if auth is None:
            auth = self._from_server_settings(user, registry)
        if auth is not None:
            return self._extend(registry, auth)

        docker_config = self.docker_config_loader()
        if docker_config is not None:
            auth = docker_config.get_auth_config(registry)
            if auth is not None:
                logger.debug("Using credentials for %s from %s", registry, docker_config.path)
                return auth

        ecr = self.ecr_auth_factory(registry) if registry else None
        if ecr is not None and ecr.is_aws_registry:
            credentials = self.aws_credentials.resolve()
            if credentials is not None:
                return self._from_aws(ecr, credentials)

        logger.debug("No credentials found for %s", registry or "default registry")
        return None

    def _from_environment(self, is_push: bool) -> Optional[AuthConfig]:
        scope = "PUSH_" if is_push else "PULL_"
        for prefix in (ENV_PREFIX + scope, ENV_PREFIX):
            username = self.environ.get(prefix + "USERNAME")
            if username:
                password = self.environ.get(prefix + "PASSWORD")
                if not password:
                    raise ConfigurationError(f"No {prefix}PASSWORD given when using authentication")
                return AuthConfig(
                    username=username,
                    password=self.registry_config.decrypt(password),
                    email=self.environ.get(prefix + "EMAIL"),
                )
        return None

    def _from_settings(self, is_push: bool) -> Optional[AuthConfig]:
        settings: AuthSettings = self.registry_config.auth.for_operation(is_push)
        if settings.username:
            if not settings.password:
                raise ConfigurationError(
                    f"No password provided for username {settings.username}"
                )
            return AuthConfig(
                username=settings.username,
                password=self.registry_config.decrypt(settings.password),
                email=settings.email,
            )
        if settings.identity_token:
            return AuthConfig.from_identity_token(settings.identity_token)
        return None

    def _from_server_settings(self, user: Optional[str], registry: Optional[str]) -> Optional[AuthConfig]:
        for server_id in self._server_ids(user, registry):
            for server in self.registry_config.settings:
                if server.id == server_id and server.username:
                    logger.debug("Using server settings '%s'", server.id)
                    return AuthConfig(
                        username=server.username,
                        password=self.registry_config.decrypt(server.password),
                        email=server.email,
                    )
        return None

    @staticmethod
    def _server_ids(user: Optional[str], registry: Optional[str]) -> List[str]:
        registries = [registry] if registry else list(DOCKER_HUB_REGISTRIES)
        ids = []
        for candidate in registries:
            if user:
                ids.append(f"{candidate}/{user}")
            ids.append(candidate)
        return ids

    def _extend(self, registry: Optional[str], auth: AuthConfig) -> AuthConfig:
        if not registry or self.registry_config.skip_extended_auth:
            return auth
        ecr = self.ecr_auth_factory(registry)
        if not ecr.is_aws_registry:
            return auth
        credentials = AwsCredentials(auth.username or "", auth.password or "")
        return ecr.extended_auth(credentials)

    def _from_aws(self, ecr: EcrExtendedAuth, credentials: AwsCredentials) -> AuthConfig:
        if self.registry_config.skip_extended_auth:
            return AuthConfig(
                username=credentials.access_key_id,
                password=credentials.secret_access_key,
            )
        return ecr.extended_auth(credentials)
