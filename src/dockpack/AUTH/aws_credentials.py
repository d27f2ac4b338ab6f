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
Sources of local AWS credentials.

The caller picks the providers; nothing probes at runtime for which AWS
libraries happen to be importable.
"""

import json
import logging
import os
import socket
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional
from urllib.error import URLError
from urllib.request import Request, urlopen

from ..errors import CredentialError

logger = logging.getLogger(__name__)

DEFAULT_ECS_METADATA_ENDPOINT = "http://169.254.170.2"


@dataclass(frozen=True)
class AwsCredentials:
    """IAM credentials used to sign AWS requests."""

    access_key_id: str
    secret_access_key: str
    session_token: Optional[str] = None

    def __repr__(self) -> str:
        return f"AwsCredentials(access_key_id={self.access_key_id!r}, secret_access_key=***)"


class AwsCredentialsProvider:
    """Returns credentials, or None when this source has none."""

    def resolve(self) -> Optional[AwsCredentials]:
        raise NotImplementedError


class StaticCredentialsProvider(AwsCredentialsProvider):
    def __init__(self, credentials: Optional[AwsCredentials]):
        self.credentials = credentials

    def resolve(self) -> Optional[AwsCredentials]:
        return self.credentials


class EnvironmentCredentialsProvider(AwsCredentialsProvider):
    """AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY and AWS_SESSION_TOKEN."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self.environ = environ if environ is not None else os.environ

    def resolve(self) -> Optional[AwsCredentials]:
        access_key = self.environ.get("AWS_ACCESS_KEY_ID")
        secret_key = self.environ.get("AWS_SECRET_ACCESS_KEY")
        if not access_key or not secret_key:
            return None
        return AwsCredentials(access_key, secret_key, self.environ.get("AWS_SESSION_TOKEN") or None)


class EcsMetadataCredentialsProvider(AwsCredentialsProvider):
    """
    Task role credentials served by the ECS container metadata endpoint.

    Only consulted when AWS_CONTAINER_CREDENTIALS_RELATIVE_URI is set. An
    unreachable endpoint means no credentials from this source.
    """

    def __init__(
        self,
        environ: Optional[Mapping[str, str]] = None,
        timeout: float = 1.0,
        opener: Callable[..., Any] = urlopen,
    ):
        self.environ = environ if environ is not None else os.environ
        self.timeout = timeout
        self.opener = opener

    def resolve(self) -> Optional[AwsCredentials]:
        relative_uri = self.environ.get("AWS_CONTAINER_CREDENTIALS_RELATIVE_URI")
        if not relative_uri:
            return None
        endpoint = self.environ.get("ECS_METADATA_ENDPOINT") or DEFAULT_ECS_METADATA_ENDPOINT
        url = endpoint.rstrip("/") + "/" + relative_uri.lstrip("/")
        try:
            with self.opener(Request(url), timeout=self.timeout) as response:
                data = json.loads(response.read().decode("utf-8"))
        except (URLError, socket.timeout, ConnectionError) as e:
            logger.warning("ECS metadata endpoint %s not reachable: %s", url, e)
            return None
        except json.JSONDecodeError as e:
            raise CredentialError(f"Invalid credentials document from {url}", cause=e) from e

        access_key = data.get("AccessKeyId")
        secret_key = data.get("SecretAccessKey")
        if not access_key or not secret_key:
            return None
        return AwsCredentials(access_key, secret_key, data.get("Token"))


class SdkCredentialsProvider(AwsCredentialsProvider):
    """
    Credentials from the boto3 default chain (profiles, SSO, instance roles ...).

    Requires the ``aws`` extra. A session may be injected; otherwise a default
    ``boto3.Session`` is created on first use.
    """

    def __init__(self, session: Any = None):
        self.session = session

    def resolve(self) -> Optional[AwsCredentials]:
        session = self.session
        if session is None:
            try:
                import boto3
            except ImportError as e:
                raise CredentialError(
                    "AWS SDK credentials were requested but boto3 is not installed",
                    cause=e,
                    context={"hint": "pip install 'dockpack[aws]'"},
                ) from e
            session = self.session = boto3.Session()
        credentials = session.get_credentials()
        if credentials is None:
            return None
        frozen = credentials.get_frozen_credentials()
        if not frozen.access_key or not frozen.secret_key:
            return None
        return AwsCredentials(frozen.access_key, frozen.secret_key, frozen.token)


class ChainCredentialsProvider(AwsCredentialsProvider):
    """First provider returning credentials wins."""

    def __init__(self, providers: List[AwsCredentialsProvider]):
        self.providers = list(providers)

    def resolve(self) -> Optional[AwsCredentials]:
        for provider in self.providers:
            credentials = provider.resolve()
            if credentials is not None:
                logger.debug("AWS credentials from %s", type(provider).__name__)
                return credentials
        return None


def default_credentials_chain(
    environ: Optional[Mapping[str, str]] = None, use_sdk: bool = False
) -> ChainCredentialsProvider:
    """
    Environment, then ECS metadata, then (if ``use_sdk``) the boto3 chain.
    """
    providers: List[AwsCredentialsProvider] = [
        EnvironmentCredentialsProvider(environ),
        EcsMetadataCredentialsProvider(environ),
    ]
    if use_sdk:
        providers.append(SdkCredentialsProvider())
    return ChainCredentialsProvider(providers)
