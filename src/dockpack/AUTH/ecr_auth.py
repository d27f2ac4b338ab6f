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
Exchange of AWS IAM credentials for an ECR registry login.

ECR does not accept IAM keys directly. A SigV4 signed GetAuthorizationToken
call returns a base64 'AWS:<password>' token valid for the registry.
"""

import json
import logging
import os
import re
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from ..errors import ConfigurationError, CredentialError
from ..MODELS.auth_config import AuthConfig
from .aws_credentials import AwsCredentials
from .aws_signer import AwsSigner4

logger = logging.getLogger(__name__)

AWS_REGISTRY = re.compile(r"^(\d{12})\.dkr\.ecr\.([a-z\-0-9]+)\.amazonaws\.com$")
LOCALSTACK_REGISTRY = re.compile(
    r"^(\d{12})\.dkr\.ecr\.([a-z0-9-]+)\.localhost\.localstack\.cloud:(\d+)$"
)

ECR_SERVICE = "ecr"
GET_AUTHORIZATION_TOKEN = "AmazonEC2ContainerRegistry_V20150921.GetAuthorizationToken"
CONTENT_TYPE = "application/x-amz-json-1.1"


def _match(registry: Optional[str]):
    if not registry:
        return None
    return AWS_REGISTRY.match(registry) or LOCALSTACK_REGISTRY.match(registry)


def is_aws_registry(registry: Optional[str]) -> bool:
    """True for '<12 digit account>.dkr.ecr.<region>.amazonaws.com' and LocalStack hosts."""
    return _match(registry) is not None


@dataclass
class SignedRequest:
    """A signed GetAuthorizationToken call ready to be sent."""

    url: str
    headers: Dict[str, str]
    body: bytes


class EcrExtendedAuth:
    """
    Performs the ECR credential exchange for one registry host.

    ``AWS_ENDPOINT_URL`` (taken from ``environ``) redirects the call, e.g. to
    LocalStack.
    """

    def __init__(
        self,
        registry: Optional[str],
        environ: Optional[Mapping[str, str]] = None,
        timeout: float = 30.0,
        opener: Callable[..., Any] = urlopen,
    ):
        self.registry = registry
        self.environ = environ if environ is not None else os.environ
        self.timeout = timeout
        self.opener = opener
        match = _match(registry)
        self.account_id = match.group(1) if match else None
        self.region = match.group(2) if match else None

    @property
    def is_aws_registry(self) -> bool:
        return self.account_id is not None

    @property
    def endpoint_url(self) -> Optional[str]:
        return self.environ.get("AWS_ENDPOINT_URL") or None

    def request_target(self):
        """
        Host to sign for and URL to call.

        With an endpoint override the URL is the endpoint with a trailing '/'
        and the host is the endpoint without scheme, slash and numeric port.
        """
        endpoint = self.endpoint_url
        if endpoint:
            url = endpoint if endpoint.endswith("/") else endpoint + "/"
            host = re.sub(r"^[a-zA-Z][a-zA-Z0-9+.-]*://", "", endpoint).rstrip("/")
            name, sep, port = host.rpartition(":")
            if sep and port.isdigit():
                host = name
            return host, url
        host = f"api.ecr.{self.region}.amazonaws.com"
        return host, f"https://{host}/"

    def create_signed_request(
        self, credentials: AwsCredentials, signing_time: Optional[datetime] = None
    ) -> SignedRequest:
        if not self.is_aws_registry:
            raise ConfigurationError(f"{self.registry} is not an ECR registry")
        host, url = self.request_target()
        body = json.dumps({"registryIds": [self.account_id]}, separators=(",", ":")).encode("utf-8")
        headers = {
            "host": host,
            "Content-Type": CONTENT_TYPE,
            "X-Amz-Target": GET_AUTHORIZATION_TOKEN,
        }
        signer = AwsSigner4(self.region, ECR_SERVICE)
        signed = signer.sign("POST", url, headers, body, credentials, signing_time or datetime.now(timezone.utc))
        return SignedRequest(url=url, headers=signed, body=body)

    def extended_auth(self, credentials: AwsCredentials) -> AuthConfig:
        """
        Trade IAM credentials for registry credentials.

        Args:
            credentials: AWS access key, secret key and optional session token

        Returns:
            AuthConfig carrying the 'AWS' user and the temporary password

        Raises:
            CredentialError: On a non-200 answer or an unusable response body
        """
        signed = self.create_signed_request(credentials)
        request = Request(signed.url, data=signed.body, headers=signed.headers, method="POST")
        logger.debug("Requesting ECR authorization token for %s from %s", self.registry, signed.url)
        try:
            with self.opener(request, timeout=self.timeout) as response:
                status = getattr(response, "status", 200)
                payload = response.read().decode("utf-8")
        except HTTPError as e:
            body = e.read().decode("utf-8", errors="replace")
            raise CredentialError(
                f"AWS authentication failure - Status: {e.code}, Response: {body}", cause=e
            ) from e
        except (URLError, socket.timeout, ConnectionError) as e:
            raise CredentialError(
                f"AWS authentication failure - cannot reach {signed.url}", cause=e
            ) from e

        if status != 200:
            raise CredentialError(f"AWS authentication failure - Status: {status}, Response: {payload}")
        try:
            token = json.loads(payload)["authorizationData"][0]["authorizationToken"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise CredentialError("AWS authentication failure - unexpected response", cause=e) from e
        return AuthConfig.from_credentials_encoded(token, email="none")
