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
AWS Signature Version 4 request signing.

Signs plain HTTP requests (method, URL, headers, body) without an AWS SDK:

1. canonical request
2. string to sign
3. signing key derived from the secret key, date, region and service
4. hex HMAC signature, returned in an ``Authorization`` header
"""

import hashlib
import hmac
import re
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, quote, urlsplit

from .aws_credentials import AwsCredentials

_WHITESPACE = re.compile(r"\s+")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hmac_sha256(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


class AwsSigner4:
    """
    Signs requests for one AWS region and service.
    """

    ALGORITHM = "AWS4-HMAC-SHA256"
    TERMINATOR = "aws4_request"
    SKIPPED_HEADERS = ("connection",)

    def __init__(self, region: str, service: str):
        """
        Initialize the signer.

        Args:
            region: AWS region, e.g. 'eu-west-1'
            service: Service name used in the credential scope, e.g. 'ecr'
        """
        self.region = region
        self.service = service

    def sign(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: bytes,
        credentials: AwsCredentials,
        signing_time: Optional[datetime] = None,
    ) -> Dict[str, str]:
        """
        Sign a request.

        The session token, when present, is added as ``X-Amz-Security-Token``
        before signing and therefore is part of the signed headers.
        ``X-Amz-Date`` is added after the signed header set was taken and is
        only signed if the caller already supplied it.

        Args:
            method: HTTP method
            url: Full request URL
            headers: Request headers
            body: Request payload
            credentials: Access key, secret key and optional session token
            signing_time: Time of signing, now when not given

        Returns:
            A new header mapping including ``X-Amz-Date`` and ``Authorization``
        """
        when = _as_utc(signing_time or datetime.now(timezone.utc))
        timestamp = when.strftime("%Y%m%dT%H%M%SZ")
        date = when.strftime("%Y%m%d")

        signed = dict(headers)
        if not any(k.lower() == "host" for k in signed):
            signed["host"] = urlsplit(url).netloc
        if credentials.session_token:
            signed["X-Amz-Security-Token"] = credentials.session_token

        header_pairs = self.canonical_headers(signed)
        if not any(k.lower() == "x-amz-date" for k in signed):
            signed["X-Amz-Date"] = timestamp

        canonical = self.canonical_request(method, url, header_pairs, body)
        to_sign = self.string_to_sign(timestamp, date, canonical)
        signature = self.signature(self.signing_key(credentials.secret_access_key, date), to_sign)
        signed["Authorization"] = self.authorization_header(
            credentials.access_key_id, date, [k for k, _ in header_pairs], signature
        )
        return signed

    def canonical_headers(self, headers: Mapping[str, str]) -> List[Tuple[str, str]]:
        """Lower-cased, trimmed and sorted header pairs taking part in the signature."""
        pairs = {}
        for key, value in headers.items():
            name = key.strip().lower()
            if name in self.SKIPPED_HEADERS:
                continue
            pairs[name] = _WHITESPACE.sub(" ", str(value).strip())
        return sorted(pairs.items())

    def canonical_request(
        self, method: str, url: str, header_pairs: List[Tuple[str, str]], body: bytes
    ) -> str:
        parts = urlsplit(url)
        canonical_headers = "".join(f"{k}:{v}\n" for k, v in header_pairs)
        signed_headers = ";".join(k for k, _ in header_pairs)
        return "\n".join([
            method.upper(),
            parts.path or "/",
            self.canonical_query(parts.query),
            canonical_headers,
            signed_headers,
            sha256_hex(body or b""),
        ])

    @staticmethod
    def canonical_query(query: str) -> str:
        params = sorted(parse_qsl(query, keep_blank_values=True))
        return "&".join(
            f"{quote(k, safe='-_.~')}={quote(v, safe='-_.~')}" for k, v in params
        )

    def scope(self, date: str) -> str:
        return f"{date}/{self.region}/{self.service}/{self.TERMINATOR}"

    def string_to_sign(self, timestamp: str, date: str, canonical_request: str) -> str:
        return "\n".join([
            self.ALGORITHM,
            timestamp,
            self.scope(date),
            sha256_hex(canonical_request.encode("utf-8")),
        ])

    def signing_key(self, secret_access_key: str, date: str) -> bytes:
        k_date = hmac_sha256(f"AWS4{secret_access_key}".encode("utf-8"), date)
        k_region = hmac_sha256(k_date, self.region)
        k_service = hmac_sha256(k_region, self.service)
        return hmac_sha256(k_service, self.TERMINATOR)

    @staticmethod
    def signature(signing_key: bytes, string_to_sign: str) -> str:
        return hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

    def authorization_header(
        self, access_key_id: str, date: str, signed_headers: List[str], signature: str
    ) -> str:
        return (
            f"{self.ALGORITHM} Credential={access_key_id}/{self.scope(date)}, "
            f"SignedHeaders={';'.join(signed_headers)}, Signature={signature}"
        )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
