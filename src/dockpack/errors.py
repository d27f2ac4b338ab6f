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
Error types raised by dockpack.

Every error carries a human readable message, the underlying cause (if any)
and an optional context mapping that is rendered below the message.
"""

from typing import Mapping, Optional


class DockpackError(Exception):
    """Base error carrying a message, an optional cause and context."""

    def __init__(
        self,
        message: str,
        *,
        cause: Optional[BaseException] = None,
        context: Optional[Mapping[str, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.context = dict(context or {})
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        parts = [self.message]
        for key, value in self.context.items():
            if value:
                parts.append(f"  {key}: {value}")
        return "\n".join(parts)


class ConfigurationError(DockpackError):
    """Malformed image name, missing mandatory field or invalid setting."""


class ArchiveError(DockpackError):
    """I/O failure while assembling files or writing a tar archive."""


class RegistryProtocolError(DockpackError):
    """
    Failure talking to the container engine or a registry.

    ``retryable`` is set for server side (5xx) and transport failures; only
    push and pull act on it.
    """

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        registry: Optional[str] = None,
        retryable: bool = False,
        cause: Optional[BaseException] = None,
        context: Optional[Mapping[str, str]] = None,
    ):
        ctx = dict(context or {})
        if registry:
            ctx.setdefault("registry", registry)
        if status is not None:
            ctx.setdefault("status", str(status))
        super().__init__(message, cause=cause, context=ctx)
        self.status = status
        self.registry = registry
        self.retryable = retryable


class CredentialError(DockpackError):
    """Credentials could not be resolved or a credential helper failed."""


class PullPolicyViolation(DockpackError):
    """The pull policy forbids fetching an image that is missing locally."""
