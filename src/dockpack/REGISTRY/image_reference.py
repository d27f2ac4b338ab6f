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
Image name parsing and handling.
Parses names like 'nginx', 'org/app:1.0' or 'quay.io/org/app:1.0@sha256:...'.
"""

import re
from dataclasses import dataclass, replace
from typing import Optional

from ..errors import ConfigurationError

_COMPONENT_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST_RE = re.compile(r"^[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}$")
_LABEL = r"[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?"
_REGISTRY_RE = re.compile(rf"^{_LABEL}(?:\.{_LABEL})*(?::[0-9]+)?$")


def is_registry_segment(segment: str) -> bool:
    """A leading path segment names a registry when it looks like a host."""
    return "." in segment or ":" in segment or segment == "localhost"


@dataclass(frozen=True)
class ImageName:
    """
    Parsed image name.

    Unlike a pull reference, no default registry is injected: an image name
    without a registry part keeps ``registry`` as None so that a configured
    registry can be applied later.

    Examples:
        - nginx -> repository 'nginx', tag 'latest'
        - org/app:1.0 -> repository 'org/app', tag '1.0'
        - localhost:5000/app -> registry 'localhost:5000', repository 'app'
    """

    repository: str
    registry: Optional[str] = None
    tag: Optional[str] = None
    digest: Optional[str] = None

    DEFAULT_TAG = "latest"

    @classmethod
    def parse(cls, name: str, given_tag: Optional[str] = None) -> "ImageName":
        """
        Parse an image name.

        Args:
            name: Image name, optionally with registry, tag and digest
            given_tag: Tag to use when the name carries none

        Returns:
            Parsed ImageName.

        Raises:
            ConfigurationError: If the name does not follow the image name grammar.
        """
        if not name or not name.strip():
            raise ConfigurationError("Image name must not be empty")
        reference = name.strip()

        digest = None
        if "@" in reference:
            reference, digest = reference.split("@", 1)

        tag = None
        last_slash = reference.rfind("/")
        last_colon = reference.rfind(":")
        if last_colon > last_slash:
            tag = reference[last_colon + 1:]
            reference = reference[:last_colon]
        if tag is None and digest is None:
            tag = given_tag or cls.DEFAULT_TAG

        registry = None
        parts = reference.split("/")
        if len(parts) > 1 and is_registry_segment(parts[0]):
            registry = parts[0]
            parts = parts[1:]
        repository = "/".join(parts)

        image = cls(repository=repository, registry=registry, tag=tag, digest=digest)
        image._validate(name)
        return image

    def _validate(self, original: str) -> None:
        errors = []
        if not self.repository:
            errors.append("repository is empty")
        for component in self.repository.split("/"):
            if not _COMPONENT_RE.match(component):
                errors.append(f"repository part '{component}' is invalid")
        if self.registry is not None and not _REGISTRY_RE.match(self.registry):
            errors.append(f"registry '{self.registry}' is invalid")
        if self.tag is not None and not _TAG_RE.match(self.tag):
            errors.append(f"tag '{self.tag}' is invalid")
        if self.digest is not None and not _DIGEST_RE.match(self.digest):
            errors.append(f"digest '{self.digest}' is invalid")
        if errors:
            raise ConfigurationError(
                f"Given image name '{original}' is invalid",
                context={"problems": "; ".join(errors)},
            )

    @property
    def has_registry(self) -> bool:
        return bool(self.registry)

    @property
    def user(self) -> Optional[str]:
        """First repository path segment if the repository is namespaced."""
        if "/" in self.repository:
            return self.repository.split("/", 1)[0]
        return None

    @property
    def simple_name(self) -> str:
        """Repository without its user part."""
        if "/" in self.repository:
            return self.repository.split("/", 1)[1]
        return self.repository

    @property
    def full_name(self) -> str:
        """Full name including registry (if any), tag and digest."""
        return self.get_full_name()

    def get_full_name(self, registry: Optional[str] = None) -> str:
        """
        Get the full name, prefixing ``registry`` only if none is embedded.

        Args:
            registry: Fallback registry

        Returns:
            Full image name
        """
        name = self.name_without_tag(registry)
        if self.tag:
            name = f"{name}:{self.tag}"
        if self.digest:
            name = f"{name}@{self.digest}"
        return name

    def name_without_tag(self, registry: Optional[str] = None) -> str:
        effective = self.registry or registry
        if effective:
            return f"{effective}/{self.repository}"
        return self.repository

    def with_tag(self, tag: str) -> "ImageName":
        return replace(self, tag=tag, digest=None)

    def with_registry(self, registry: Optional[str]) -> "ImageName":
        return replace(self, registry=registry)

    def __str__(self) -> str:
        return self.full_name

    def __repr__(self) -> str:
        return f"ImageName({self.full_name})"
