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
Pull policy handling.
Tracks which images were already pulled during one build session.
"""

import logging
import threading
from enum import Enum
from typing import Dict, List, Union

from ..errors import ConfigurationError, PullPolicyViolation
from .image_reference import ImageName

logger = logging.getLogger(__name__)


class PullPolicy(str, Enum):
    """When to fetch an image from its registry."""

    ALWAYS = "Always"
    IF_NOT_PRESENT = "IfNotPresent"
    NEVER = "Never"

    @classmethod
    def parse(cls, value: Union[str, "PullPolicy", None]) -> "PullPolicy":
        """Parse a policy name case-insensitively, defaulting to IfNotPresent."""
        if value is None or value == "":
            return cls.IF_NOT_PRESENT
        if isinstance(value, cls):
            return value
        for policy in cls:
            if policy.value.lower() == str(value).lower():
                return policy
        raise ConfigurationError(
            f"Unknown pull policy '{value}'",
            context={"allowed": ", ".join(p.value for p in cls)},
        )


class ImagePullCache:
    """
    In-memory record of images pulled in the current session.

    The cache lives as long as the orchestrator owning it; nothing is
    persisted between runs.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pulled: Dict[str, bool] = {}

    def has_already_pulled(self, image: str) -> bool:
        with self._lock:
            return self._pulled.get(self._key(image), False)

    def pulled(self, image: str) -> None:
        with self._lock:
            self._pulled[self._key(image)] = True

    def clear(self) -> None:
        with self._lock:
            self._pulled.clear()

    def list_pulled(self) -> List[str]:
        with self._lock:
            return [name for name, flag in self._pulled.items() if flag]

    @staticmethod
    def _key(image: str) -> str:
        return ImageName.parse(image).full_name


class ImagePullManager:
    """
    Combines a pull policy with the session cache to decide whether a pull
    is needed.
    """

    def __init__(self, cache: ImagePullCache, policy: Union[str, PullPolicy, None] = None):
        """
        Initializes the pull manager.

        :param cache: Session cache shared with the orchestrator.
        :param policy: Pull policy, IfNotPresent when not given.
        """
        self.cache = cache
        self.policy = PullPolicy.parse(policy)

    def has_already_pulled(self, image: str) -> bool:
        return self.cache.has_already_pulled(image)

    def pulled(self, image: str) -> None:
        self.cache.pulled(image)

    def should_pull(self, image: str, present_locally: bool) -> bool:
        """
        Decide whether ``image`` must be pulled.

        :param image: Image name.
        :param present_locally: Whether the engine already has the image.
        :return: True if a pull is required.
        :raises PullPolicyViolation: If the policy is Never and the image is missing.
        """
        if self.has_already_pulled(image):
            logger.debug("Image %s already pulled in this session", image)
            return False
        if self.policy == PullPolicy.NEVER:
            if not present_locally:
                raise PullPolicyViolation(
                    f"No image '{image}' found and pull policy '{self.policy.value}' is set. "
                    "Choose another pull policy or pull the image yourself",
                    context={"image": image, "policy": self.policy.value},
                )
            return False
        if self.policy == PullPolicy.ALWAYS:
            return True
        return not present_locally

