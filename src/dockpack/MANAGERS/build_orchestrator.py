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
Drives build, tag, push and pull for the configured images.
"""
import logging
import threading
from typing import Dict, List, Optional, Sequence

from ..AUTH.auth_factory import CredentialResolver
from ..BUILDERS.build_context import ArchiverCustomizer, BuildContextAssembler
from ..errors import ArchiveError, RegistryProtocolError
from ..MODELS.auth_config import RegistryConfig
from ..MODELS.image_configuration import ImageConfiguration
from ..REGISTRY.image_reference import ImageName
from ..REGISTRY.pull_cache import ImagePullCache, ImagePullManager
from ..REGISTRY.registry_client import BuildOptions, RegistryClient
from ..UTILS.progress import ProgressReporter

logger = logging.getLogger(__name__)

SCRATCH_IMAGE = "scratch"


class BuildOrchestrator:
    """
    Builds, pushes and pulls images one after another.

    All public operations hold one re-entrant lock, so a rebuild requested by
    the watch loop waits for a build already in progress.
    """

    def __init__(
        self,
        client: RegistryClient,
        assembler: BuildContextAssembler,
        credentials: CredentialResolver,
        registry_config: Optional[RegistryConfig] = None,
        pull_manager: Optional[ImagePullManager] = None,
        reporter: Optional[ProgressReporter] = None,
        retries: int = 0,
        skip_tag: bool = False,
        customizers: Sequence[ArchiverCustomizer] = (),
    ):
        """
        Initializes the orchestrator.

        :param client: Engine client doing the actual work.
        :param assembler: Prepares build context archives.
        :param credentials: Resolves registry credentials per operation.
        :param registry_config: Configured registry and authentication.
        :param pull_manager: Pull policy plus session cache; IfNotPresent with a fresh cache when omitted.
        :param reporter: Receives progress of this invocation.
        :param retries: Extra attempts for push and pull.
        :param skip_tag: Do not apply or push additional tags.
        :param customizers: Archiver customizers for build contexts.
        """
        self.client = client
        self.assembler = assembler
        self.credentials = credentials
        self.registry_config = registry_config or RegistryConfig()
        self.pull_manager = pull_manager or ImagePullManager(ImagePullCache())
        self.reporter = reporter or ProgressReporter()
        self.retries = retries
        self.skip_tag = skip_tag
        self.customizers = list(customizers)
        self._lock = threading.RLock()

    def effective_registry(self, image: ImageConfiguration) -> Optional[str]:
        """
        Registry an image is pushed to: the one embedded in its name, else the
        image's own registry, else the configured registry.
        """
        name = image.image_name
        return name.registry or image.registry or self.registry_config.registry

    def build_images(self, images: List[ImageConfiguration]) -> Dict[str, Optional[str]]:
        """
        Build every image with a build configuration, in order.

        An archive failure only stops the affected image; it is reported
        once all others were attempted.

        :param images: Image configurations.
        :return: Image name to image id.
        :raises ArchiveError: If at least one build context could not be created.
        """
        results: Dict[str, Optional[str]] = {}
        failures: Dict[str, ArchiveError] = {}
        with self._lock:
            for image in images:
                if image.build is None:
                    continue
                try:
                    results[image.name] = self.build_image(image)
                except ArchiveError as e:
                    logger.error("%s: %s", image.description, e)
                    failures[image.name] = e
        if failures:
            first = next(iter(failures.values()))
            raise ArchiveError(
                f"Unable to build {len(failures)} image(s): {', '.join(failures)}",
                cause=first,
                context={name: error.message for name, error in failures.items()},
            )
        return results

    def build_image(self, image: ImageConfiguration) -> Optional[str]:
        """
        Pull missing base images, assemble the context, build and tag.

        :param image: Image configuration with a build section.
        :return: Id of the built image.
        """
        with self._lock:
            for base in self.base_images(image):
                self.pull_image_with_policy(base, registry=image.registry)

            context = self.assembler.create_build_archive(image, self.customizers)
            build = image.build
            options = BuildOptions(
                dockerfile=context.dockerfile,
                no_cache=build.no_cache,
                build_args=dict(build.build_args),
                platform=build.platform,
            )
            image_id = self.client.build_image(image.name, context.archive, options, self.reporter)
            logger.info("%s: Built image %s", image.description, image_id)

            if not self.skip_tag:
                name = image.image_name
                for tag in build.tags:
                    target = name.with_tag(tag).full_name
                    self.client.tag_image(image.name, target, force=True)
                    logger.info("%s: Tagged image as %s", image.description, target)
            return image_id

    def base_images(self, image: ImageConfiguration) -> List[str]:
        """
        Images the build starts from; stage aliases, 'scratch' and names with
        unresolved build args are skipped.
        """
        build = image.build
        if build is None:
            return []
        if not build.is_dockerfile_mode:
            return [build.from_image] if build.from_image and build.from_image != SCRATCH_IMAGE else []

        parser = self.assembler.parser
        instructions = parser.parse(str(self.assembler.resolve_dockerfile(build)))
        stages = set()
        bases = []
        for instruction in instructions:
            if instruction.instruction != "FROM" or not instruction.arguments:
                continue
            base = instruction.arguments[0]
            if len(instruction.arguments) >= 3 and instruction.arguments[1].upper() == "AS":
                stages.add(instruction.arguments[2])
            if base in stages or base == SCRATCH_IMAGE or "$" in base or base in bases:
                continue
            bases.append(base)
        return bases

    def push_images(self, images: List[ImageConfiguration]) -> None:
        """
        Push every image with a build configuration, in order.

        :param images: Image configurations.
        :raises RegistryProtocolError: For the first image that could not be pushed.
        """
        with self._lock:
            for image in images:
                if image.build is None:
                    logger.debug("%s: No build configuration, not pushing", image.description)
                    continue
                self.push_image(image)

    def push_image(self, image: ImageConfiguration) -> None:
        with self._lock:
            name = image.image_name
            registry = self.effective_registry(image)
            auth = self.credentials.create_auth_config(True, name.user, registry)
            tags = [] if self.skip_tag or image.build is None else image.build.tags
            try:
                self._push_name(name.full_name, name.get_full_name(registry), registry, auth)
                for tag in tags:
                    tagged = name.with_tag(tag)
                    self._push_name(tagged.full_name, tagged.get_full_name(registry), registry, auth)
            except RegistryProtocolError as e:
                raise RegistryProtocolError(
                    f"Unable to push '{name.full_name}' to registry '{registry or 'default'}'",
                    status=e.status,
                    registry=registry,
                    cause=e,
                    context={"error": e.message},
                ) from e
            logger.info("%s: Pushed to %s", image.description, registry or "default registry")

    def _push_name(self, local: str, target: str, registry: Optional[str], auth) -> None:
        if local == target:
            self.client.push_image(target, registry, auth, self.retries, self.reporter)
            return

        already_tagged = self.client.has_image(target)
        if already_tagged:
            logger.warning("%s exists locally already and will be kept after pushing", target)
        self.client.tag_image(local, target, force=True)
        try:
            self.client.push_image(target, registry, auth, self.retries, self.reporter)
        finally:
            if not already_tagged:
                self.client.remove_image(target)

    def pull_image_with_policy(
        self,
        name: str,
        registry: Optional[str] = None,
        platform: Optional[str] = None,
    ) -> bool:
        """
        Pull an image if the pull policy asks for it.

        :param name: Image name, optionally with a registry.
        :param registry: Registry to use when the name embeds none.
        :param platform: Platform to pull for.
        :return: True if the image was pulled.
        :raises PullPolicyViolation: If the policy is Never and the image is missing.
        :raises RegistryProtocolError: If the pull failed.
        """
        with self._lock:
            image = ImageName.parse(name)
            effective = image.registry or registry or self.registry_config.registry
            present = self.client.has_image(image.full_name)
            if not self.pull_manager.should_pull(image.full_name, present):
                return False

            auth = self.credentials.create_auth_config(False, image.user, effective)
            try:
                self.client.pull_image(image.full_name, auth, effective, platform, self.retries, self.reporter)
            except RegistryProtocolError as e:
                raise RegistryProtocolError(
                    f"Unable to pull '{image.full_name}' from registry '{effective or 'default'}'",
                    status=e.status,
                    registry=effective,
                    cause=e,
                    context={"error": e.message},
                ) from e
            self.pull_manager.pulled(image.full_name)

            if effective and not image.has_registry:
                self.client.tag_image(image.get_full_name(effective), image.full_name, force=True)
            return True
