import json
from dataclasses import dataclass, field
from typing import Any

import docker
import docker.errors
import httpx
import structlog
from docker.models.containers import Container
from docker.models.images import Image

from lighthouse.config import DockerConfig
from lighthouse.helpers import Selection
from lighthouse.integrations.image_ref import split_image_tag
from lighthouse.integrations.registry import DigestFetchError, RegistryClient, RegistryError, error_kind
from lighthouse.model import ImageUpdate, UpdateKind

log = structlog.get_logger()

DEFAULT_TAG = "latest"


def condense_digest(repo_digest: str) -> str:
    """Strip the repository prefix from a fully qualified RepoDigest"""
    return repo_digest.split("@", 1)[1] if "@" in repo_digest else repo_digest


@dataclass
class ImageCheck:
    """Local state for one image reference, shared by all containers using it"""

    image_ref: str
    name: str
    tag: str
    image_id: str | None = None
    local_digests: list[str] = field(default_factory=list)
    container_names: list[str] = field(default_factory=list)
    outdated_containers: list[str] = field(default_factory=list)

    @property
    def local_build(self) -> bool:
        return not self.local_digests


class DockerScanner:
    def __init__(self, cfg: DockerConfig, registry: RegistryClient, client: docker.DockerClient | None = None) -> None:
        self.cfg: DockerConfig = cfg
        self.registry: RegistryClient = registry
        self.client: docker.DockerClient = client or docker.from_env()
        self.log: Any = structlog.get_logger().bind(integration="docker")

    def local_image(self, image_ref: str) -> Image | None:
        try:
            return self.client.images.get(image_ref)
        except docker.errors.ImageNotFound:
            self.log.debug("No local image tagged %s", image_ref)
            return None

    def collect(self) -> list[ImageCheck]:
        checks: dict[str, ImageCheck] = {}
        c: Container
        for c in self.client.containers.list():
            logger = self.log.bind(container=c.name, action="collect")
            if not Selection(self.cfg.containers, c.name):
                logger.debug("Container not selected")
                continue
            image_ref: str | None = (c.attrs or {}).get("Config", {}).get("Image")
            if not image_ref:
                logger.warning("No image reference found for container")
                continue
            name, tag = split_image_tag(image_ref)
            if "@" in image_ref:
                logger.debug("Image pinned to digest, skipping", image_ref=image_ref)
                continue
            if not Selection(self.cfg.images, image_ref):
                logger.debug("Image not selected", image_ref=image_ref)
                continue

            tag = tag or DEFAULT_TAG
            key = f"{name}:{tag}"
            check: ImageCheck | None = checks.get(key)
            if check is None:
                check = ImageCheck(image_ref=name, name=name, tag=tag)
                image: Image | None = self.local_image(key)
                if image is not None:
                    check.image_id = image.id
                    check.local_digests = [condense_digest(d) for d in image.attrs.get("RepoDigests") or []]
                checks[key] = check

            check.container_names.append(c.name)
            container_image_id: str | None = c.attrs.get("Image")
            if check.image_id and container_image_id and container_image_id != check.image_id:
                logger.debug("Container runs an older image than %s", key, image_id=container_image_id)
                check.outdated_containers.append(c.name)

        self.log.info("Collected %s image references", len(checks))
        return list(checks.values())

    def check(self, image_check: ImageCheck) -> ImageUpdate | None:
        logger = self.log.bind(image_ref=image_check.image_ref, tag=image_check.tag, action="check")
        if image_check.local_build:
            logger.debug("No repo digests, assuming local build")
            return None

        try:
            remote_digest: str = self.registry.get_digest(image_check.name, image_check.tag)
        except DigestFetchError as e:
            if e.status_code == httpx.codes.NOT_FOUND:
                logger.warning("Image or tag not found in registry")
            elif e.status_code == httpx.codes.UNAUTHORIZED:
                logger.warning("Registry rejected authorization")
            else:
                logger.warning("Digest lookup failed: %s", e, status_code=e.status_code)
            return None
        except (RegistryError, httpx.HTTPError, json.JSONDecodeError) as e:
            logger.warning("Registry lookup failed: %s", e, kind=error_kind(e))
            return None

        if remote_digest not in image_check.local_digests:
            logger.info("Reference image outdated", remote_digest=remote_digest)
            return ImageUpdate(
                image_ref=image_check.image_ref,
                tag=image_check.tag,
                kind=UpdateKind.REFERENCE_IMAGE_IS_OUTDATED,
                remote_digest=remote_digest,
                local_digests=image_check.local_digests,
                container_names=image_check.container_names,
            )
        if image_check.outdated_containers:
            logger.info("Containers use outdated image", containers=image_check.outdated_containers)
            return ImageUpdate(
                image_ref=image_check.image_ref,
                tag=image_check.tag,
                kind=UpdateKind.CONTAINER_USES_OUTDATED_BASE_IMAGE,
                remote_digest=remote_digest,
                local_digests=image_check.local_digests,
                container_names=image_check.outdated_containers,
            )
        logger.debug("Up to date", remote_digest=remote_digest)
        return None

    def scan(self) -> list[ImageUpdate]:
        return [update for update in (self.check(c) for c in self.collect()) if update is not None]
