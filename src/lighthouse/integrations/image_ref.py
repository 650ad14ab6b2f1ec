"""Normalize free-form image strings into registry host, repository path and pull scope

Examples:
    nginx                       -> registry-1.docker.io / library/nginx
    linuxserver/plex:latest     -> registry-1.docker.io / linuxserver/plex
    ghcr.io/immich-app/postgres -> ghcr.io / immich-app/postgres
    localhost:5000/lib/app      -> localhost:5000 / lib/app
"""

import re
from dataclasses import dataclass

import structlog
from docker.auth import INDEX_NAME, resolve_repository_name

log = structlog.get_logger()

DOCKER_HUB_API_HOST = "registry-1.docker.io"
DOCKER_HUB_ALIASES = (INDEX_NAME, "index.docker.io", "registry.hub.docker.com", DOCKER_HUB_API_HOST)

# source: https://specs.opencontainers.org/distribution-spec/?v=v1.0.0#pull
OCI_NAME_RE = r"[a-z0-9]+((\.|_|__|-+)[a-z0-9]+)*(\/[a-z0-9]+((\.|_|__|-+)[a-z0-9]+)*)*"


@dataclass(frozen=True)
class ImageReference:
    host: str
    repository_path: str
    scope: str


def split_image_tag(image: str) -> tuple[str, str | None]:
    """Separate name from tag or digest, leaving any host:port prefix intact"""
    if "@" in image:
        name, digest = image.split("@", 1)
        name, _tag = split_image_tag(name)
        return name, digest
    last_slash = image.rfind("/")
    colon = image.rfind(":")
    if colon > last_slash:
        return image[:colon], image[colon + 1 :]
    return image, None


def _resolve(image: str) -> tuple[str, str]:
    name, _tag = split_image_tag(image.strip())
    index_name, remote_name = resolve_repository_name(name)
    if index_name in DOCKER_HUB_ALIASES:
        index_name = DOCKER_HUB_API_HOST
        if "/" not in remote_name:
            # official Docker images have an abbreviated library/foo name
            remote_name = f"library/{remote_name}"
    if not re.fullmatch(OCI_NAME_RE, remote_name):
        log.warning("Invalid OCI image name: %s", remote_name)
    return index_name, remote_name


def normalize_image_name(image: str) -> str:
    index_name, remote_name = _resolve(image)
    return f"{index_name}/{remote_name}"


def get_image_name_without_registry(image: str) -> str:
    return _resolve(image)[1]


def get_scope_for_image(image: str) -> str:
    return _resolve(image)[1]


def resolve(image: str) -> ImageReference:
    index_name, remote_name = _resolve(image)
    return ImageReference(host=index_name, repository_path=remote_name, scope=f"repository:{remote_name}:pull")
