# python
from collections.abc import Iterator
from unittest.mock import MagicMock, Mock

import docker.errors
import httpx
import paho.mqtt.client
import pytest
from docker import DockerClient
from docker.models.containers import Container, ContainerCollection
from docker.models.images import Image, ImageCollection
from omegaconf import DictConfig, OmegaConf

import lighthouse.app
from lighthouse.app import App
from lighthouse.config import Config
from lighthouse.integrations.docker import DockerScanner
from lighthouse.integrations.registry import RegistryClient

REGISTRY_URL = "https://registry.example"
TOKEN_REALM = "https://auth.example/token"
CHALLENGE = f'Bearer realm="{TOKEN_REALM}",service="registry.example"'
REMOTE_DIGEST = "sha256:deadbeef"
OLD_DIGEST = "sha256:9e2bbca079387d7965c3a9cee6d0c53f4f4e63ff7637877a83c4c05f2a666112"


@pytest.fixture
def http_client() -> Iterator[httpx.Client]:
    with httpx.Client() as client:
        yield client


@pytest.fixture
def registry_client(http_client: httpx.Client) -> RegistryClient:
    return RegistryClient(http_client)


@pytest.fixture
def app_with_mocked_external_dependencies(
    monkeypatch,  # noqa: ANN001
    mock_docker_scanner: DockerScanner,
) -> App:
    cfg: DictConfig = OmegaConf.structured(Config)
    monkeypatch.setattr(lighthouse.app, "load_app_config", lambda *_args, **__kwargs: cfg)
    monkeypatch.setattr(lighthouse.app, "DockerScanner", lambda *_args, **_kwargs: mock_docker_scanner)
    app: App = App()
    return app


@pytest.fixture
def mock_docker_scanner() -> DockerScanner:
    return Mock(spec=DockerScanner)


@pytest.fixture
def mock_mqtt_client() -> paho.mqtt.client.Client:
    return MagicMock(spec=paho.mqtt.client.Client, name="MQTT Client Fixture")


@pytest.fixture
def mock_docker_client() -> DockerClient:
    client = Mock(spec=DockerClient)
    containers = Mock(spec=ContainerCollection)
    images = Mock(spec=ImageCollection)
    local_images: dict[str, Image] = {
        "registry.example/lib/app:latest": build_mock_image("sha256:aaa111", [f"registry.example/lib/app@{OLD_DIGEST}"]),
        "registry.example/lib/current:latest": build_mock_image(
            "sha256:bbb222", [f"registry.example/lib/current@{REMOTE_DIGEST}"]
        ),
        "registry.example/lib/local:dev": build_mock_image("sha256:ccc333", []),
    }

    def image_select(ref: str) -> Image:
        if ref not in local_images:
            raise docker.errors.ImageNotFound(ref)
        return local_images[ref]

    images.get = Mock(side_effect=image_select)
    client.images = images
    client.containers = containers
    containers.list.return_value = [
        build_mock_container("app-1", "registry.example/lib/app", "sha256:aaa111"),
        build_mock_container("app-2", "registry.example/lib/app:latest", "sha256:aaa111"),
        build_mock_container("current", "registry.example/lib/current", "sha256:bbb222"),
        build_mock_container("current-stale", "registry.example/lib/current", "sha256:0ld000"),
        build_mock_container("local-build", "registry.example/lib/local:dev", "sha256:ccc333"),
        build_mock_container("pinned", f"registry.example/lib/pinned@{REMOTE_DIGEST}", "sha256:ddd444"),
    ]
    return client


def build_mock_image(image_id: str, repo_digests: list[str]) -> Image:
    image = Mock(spec=Image)
    image.id = image_id
    image.attrs = {"Id": image_id, "RepoDigests": repo_digests, "Os": "linux", "Architecture": "amd64"}
    return image


def build_mock_container(name: str, image_ref: str, image_id: str) -> Container:
    c = Mock(spec=Container)
    c.name = name
    c.attrs = {"Image": image_id, "Config": {"Image": image_ref, "Env": []}}
    return c
