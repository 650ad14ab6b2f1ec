import json
from collections.abc import Iterator
from contextlib import contextmanager

import docker
import structlog
from omegaconf import DictConfig, OmegaConf
from rich import print_json
from rich.console import Console

from lighthouse.config import DockerConfig, RegistryConfig
from lighthouse.helpers import build_http_client
from lighthouse.integrations import image_ref
from lighthouse.integrations.docker import DockerScanner
from lighthouse.integrations.image_ref import split_image_tag
from lighthouse.integrations.registry import RegistryClient

log = structlog.get_logger()


"""
Super simple CLI

Command can be `digest`, `auth` or `scan`

* `digest=nginx:1.27`
* `digest=ghcr.io/immich-app/postgres:14`
* `auth=lscr.io/linuxserver/plex`
* `scan=true`

In addition, a `log_level=DEBUG` or other level can be added, and `user_agent` to override the probe User-Agent
"""


def mask(auth_header: str) -> str:
    scheme, _, token = auth_header.partition(" ")
    return f"{scheme} {token[:8]}...{token[-4:]}" if len(token) > 16 else f"{scheme} ***"


@contextmanager
def registry_client(cli_conf: DictConfig) -> Iterator[RegistryClient]:
    cfg = RegistryConfig(user_agent=cli_conf.get("user_agent", RegistryConfig.user_agent))
    with build_http_client(cfg) as client:
        yield RegistryClient(client, user_agent=cfg.user_agent)


def show_digest(img_ref: str, cli_conf: DictConfig) -> None:
    name, tag = split_image_tag(img_ref)
    with registry_client(cli_conf) as registry:
        digest: str = registry.get_digest(name, tag or "latest")
    print_json(json.dumps({"image": image_ref.normalize_image_name(name), "tag": tag or "latest", "digest": digest}))


def show_auth(img_ref: str, cli_conf: DictConfig) -> None:
    reference = image_ref.resolve(img_ref)
    with registry_client(cli_conf) as registry:
        result = {
            "registry_url": registry.registry_url(img_ref),
            "challenge_url": registry.challenge_url(img_ref),
            "repository_path": reference.repository_path,
            "scope": reference.scope,
            "authorization": mask(registry.get_auth_header(img_ref)),
        }
    print_json(json.dumps(result))


def scan(cli_conf: DictConfig) -> None:
    console = Console()
    with registry_client(cli_conf) as registry:
        updates = DockerScanner(DockerConfig(), registry, client=docker.from_env()).scan()
    if not updates:
        console.print("No updates found", style="bold green")
        return
    print_json(json.dumps([update.as_dict() for update in updates]))


def main() -> None:
    # will be a proper cli someday
    cli_conf: DictConfig = OmegaConf.from_cli()
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(cli_conf.get("log_level", "WARNING")))

    if cli_conf.get("digest"):
        show_digest(cli_conf.get("digest"), cli_conf)
    elif cli_conf.get("auth"):
        show_auth(cli_conf.get("auth"), cli_conf)
    elif cli_conf.get("scan"):
        scan(cli_conf)
    else:
        log.error("No command given, use digest=<image>, auth=<image> or scan=true")


if __name__ == "__main__":
    main()
