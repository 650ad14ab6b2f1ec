import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from lighthouse.helpers import timestamp


class UpdateKind(Enum):
    REFERENCE_IMAGE_IS_OUTDATED = ("The reference image is outdated, please pull it again", 0xE67E22)
    CONTAINER_USES_OUTDATED_BASE_IMAGE = ("The base image the container uses is outdated", 0x3498DB)

    def __init__(self, description: str, color: int) -> None:
        self.description: str = description
        self.color: int = color


@dataclass
class ImageUpdate:
    """Drift found between a local image reference and its registry"""

    image_ref: str
    tag: str
    kind: UpdateKind
    remote_digest: str
    local_digests: list[str] = field(default_factory=list)
    container_names: list[str] = field(default_factory=list)
    checked_at: float = field(default_factory=time.time)

    @property
    def title(self) -> str:
        return f"{self.image_ref}:{self.tag}"

    def as_dict(self) -> dict[str, Any]:
        return {
            "image_ref": self.image_ref,
            "tag": self.tag,
            "kind": self.kind.name,
            "description": self.kind.description,
            "remote_digest": self.remote_digest,
            "local_digests": self.local_digests,
            "container_names": self.container_names,
            "checked_at": timestamp(self.checked_at),
        }

    def __repr__(self) -> str:
        """Build a custom string representation"""
        return f"ImageUpdate('{self.title}',{self.kind.name},remote={self.remote_digest})"
