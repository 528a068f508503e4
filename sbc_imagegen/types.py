"""Shared type definitions for sbc_imagegen.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class PlatformFamily(str, Enum):
    """SoC family of a board."""

    ROCKCHIP = "rockchip"
    SUNXI = "sunxi"


class ImageKind(str, Enum):
    """Kind of storage image produced."""

    SD = "sd"
    EMMC = "emmc"


class ArtifactKind(str, Enum):
    """Required artifact categories, in checking order."""

    ROOTFS = "rootfs"
    KERNEL = "kernel"
    DEVICE_TREE = "device_tree"
    BOOTLOADER = "bootloader"


class VerificationState(str, Enum):
    """State of the artifact verification step."""

    SCANNING = "scanning"
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"
    CONFIRMED_CONTINUE = "confirmed_continue"
    ABORTED = "aborted"


@dataclass
class StorageImage:
    """Final output of a successful assembly run.

    Attributes:
        path: Path to the image file.
        kind: SD card image or eMMC update container.
        board: Board name (output directory basename).
        chip_id: Resolved chip identifier.
        size_bytes: Size of the image file.
        intermediates: Named intermediate files kept for debugging.
    """

    path: Path
    kind: ImageKind
    board: str
    chip_id: str
    size_bytes: int
    intermediates: dict[str, Path] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "path": str(self.path),
            "kind": self.kind.value,
            "board": self.board,
            "chip_id": self.chip_id,
            "size_bytes": self.size_bytes,
            "intermediates": {k: str(v) for k, v in self.intermediates.items()},
        }


__all__ = [
    "ArtifactKind",
    "ImageKind",
    "PlatformFamily",
    "StorageImage",
    "VerificationState",
]
