"""Build artifact discovery and verification.

This module handles:
- Locating kernel, device tree, bootloader, rootfs and module artifacts
- Resolving the chip identifier for a board output directory
- Deciding whether assembly may proceed when artifacts are missing
"""

from sbc_imagegen.artifacts.locator import (
    ArtifactScan,
    BuildArtifactSet,
    MissingArtifact,
    MissingArtifacts,
    locate_artifacts,
)
from sbc_imagegen.artifacts.verification import (
    ArtifactVerification,
    verify_artifacts,
)

__all__ = [
    "ArtifactScan",
    "ArtifactVerification",
    "BuildArtifactSet",
    "MissingArtifact",
    "MissingArtifacts",
    "locate_artifacts",
    "verify_artifacts",
]
