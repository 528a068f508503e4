"""Storage image assembly.

This module handles:
- Raw partitioned SD card images (images.sdcard)
- Rockchip eMMC update containers (images.emmc)
- Scoped loop device and mount handles (images.resources)
"""

from sbc_imagegen.images.emmc import ContainerManifest, EmmcContainerPacker
from sbc_imagegen.images.sdcard import PartitionLayout, SdImageAssembler
from sbc_imagegen.images.service import assemble_emmc, assemble_sd, prepare

__all__ = [
    "ContainerManifest",
    "EmmcContainerPacker",
    "PartitionLayout",
    "SdImageAssembler",
    "assemble_emmc",
    "assemble_sd",
    "prepare",
]
