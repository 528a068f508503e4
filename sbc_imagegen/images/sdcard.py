"""SD card image assembly.

This module handles:
- Planning the partition layout from the platform profile
- Creating the zero-filled image file and embedding bootloader stages
  at their fixed offsets
- Writing the single-partition table with sfdisk
- Populating the partition through a loop device and a scoped mount

Resource order is strict: loop attach, partition polling, format, mount,
copy, firmware, then unmount before detach. The image file of a failed run
is left on disk, never mounted or attached.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from sbc_imagegen.artifacts.locator import ArtifactScan, BuildArtifactSet
from sbc_imagegen.bootconfig import generate_boot_config
from sbc_imagegen.config import Settings
from sbc_imagegen.errors import (
    ArtifactNotFoundError,
    BootloaderLayoutError,
    ImageLayoutError,
)
from sbc_imagegen.firmware import FirmwareOverlay
from sbc_imagegen.images.resources import (
    attached_loop_device,
    mounted,
    wait_for_partition,
)
from sbc_imagegen.images.staging import (
    BOOT_SUBDIR,
    copy_modules,
    copy_rootfs,
    stage_boot_files,
)
from sbc_imagegen.platforms import MIB, SECTOR_SIZE, BootLayout, PlatformProfile
from sbc_imagegen.tools.capabilities import Formatter
from sbc_imagegen.tools.runner import ToolRunner, require_tools
from sbc_imagegen.types import ImageKind, StorageImage

logger = logging.getLogger(__name__)

SD_IMAGE_SUFFIX = "-sd.img"


@dataclass(frozen=True)
class PartitionLayout:
    """Geometry of an SD image.

    Attributes:
        image_size_bytes: Total image file size.
        partition_start_bytes: Byte offset of the single data partition.
        filesystem_type: Filesystem created on the partition.
    """

    image_size_bytes: int
    partition_start_bytes: int
    filesystem_type: str = "ext4"

    @property
    def start_sector(self) -> int:
        """Partition start in 512-byte sectors."""
        return self.partition_start_bytes // SECTOR_SIZE

    def sfdisk_script(self) -> str:
        """sfdisk input: one Linux partition from start to end of disk."""
        return f"{self.start_sector},,L\n"


def plan_layout(
    profile: PlatformProfile,
    image_size_bytes: int,
    filesystem_type: str = "ext4",
) -> PartitionLayout:
    """Derive the partition layout for a profile and image size.

    Raises:
        ImageLayoutError: If the image cannot hold the partition start.
    """
    if image_size_bytes <= profile.partition_start_bytes:
        raise ImageLayoutError(image_size_bytes, profile.partition_start_bytes)
    return PartitionLayout(
        image_size_bytes=image_size_bytes,
        partition_start_bytes=profile.partition_start_bytes,
        filesystem_type=filesystem_type,
    )


def create_blank_image(image_path: Path, size_bytes: int) -> Path:
    """Create (or replace) a zero-filled image file of an exact size."""
    logger.info("Creating %s (%d MiB)", image_path, size_bytes // MIB)
    image_path.parent.mkdir(parents=True, exist_ok=True)
    with image_path.open("wb") as f:
        f.truncate(size_bytes)
    return image_path


def check_boot_layout(
    artifacts: BuildArtifactSet,
    layout: BootLayout,
    limit: int,
) -> list[tuple[Path, int]]:
    """Resolve bootloader files for a layout and check they fit.

    Args:
        artifacts: Located build artifacts.
        layout: Selected bootloader layout.
        limit: Byte offset every stage must end before.

    Returns:
        List of (source file, byte offset) to write.

    Raises:
        ArtifactNotFoundError: If a stage file is absent.
        BootloaderLayoutError: If a stage would overlap the partition.
    """
    writes: list[tuple[Path, int]] = []
    for embed in layout.embeds:
        source = artifacts.bootloader(embed.artifact)
        if source is None:
            raise ArtifactNotFoundError(embed.artifact, str(artifacts.output_dir))
        end = embed.offset_bytes + source.stat().st_size
        if end > limit:
            raise BootloaderLayoutError(embed.artifact, embed.offset_bytes, end, limit)
        writes.append((source, embed.offset_bytes))
    return writes


def embed_bootloader(image_path: Path, writes: list[tuple[Path, int]]) -> None:
    """Write bootloader stages into the image without truncating it."""
    with image_path.open("r+b") as image:
        for source, offset in writes:
            logger.info(
                "Writing %s at sector %d", source.name, offset // SECTOR_SIZE
            )
            image.seek(offset)
            image.write(source.read_bytes())
        image.flush()
        os.fsync(image.fileno())


def write_partition_table(
    runner: ToolRunner, image_path: Path, layout: PartitionLayout
) -> None:
    """Write the single-partition table with sfdisk."""
    logger.info("Partitioning image (start sector %d) ...", layout.start_sector)
    runner.run(["sfdisk", str(image_path)], input_text=layout.sfdisk_script())


class SdImageAssembler:
    """Builds a raw partitioned SD card image.

    Args:
        settings: Application settings.
        runner: ToolRunner for every external command.
        firmware: Firmware overlay to install, or None to skip it.
        path_exists: Existence check used while polling for the partition.
        sleep: Sleep function used while polling.
    """

    def __init__(
        self,
        settings: Settings,
        runner: ToolRunner,
        firmware: FirmwareOverlay | None = None,
        *,
        path_exists: Callable[[str], bool] = os.path.exists,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.runner = runner
        self.firmware = firmware
        self.formatter = Formatter(runner, settings.filesystem_type)
        self._path_exists = path_exists
        self._sleep = sleep

    @property
    def required_tools(self) -> list[str]:
        """Host tools needed before any image is written."""
        return ["sfdisk", "losetup", "mount", "umount", "rsync", self.formatter.program]

    def image_path(self, artifacts: BuildArtifactSet) -> Path:
        """Output path of the SD image."""
        return artifacts.output_dir / f"{artifacts.board_name}{SD_IMAGE_SUFFIX}"

    def assemble(
        self,
        scan: ArtifactScan,
        image_size_bytes: int | None = None,
    ) -> StorageImage:
        """Assemble the SD image for a scanned output directory.

        Args:
            scan: Verified artifact scan.
            image_size_bytes: Image size override (settings default if None).

        Returns:
            StorageImage describing the written image.

        Raises:
            ImageLayoutError: If the image size cannot hold the partition.
            ToolPrerequisiteError: If a host tool is missing.
            ArtifactNotFoundError: If no rootfs tree exists.
            BootloaderLayoutError: If a bootloader stage overlaps the partition.
            PartitionDeviceTimeoutError: If the partition node never appears.
            LoopAttachError: If the loop device cannot be attached.
            MountError: If mounting or unmounting fails.
            ToolExecutionError: If any external command fails.
        """
        artifacts = scan.artifacts
        profile = scan.profile

        size = image_size_bytes or self.settings.sd_image_size_mib * MIB
        layout = plan_layout(profile, size, self.settings.filesystem_type)

        require_tools(self.runner, self.required_tools)

        if artifacts.rootfs_dir is None:
            raise ArtifactNotFoundError("rootfs directory", str(artifacts.output_dir))

        available = {name for name, _ in artifacts.bootloader_files}
        boot_layout = profile.select_boot_layout(available)
        writes: list[tuple[Path, int]] = []
        if boot_layout is None:
            logger.warning(
                "No complete %s bootloader found, the image will not boot",
                profile.family.value,
            )
        else:
            writes = check_boot_layout(
                artifacts, boot_layout, layout.partition_start_bytes
            )

        boot_config = generate_boot_config(profile, artifacts, ImageKind.SD)
        image_path = self.image_path(artifacts)
        logger.info("Output image: %s", image_path)

        create_blank_image(image_path, layout.image_size_bytes)
        if writes:
            embed_bootloader(image_path, writes)
        write_partition_table(self.runner, image_path, layout)

        with attached_loop_device(image_path, self.runner) as loop:
            partition = wait_for_partition(
                loop,
                self.settings.partition_poll_attempts,
                self.settings.partition_poll_interval,
                exists=self._path_exists,
                sleep=self._sleep,
            )
            self.formatter.format(partition)

            with mounted(
                partition, self.runner, mount_root=self.settings.mount_root
            ) as mount_point:
                copy_rootfs(self.runner, artifacts.rootfs_dir, mount_point)
                stage_boot_files(artifacts, mount_point / BOOT_SUBDIR, boot_config)
                if artifacts.modules_dir is not None:
                    copy_modules(self.runner, artifacts.modules_dir, mount_point)
                if self.firmware is not None:
                    self.firmware.install(mount_point)

        logger.info("SD image created: %s", image_path)
        return StorageImage(
            path=image_path,
            kind=ImageKind.SD,
            board=artifacts.board_name,
            chip_id=profile.chip_id,
            size_bytes=image_path.stat().st_size,
        )


__all__ = [
    "PartitionLayout",
    "SdImageAssembler",
    "check_boot_layout",
    "create_blank_image",
    "embed_bootloader",
    "plan_layout",
    "write_partition_table",
]
