"""Image assembly service module.

This module provides the high-level assembly API:
- prepare(): locate artifacts, resolve the profile and run verification
- assemble_sd(): build <board>-sd.img
- assemble_emmc(): build update-emmc-<board>.img

Runs are not coordinated with each other; callers must serialize runs
that target the same output directory.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sbc_imagegen.artifacts.locator import ArtifactScan, locate_artifacts
from sbc_imagegen.artifacts.verification import ConfirmCallback, verify_artifacts
from sbc_imagegen.config import Settings, get_settings
from sbc_imagegen.firmware import FirmwareOverlay
from sbc_imagegen.images.emmc import EmmcContainerPacker
from sbc_imagegen.images.resources import termination_guard
from sbc_imagegen.images.sdcard import SdImageAssembler
from sbc_imagegen.platforms import MIB
from sbc_imagegen.tools.runner import SubprocessToolRunner, ToolRunner
from sbc_imagegen.types import StorageImage

logger = logging.getLogger(__name__)


def build_runner(settings: Settings) -> ToolRunner:
    """Create the subprocess-backed runner configured by settings."""
    return SubprocessToolRunner(log_path=settings.log_file)


def build_firmware(
    settings: Settings,
    runner: ToolRunner,
    enabled: bool | None = None,
) -> FirmwareOverlay | None:
    """Create the firmware overlay, or None when it is disabled.

    Args:
        settings: Application settings.
        runner: ToolRunner for git and rsync.
        enabled: Override for settings.firmware_enabled.
    """
    if enabled is None:
        enabled = settings.firmware_enabled
    if not enabled:
        logger.info("Firmware overlay disabled")
        return None
    return FirmwareOverlay(settings.firmware_cache_dir, settings.firmware_repo_url, runner)


def prepare(
    output_dir: Path,
    chip_id: str | None = None,
    *,
    settings: Settings | None = None,
    confirm: ConfirmCallback | None = None,
) -> ArtifactScan:
    """Locate and verify the artifacts of a board output directory.

    Args:
        output_dir: Board output directory.
        chip_id: Optional explicit chip identifier.
        settings: Optional settings; uses defaults if not provided.
        confirm: Asked whether to continue when artifacts are missing.

    Returns:
        ArtifactScan that may proceed to assembly.

    Raises:
        UnknownPlatformError: If the chip matches no family.
        MissingArtifactsError: If artifacts are missing and continuation
            was not confirmed.
    """
    if settings is None:
        settings = get_settings()

    scan = locate_artifacts(output_dir, chip_id, default_chip=settings.default_chip)
    verification = verify_artifacts(scan, confirm)
    verification.raise_if_aborted()
    return scan


def assemble_sd(
    output_dir: Path,
    chip_id: str | None = None,
    *,
    settings: Settings | None = None,
    runner: ToolRunner | None = None,
    confirm: ConfirmCallback | None = None,
    image_size_mib: int | None = None,
    firmware: bool | None = None,
) -> StorageImage:
    """Assemble a raw SD card image.

    Args:
        output_dir: Board output directory.
        chip_id: Optional explicit chip identifier.
        settings: Optional settings; uses defaults if not provided.
        runner: Optional ToolRunner; subprocess-backed if not provided.
        confirm: Asked whether to continue when artifacts are missing.
        image_size_mib: Image size override.
        firmware: Override for settings.firmware_enabled.

    Returns:
        The written StorageImage.

    Raises:
        AssemblyError: Any assembly failure (see sbc_imagegen.errors).
    """
    if settings is None:
        settings = get_settings()
    if runner is None:
        runner = build_runner(settings)

    scan = prepare(output_dir, chip_id, settings=settings, confirm=confirm)
    assembler = SdImageAssembler(settings, runner, build_firmware(settings, runner, firmware))
    size_bytes = image_size_mib * MIB if image_size_mib else None

    with termination_guard():
        return assembler.assemble(scan, size_bytes)


def assemble_emmc(
    output_dir: Path,
    chip_id: str | None = None,
    *,
    settings: Settings | None = None,
    runner: ToolRunner | None = None,
    confirm: ConfirmCallback | None = None,
    rootfs_size_mib: int | None = None,
    firmware: bool | None = None,
) -> StorageImage:
    """Assemble a Rockchip eMMC update container.

    Args:
        output_dir: Board output directory.
        chip_id: Optional explicit chip identifier.
        settings: Optional settings; uses defaults if not provided.
        runner: Optional ToolRunner; subprocess-backed if not provided.
        confirm: Asked whether to continue when artifacts are missing.
        rootfs_size_mib: rootfs.img size override.
        firmware: Override for settings.firmware_enabled.

    Returns:
        The written StorageImage.

    Raises:
        AssemblyError: Any assembly failure (see sbc_imagegen.errors).
    """
    if settings is None:
        settings = get_settings()
    if runner is None:
        runner = build_runner(settings)

    scan = prepare(output_dir, chip_id, settings=settings, confirm=confirm)
    packer = EmmcContainerPacker(settings, runner, build_firmware(settings, runner, firmware))
    size_bytes = rootfs_size_mib * MIB if rootfs_size_mib else None

    with termination_guard():
        return packer.assemble(scan, size_bytes)


__all__ = [
    "assemble_emmc",
    "assemble_sd",
    "build_firmware",
    "build_runner",
    "prepare",
]
