"""eMMC update container assembly (Rockchip).

This module handles:
- Locating and checking the vendor toolchain before anything is written
- Ensuring the merged loader exists (boot_merger when absent)
- Staging the boot directory in a temporary directory and building
  boot_<chip>.img from it with genext2fs
- Building and populating rootfs.img through a scoped loop mount
- Generating parameter.txt and package-file for the packing step
- Packing update-emmc.raw.img (afptool) and wrapping it into
  update-emmc-<board>.img (rkImageMaker)

Intermediate images are kept in the output directory for debugging.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

from sbc_imagegen.artifacts.locator import ArtifactScan
from sbc_imagegen.bootconfig import generate_boot_config
from sbc_imagegen.config import Settings
from sbc_imagegen.errors import (
    ArtifactNotFoundError,
    PackingToolFailure,
    UnsupportedPlatformError,
)
from sbc_imagegen.firmware import FirmwareOverlay
from sbc_imagegen.images.loader import (
    compute_loader_tag,
    ensure_loader,
    loader_path_for,
    rkboot_ini_for,
)
from sbc_imagegen.images.resources import mounted
from sbc_imagegen.images.sdcard import create_blank_image
from sbc_imagegen.images.staging import (
    BOOT_SUBDIR,
    copy_modules,
    copy_rootfs,
    directory_usage_kib,
    stage_boot_files,
)
from sbc_imagegen.platforms import MIB
from sbc_imagegen.tools.capabilities import Formatter, ImageMaker, LoaderMerger, Packer
from sbc_imagegen.tools.runner import (
    ToolRunner,
    require_executable,
    require_file,
    require_tools,
)
from sbc_imagegen.types import ImageKind, PlatformFamily, StorageImage

logger = logging.getLogger(__name__)

BOOT_IMAGE_BLOCK_SIZE = 4096
BOOT_IMAGE_MIN_KIB = 32 * 1024

ROOTFS_IMAGE_NAME = "rootfs.img"
RAW_IMAGE_NAME = "update-emmc.raw.img"
PARAMETER_NAME = "parameter.txt"
PACKAGE_FILE_NAME = "package-file"
RESERVED = "RESERVED"
BOOT_STAGING_PREFIX = ".sbc-imagegen-boot-"


def compute_boot_partition_size(used_kib: int) -> tuple[int, int]:
    """Size the boot partition image for a staged boot directory.

    The size is the used space plus 25% (rounded up), with a 32 MiB floor.

    Args:
        used_kib: Disk usage of the staged directory in KiB.

    Returns:
        Tuple of (size_kib, blocks) for BOOT_IMAGE_BLOCK_SIZE blocks.
    """
    size_kib = max(-(-used_kib * 5 // 4), BOOT_IMAGE_MIN_KIB)
    blocks = -(-size_kib * 1024 // BOOT_IMAGE_BLOCK_SIZE)
    return size_kib, blocks


def parse_package_file(text: str) -> list[tuple[str, str]]:
    """Parse a vendor package file into (partition name, relative path) pairs."""
    entries: list[tuple[str, str]] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        parts = stripped.split()
        if len(parts) < 2:
            logger.warning("Ignoring malformed package-file line: %s", line)
            continue
        entries.append((parts[0], parts[1]))
    return entries


def merge_package_entries(
    template: list[tuple[str, str]],
    generated: dict[str, str],
) -> list[tuple[str, str]]:
    """Point template entries at generated files.

    Entries named in ``generated`` are rewritten in place; generated names
    absent from the template are appended in their given order.
    """
    merged = [(name, generated.get(name, path)) for name, path in template]
    present = {name for name, _ in template}
    merged.extend((name, path) for name, path in generated.items() if name not in present)
    return merged


@dataclass(frozen=True)
class ContainerManifest:
    """Partitions packed into the update container.

    Attributes:
        boot_partition_size_blocks: Blocks of the boot partition image.
        root_partition_size_bytes: Size of rootfs.img.
        package_entries: (partition name, file relative to the output dir).
    """

    boot_partition_size_blocks: int
    root_partition_size_bytes: int
    package_entries: tuple[tuple[str, str], ...]

    def render_package_file(self) -> str:
        """Render the package file consumed by afptool."""
        width = max((len(name) for name, _ in self.package_entries), default=0) + 1
        lines = ["# NAME".ljust(width) + "\tRelative path"]
        lines.extend(f"{name.ljust(width)}\t{path}" for name, path in self.package_entries)
        return "\n".join(lines) + "\n"


@dataclass(frozen=True)
class RockchipToolchain:
    """Vendor tool and template locations for one chip."""

    afptool: Path
    rk_image_maker: Path
    parameter_template: Path
    package_template: Path
    boot_merger: Path
    rkbin_dir: Path
    rkboot_ini: Path

    @classmethod
    def locate(cls, settings: Settings, chip_id: str) -> RockchipToolchain:
        """Resolve tool paths from settings."""
        tools = settings.rk_tools_dir
        return cls(
            afptool=tools / "afptool",
            rk_image_maker=tools / "rkImageMaker",
            parameter_template=tools / f"{chip_id}-parameter.txt",
            package_template=tools / f"{chip_id}-package-file",
            boot_merger=settings.rkbin_dir / "tools" / "boot_merger",
            rkbin_dir=settings.rkbin_dir,
            rkboot_ini=rkboot_ini_for(chip_id),
        )

    def check(self, loader_present: bool) -> None:
        """Check every tool and template exists.

        boot_merger and the RKBOOT ini are only needed to generate a
        missing loader.

        Raises:
            ToolPrerequisiteError: For the first missing item.
        """
        require_executable(self.afptool, "afptool")
        require_executable(self.rk_image_maker, "rkImageMaker")
        require_file(self.parameter_template, "parameter file")
        require_file(self.package_template, "package file")
        if not loader_present:
            require_file(self.rkbin_dir / self.rkboot_ini, "RKBOOT ini")
            require_executable(self.boot_merger, "boot_merger")


class EmmcContainerPacker:
    """Builds the Rockchip eMMC update container.

    Args:
        settings: Application settings.
        runner: ToolRunner for every external command.
        firmware: Firmware overlay to install, or None to skip it.
    """

    def __init__(
        self,
        settings: Settings,
        runner: ToolRunner,
        firmware: FirmwareOverlay | None = None,
    ) -> None:
        self.settings = settings
        self.runner = runner
        self.firmware = firmware
        self.formatter = Formatter(runner, settings.filesystem_type)

    @property
    def required_tools(self) -> list[str]:
        """Host tools needed before any image is written."""
        return ["genext2fs", self.formatter.program, "mount", "umount", "rsync"]

    def assemble(
        self,
        scan: ArtifactScan,
        rootfs_size_bytes: int | None = None,
    ) -> StorageImage:
        """Assemble update-emmc-<board>.img for a scanned output directory.

        Args:
            scan: Verified artifact scan.
            rootfs_size_bytes: rootfs.img size override (settings default if None).

        Returns:
            StorageImage with intermediates (boot, rootfs and raw images,
            loader, parameter and package files).

        Raises:
            UnsupportedPlatformError: If the chip is not a Rockchip SoC.
            ToolPrerequisiteError: If a tool or template is missing.
            ArtifactNotFoundError: If the rootfs or a vendor package entry is absent.
            InvalidLoaderError: If the loader header carries no tag.
            MountError: If mounting rootfs.img fails.
            PackingToolFailure: If afptool, rkImageMaker or boot_merger fails.
        """
        artifacts = scan.artifacts
        profile = scan.profile
        chip = profile.chip_id
        out = artifacts.output_dir

        if profile.family is not PlatformFamily.ROCKCHIP:
            raise UnsupportedPlatformError(chip, profile.family.value, "eMMC container")

        toolchain = RockchipToolchain.locate(self.settings, chip)
        loader = loader_path_for(out, chip)
        toolchain.check(loader.is_file())
        require_tools(self.runner, self.required_tools)

        if artifacts.rootfs_dir is None:
            raise ArtifactNotFoundError("rootfs directory", str(out))

        boot_image = out / f"boot_{chip}.img"
        rootfs_image = out / ROOTFS_IMAGE_NAME
        generated = {
            "package-file": PACKAGE_FILE_NAME,
            "bootloader": loader.name,
            "parameter": PARAMETER_NAME,
            "boot": boot_image.name,
            "rootfs": rootfs_image.name,
        }
        entries = merge_package_entries(
            parse_package_file(toolchain.package_template.read_text(encoding="utf-8")),
            generated,
        )
        for name, path in entries:
            if name not in generated and path != RESERVED and not (out / path).exists():
                raise ArtifactNotFoundError(f"package entry '{name}'", str(out / path))

        loader = ensure_loader(
            out, chip, LoaderMerger(self.runner, toolchain.boot_merger, toolchain.rkbin_dir)
        )
        tag = compute_loader_tag(loader)

        # Boot partition, staged outside any user-owned boot/ directory
        boot_config = generate_boot_config(
            profile, artifacts, ImageKind.EMMC, self.settings.emmc_root_device
        )
        with tempfile.TemporaryDirectory(prefix=BOOT_STAGING_PREFIX, dir=out) as staging:
            boot_dir = Path(staging) / BOOT_SUBDIR
            stage_boot_files(artifacts, boot_dir, boot_config)

            used_kib = directory_usage_kib(boot_dir)
            size_kib, blocks = compute_boot_partition_size(used_kib)
            logger.info(
                "Creating boot image %s (%d KiB used, %d KiB image)",
                boot_image,
                used_kib,
                size_kib,
            )
            self.formatter.build_from_directory(
                boot_dir, boot_image, blocks, BOOT_IMAGE_BLOCK_SIZE
            )

        # Root partition
        root_size = rootfs_size_bytes or self.settings.rootfs_image_size_mib * MIB
        create_blank_image(rootfs_image, root_size)
        self.formatter.format(rootfs_image)
        with mounted(
            rootfs_image,
            self.runner,
            mount_root=self.settings.mount_root,
            options="loop",
        ) as mount_point:
            copy_rootfs(self.runner, artifacts.rootfs_dir, mount_point)
            if artifacts.modules_dir is not None:
                copy_modules(self.runner, artifacts.modules_dir, mount_point)
            if self.firmware is not None:
                self.firmware.install(mount_point)
        logger.info("rootfs.img created at %s", rootfs_image)

        # Packing
        parameter = out / PARAMETER_NAME
        logger.info("Copying %s into %s ...", PARAMETER_NAME, out)
        shutil.copy2(toolchain.parameter_template, parameter)

        manifest = ContainerManifest(
            boot_partition_size_blocks=blocks,
            root_partition_size_bytes=root_size,
            package_entries=tuple(entries),
        )
        package_file = out / PACKAGE_FILE_NAME
        package_file.write_text(manifest.render_package_file(), encoding="utf-8")

        raw_image = out / RAW_IMAGE_NAME
        Packer(self.runner, toolchain.afptool).pack(out, raw_image, package_file)

        update_image = out / f"update-emmc-{artifacts.board_name}.img"
        ImageMaker(self.runner, toolchain.rk_image_maker).make(
            tag, loader, raw_image, update_image
        )
        if not update_image.is_file():
            raise PackingToolFailure(
                "rkImageMaker",
                [str(toolchain.rk_image_maker)],
                None,
                f"{update_image} was not created",
            )

        logger.info("update-eMMC image created: %s", update_image)
        return StorageImage(
            path=update_image,
            kind=ImageKind.EMMC,
            board=artifacts.board_name,
            chip_id=chip,
            size_bytes=update_image.stat().st_size,
            intermediates={
                "boot_image": boot_image,
                "rootfs_image": rootfs_image,
                "raw_image": raw_image,
                "loader": loader,
                "parameter": parameter,
                "package_file": package_file,
            },
        )


__all__ = [
    "BOOT_IMAGE_BLOCK_SIZE",
    "BOOT_IMAGE_MIN_KIB",
    "ContainerManifest",
    "EmmcContainerPacker",
    "RockchipToolchain",
    "compute_boot_partition_size",
    "merge_package_entries",
    "parse_package_file",
]
