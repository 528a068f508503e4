"""Platform profiles for supported SoC families.

This module handles:
- Classifying a chip identifier into a SoC family
- Resolving the immutable per-chip platform profile (partition start,
  bootloader embed offsets, root device, serial console)

Family layouts on SD media:
- Rockchip: data partition at 64 MiB; idbloader.img at sector 64 and
  u-boot.itb at sector 16384, or u-boot-rockchip.bin at sector 64.
- Sunxi: data partition at 2 MiB; u-boot-sunxi-with-spl.bin at 8 KiB.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from sbc_imagegen.errors import UnknownPlatformError
from sbc_imagegen.types import PlatformFamily

SECTOR_SIZE = 512
MIB = 1024 * 1024

ROCKCHIP_PARTITION_START = 64 * MIB
SUNXI_PARTITION_START = 2 * MIB

# Bootloader artifact file names
IDBLOADER = "idbloader.img"
UBOOT_ITB = "u-boot.itb"
UBOOT_ROCKCHIP = "u-boot-rockchip.bin"
UBOOT_SUNXI = "u-boot-sunxi-with-spl.bin"

_ROCKCHIP_PATTERN = re.compile(r"^rk\d")
_SUNXI_PATTERN = re.compile(r"^(sun\d|a\d)")


@dataclass(frozen=True)
class BootEmbed:
    """A bootloader artifact written at a fixed byte offset."""

    artifact: str
    offset_bytes: int

    @property
    def sector(self) -> int:
        """Offset expressed in 512-byte sectors."""
        return self.offset_bytes // SECTOR_SIZE


@dataclass(frozen=True)
class BootLayout:
    """One accepted bootloader file combination and its embed offsets."""

    name: str
    embeds: tuple[BootEmbed, ...]

    @property
    def artifacts(self) -> tuple[str, ...]:
        """File names required by this layout."""
        return tuple(e.artifact for e in self.embeds)


@dataclass(frozen=True)
class ConsoleSettings:
    """Serial console parameters for the kernel command line."""

    device: str
    baud: int

    @property
    def kernel_arg(self) -> str:
        """Render as a ``console=`` kernel argument."""
        return f"console={self.device},{self.baud}"


@dataclass(frozen=True)
class PlatformProfile:
    """Immutable platform description derived from a chip identifier.

    Attributes:
        chip_id: Normalized chip identifier (e.g., 'rk3588').
        family: SoC family.
        partition_start_bytes: Byte offset of the data partition on SD media.
        boot_layouts: Accepted bootloader combinations, in preference order.
        root_device: Root block device as seen by the booted SD system.
        console: Serial console parameters.
        emmc_root_device: Root device when booting from the eMMC container,
            or None if the family has no eMMC container path.
        emmc_console: Console of the eMMC container's boot entry, or None
            to use console.
    """

    chip_id: str
    family: PlatformFamily
    partition_start_bytes: int
    boot_layouts: tuple[BootLayout, ...]
    root_device: str
    console: ConsoleSettings
    emmc_root_device: str | None = None
    emmc_console: ConsoleSettings | None = None

    @property
    def bootloader_names(self) -> tuple[str, ...]:
        """Every bootloader file name recognized for this platform."""
        names: list[str] = []
        for layout in self.boot_layouts:
            names.extend(a for a in layout.artifacts if a not in names)
        return tuple(names)

    def select_boot_layout(self, available: set[str] | frozenset[str]) -> BootLayout | None:
        """Pick the first layout whose files are all available.

        Args:
            available: Names of bootloader files present.

        Returns:
            Matching BootLayout, or None if no combination is complete.
        """
        for layout in self.boot_layouts:
            if all(a in available for a in layout.artifacts):
                return layout
        return None


@dataclass(frozen=True)
class RockchipProfile(PlatformProfile):
    """Profile for Rockchip SoCs."""


@dataclass(frozen=True)
class SunxiProfile(PlatformProfile):
    """Profile for Allwinner (sunxi) SoCs."""


ROCKCHIP_BOOT_LAYOUTS = (
    BootLayout(
        name="split",
        embeds=(
            BootEmbed(IDBLOADER, 64 * SECTOR_SIZE),
            BootEmbed(UBOOT_ITB, 16384 * SECTOR_SIZE),
        ),
    ),
    BootLayout(name="combined", embeds=(BootEmbed(UBOOT_ROCKCHIP, 64 * SECTOR_SIZE),)),
)

SUNXI_BOOT_LAYOUTS = (
    BootLayout(name="combined", embeds=(BootEmbed(UBOOT_SUNXI, 8 * 1024),)),
)

ROCKCHIP_DEFAULT_CONSOLE = ConsoleSettings("ttyS0", 115200)
ROCKCHIP_EMMC_CONSOLE = ConsoleSettings("ttyS2", 1500000)
SUNXI_DEFAULT_CONSOLE = ConsoleSettings("ttyS0", 115200)

# Rockchip chips whose SD boot console is ttyS2; others use ttyS0.
ROCKCHIP_CONSOLES: dict[str, ConsoleSettings] = {
    "rk3588": ConsoleSettings("ttyS2", 1500000),
    "rk3568": ConsoleSettings("ttyS2", 1500000),
    "rk3566": ConsoleSettings("ttyS2", 1500000),
    "rk3399": ConsoleSettings("ttyS2", 1500000),
}


def normalize_chip_id(chip_id: str) -> str:
    """Normalize a chip identifier for matching."""
    return chip_id.strip().lower()


def classify_chip(chip_id: str) -> PlatformFamily:
    """Classify a chip identifier into its SoC family.

    Args:
        chip_id: Chip identifier (e.g., 'rk3588', 'sun50i', 'a64').

    Returns:
        The PlatformFamily.

    Raises:
        UnknownPlatformError: If the identifier matches neither family.
    """
    chip = normalize_chip_id(chip_id)
    if _ROCKCHIP_PATTERN.match(chip):
        return PlatformFamily.ROCKCHIP
    if _SUNXI_PATTERN.match(chip):
        return PlatformFamily.SUNXI
    raise UnknownPlatformError(chip_id)


def resolve_profile(chip_id: str) -> PlatformProfile:
    """Resolve the platform profile for a chip identifier.

    Args:
        chip_id: Chip identifier.

    Returns:
        RockchipProfile or SunxiProfile.

    Raises:
        UnknownPlatformError: If the identifier matches neither family.
    """
    chip = normalize_chip_id(chip_id)
    family = classify_chip(chip)

    if family is PlatformFamily.ROCKCHIP:
        return RockchipProfile(
            chip_id=chip,
            family=family,
            partition_start_bytes=ROCKCHIP_PARTITION_START,
            boot_layouts=ROCKCHIP_BOOT_LAYOUTS,
            root_device="/dev/mmcblk1p1",
            console=ROCKCHIP_CONSOLES.get(chip, ROCKCHIP_DEFAULT_CONSOLE),
            emmc_root_device="/dev/mmcblk0p4",
            emmc_console=ROCKCHIP_EMMC_CONSOLE,
        )

    return SunxiProfile(
        chip_id=chip,
        family=family,
        partition_start_bytes=SUNXI_PARTITION_START,
        boot_layouts=SUNXI_BOOT_LAYOUTS,
        root_device="/dev/mmcblk0p1",
        console=SUNXI_DEFAULT_CONSOLE,
    )


__all__ = [
    "BootEmbed",
    "BootLayout",
    "ConsoleSettings",
    "PlatformProfile",
    "ROCKCHIP_PARTITION_START",
    "RockchipProfile",
    "SECTOR_SIZE",
    "SUNXI_PARTITION_START",
    "SunxiProfile",
    "classify_chip",
    "normalize_chip_id",
    "resolve_profile",
]
