"""Boot configuration generation (extlinux.conf).

The rendered text depends only on its inputs, so regenerating it for the
same artifacts and profile yields byte-identical output.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from sbc_imagegen.types import ImageKind

if TYPE_CHECKING:
    from sbc_imagegen.artifacts.locator import BuildArtifactSet
    from sbc_imagegen.platforms import PlatformProfile

EXTLINUX_DIR = "extlinux"
EXTLINUX_FILE = "extlinux.conf"
DEFAULT_LABEL = "Linux"
ROOT_FLAGS = ("rw", "rootwait")

# Where the bootloader sees the kernel: /boot on the SD root partition,
# the partition root on the dedicated eMMC boot partition.
BOOT_PREFIX: dict[ImageKind, str] = {
    ImageKind.SD: "/boot",
    ImageKind.EMMC: "",
}


@dataclass(frozen=True)
class BootEntry:
    """A single extlinux boot entry."""

    label: str
    kernel_path: str
    fdt_path: str | None
    append: str

    def render(self) -> str:
        """Render as extlinux.conf text."""
        lines = [f"LABEL {self.label}", f"    KERNEL {self.kernel_path}"]
        if self.fdt_path:
            lines.append(f"    FDT {self.fdt_path}")
        lines.append(f"    APPEND {self.append}")
        return "\n".join(lines) + "\n"


def compose_append(console_arg: str, root_device: str) -> str:
    """Compose the kernel command line."""
    return " ".join([console_arg, f"root={root_device}", *ROOT_FLAGS])


def build_boot_entry(
    profile: PlatformProfile,
    artifacts: BuildArtifactSet,
    kind: ImageKind = ImageKind.SD,
    root_device: str | None = None,
) -> BootEntry:
    """Build the boot entry for an image.

    Args:
        profile: Resolved platform profile.
        artifacts: Artifact set (kernel and device tree names are used).
        kind: Image kind; selects the path prefix and default root device.
        root_device: Optional root device override.

    Returns:
        BootEntry.
    """
    prefix = BOOT_PREFIX[kind]
    kernel_name = artifacts.kernel_image.name if artifacts.kernel_image else "Image"
    fdt_path = (
        f"{prefix}/{artifacts.device_tree.name}" if artifacts.device_tree else None
    )

    if root_device is None:
        if kind is ImageKind.EMMC and profile.emmc_root_device:
            root_device = profile.emmc_root_device
        else:
            root_device = profile.root_device

    console = profile.console
    if kind is ImageKind.EMMC and profile.emmc_console:
        console = profile.emmc_console

    return BootEntry(
        label=DEFAULT_LABEL,
        kernel_path=f"{prefix}/{kernel_name}",
        fdt_path=fdt_path,
        append=compose_append(console.kernel_arg, root_device),
    )


def generate_boot_config(
    profile: PlatformProfile,
    artifacts: BuildArtifactSet,
    kind: ImageKind = ImageKind.SD,
    root_device: str | None = None,
) -> str:
    """Render extlinux.conf text for an image."""
    return build_boot_entry(profile, artifacts, kind, root_device).render()


__all__ = [
    "BOOT_PREFIX",
    "BootEntry",
    "EXTLINUX_DIR",
    "EXTLINUX_FILE",
    "build_boot_entry",
    "compose_append",
    "generate_boot_config",
]
