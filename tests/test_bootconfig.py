"""Tests for bootconfig module.

Tests extlinux.conf rendering for SD and eMMC layouts.
"""

from pathlib import Path

from sbc_imagegen.artifacts.locator import locate_artifacts
from sbc_imagegen.bootconfig import (
    BootEntry,
    build_boot_entry,
    compose_append,
    generate_boot_config,
)
from sbc_imagegen.types import ImageKind


class TestGenerateBootConfig:
    """Tests for generate_boot_config function."""

    def test_rockchip_sd(self, rockchip_board: Path):
        """SD entries reference /boot and the SD root device."""
        scan = locate_artifacts(rockchip_board)

        text = generate_boot_config(scan.profile, scan.artifacts)

        assert text == (
            "LABEL Linux\n"
            "    KERNEL /boot/Image\n"
            "    FDT /boot/rk3588-rock-5b.dtb\n"
            "    APPEND console=ttyS2,1500000 root=/dev/mmcblk1p1 rw rootwait\n"
        )

    def test_sunxi_sd(self, sunxi_board: Path):
        """Sunxi boots zImage from the first MMC device."""
        scan = locate_artifacts(sunxi_board)

        text = generate_boot_config(scan.profile, scan.artifacts)

        assert "    KERNEL /boot/zImage\n" in text
        assert "    FDT /boot/sun50i-a64-pine64.dtb\n" in text
        assert "console=ttyS0,115200 root=/dev/mmcblk0p1 rw rootwait" in text

    def test_emmc_layout(self, rockchip_board: Path):
        """eMMC entries reference the boot partition root and mmcblk0p4."""
        scan = locate_artifacts(rockchip_board)

        text = generate_boot_config(scan.profile, scan.artifacts, ImageKind.EMMC)

        assert "    KERNEL /Image\n" in text
        assert "    FDT /rk3588-rock-5b.dtb\n" in text
        assert "root=/dev/mmcblk0p4 rw rootwait" in text

    def test_console_per_image_kind(self, rockchip_board: Path):
        """rk3328 boots SD images on ttyS0 and the eMMC container on ttyS2."""
        scan = locate_artifacts(rockchip_board, "rk3328")

        sd = generate_boot_config(scan.profile, scan.artifacts)
        emmc = generate_boot_config(scan.profile, scan.artifacts, ImageKind.EMMC)

        assert "APPEND console=ttyS0,115200 root=/dev/mmcblk1p1" in sd
        assert "APPEND console=ttyS2,1500000 root=/dev/mmcblk0p4" in emmc

    def test_root_device_override(self, rockchip_board: Path):
        """An explicit root device replaces the profile default."""
        scan = locate_artifacts(rockchip_board)

        text = generate_boot_config(
            scan.profile, scan.artifacts, ImageKind.EMMC, "/dev/mmcblk0p2"
        )

        assert "root=/dev/mmcblk0p2 " in text

    def test_deterministic(self, rockchip_board: Path):
        """Same inputs give byte-identical output."""
        first = locate_artifacts(rockchip_board)
        second = locate_artifacts(rockchip_board)

        assert generate_boot_config(
            first.profile, first.artifacts
        ).encode() == generate_boot_config(second.profile, second.artifacts).encode()

    def test_without_device_tree(self, tmp_path: Path):
        """The FDT line is omitted when no blob exists."""
        (tmp_path / "Image").write_bytes(b"k")
        scan = locate_artifacts(tmp_path, "rk3588")

        entry = build_boot_entry(scan.profile, scan.artifacts)

        assert entry.fdt_path is None
        assert "FDT" not in entry.render()


class TestBootEntry:
    """Tests for BootEntry rendering."""

    def test_render(self):
        entry = BootEntry("Linux", "/boot/Image", "/boot/x.dtb", "console=ttyS2,1500000")
        assert entry.render().splitlines() == [
            "LABEL Linux",
            "    KERNEL /boot/Image",
            "    FDT /boot/x.dtb",
            "    APPEND console=ttyS2,1500000",
        ]

    def test_compose_append(self):
        assert (
            compose_append("console=ttyS0,115200", "/dev/mmcblk0p1")
            == "console=ttyS0,115200 root=/dev/mmcblk0p1 rw rootwait"
        )
