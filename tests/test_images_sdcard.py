"""Tests for images/sdcard.py module.

Assembles SD images end to end with FakeToolRunner: the image file,
bootloader offsets and boot staging are real; loop, mount and mkfs are
simulated.
"""

import hashlib
import shutil
from pathlib import Path

import pytest
from conftest import write_file

from sbc_imagegen.artifacts.locator import locate_artifacts
from sbc_imagegen.errors import (
    ArtifactNotFoundError,
    BootloaderLayoutError,
    ImageLayoutError,
    PartitionDeviceTimeoutError,
    ToolExecutionError,
    ToolPrerequisiteError,
)
from sbc_imagegen.images.sdcard import (
    PartitionLayout,
    SdImageAssembler,
    check_boot_layout,
    create_blank_image,
    plan_layout,
)
from sbc_imagegen.platforms import MIB, resolve_profile
from sbc_imagegen.types import ImageKind

LOOP_PARTITION = "/dev/loop7p1"


def _rsync_copy(cmd: list[str]) -> None:
    shutil.copytree(cmd[-2].rstrip("/"), cmd[-1].rstrip("/"), dirs_exist_ok=True)


def _tree_digest(root: Path) -> dict[str, str]:
    return {
        str(p.relative_to(root)): hashlib.sha256(p.read_bytes()).hexdigest()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


@pytest.fixture
def assembler(settings, fake_runner) -> SdImageAssembler:
    """Create an assembler whose partition node appears immediately."""
    return SdImageAssembler(
        settings,
        fake_runner,
        path_exists=lambda p: p == LOOP_PARTITION,
        sleep=lambda s: None,
    )


class TestPlanLayout:
    """Tests for plan_layout and PartitionLayout."""

    def test_rockchip(self):
        layout = plan_layout(resolve_profile("rk3588"), 6144 * MIB)
        assert layout.partition_start_bytes == 67108864
        assert layout.start_sector == 131072
        assert layout.sfdisk_script() == "131072,,L\n"

    def test_sunxi(self):
        layout = plan_layout(resolve_profile("sun50i"), 6144 * MIB)
        assert layout.start_sector == 4096
        assert layout.sfdisk_script() == "4096,,L\n"

    def test_too_small(self):
        """The image must extend past the partition start."""
        with pytest.raises(ImageLayoutError) as exc_info:
            plan_layout(resolve_profile("rk3588"), 64 * MIB)

        assert exc_info.value.code == "image_layout"
        assert exc_info.value.image_size == 64 * MIB
        assert exc_info.value.partition_start == 64 * MIB

    def test_filesystem_type(self):
        layout = PartitionLayout(128 * MIB, 2 * MIB, "btrfs")
        assert layout.filesystem_type == "btrfs"


class TestCreateBlankImage:
    def test_exact_size_zero_filled(self, tmp_path):
        image = create_blank_image(tmp_path / "sd.img", 4 * MIB)
        assert image.stat().st_size == 4 * MIB
        assert image.read_bytes() == b"\x00" * (4 * MIB)


class TestCheckBootLayout:
    """Tests for check_boot_layout function."""

    def test_overlap_rejected(self, sunxi_board):
        """A stage running past the partition start is rejected."""
        write_file(sunxi_board / "u-boot-sunxi-with-spl.bin", b"S" * (2 * MIB))
        scan = locate_artifacts(sunxi_board)

        with pytest.raises(BootloaderLayoutError) as exc_info:
            check_boot_layout(
                scan.artifacts,
                scan.profile.boot_layouts[0],
                scan.profile.partition_start_bytes,
            )

        assert exc_info.value.offset == 8192
        assert exc_info.value.code == "bootloader_layout"


class TestSdImageAssembler:
    """Tests for SdImageAssembler.assemble."""

    def test_rockchip_image(self, assembler, fake_runner, rockchip_board):
        """Should produce a partitioned image with the split bootloader embedded."""
        fake_runner.side_effects["rsync"] = _rsync_copy
        scan = locate_artifacts(rockchip_board)

        image = assembler.assemble(scan)

        assert image.path == rockchip_board / "rock-5b-sd.img"
        assert image.kind is ImageKind.SD
        assert image.chip_id == "rk3588"
        assert image.size_bytes == 128 * MIB

        data = image.path.read_bytes()
        assert data[32768 : 32768 + 1024] == b"I" * 1024
        assert data[8388608 : 8388608 + 2048] == b"U" * 2048
        assert data[:32768] == b"\x00" * 32768

        sfdisk_index = fake_runner.programs().index("sfdisk")
        assert fake_runner.calls[sfdisk_index] == ["sfdisk", str(image.path)]
        assert fake_runner.inputs[sfdisk_index] == "131072,,L\n"

    def test_command_order(self, assembler, fake_runner, rockchip_board):
        """Attach precedes polling and formatting; unmount precedes detach."""
        assembler.assemble(locate_artifacts(rockchip_board))

        assert fake_runner.programs() == [
            "sfdisk",
            "losetup",
            "mkfs.ext4",
            "mount",
            "rsync",
            "cp",
            "umount",
            "losetup",
        ]
        assert fake_runner.find("mkfs.ext4") == [["mkfs.ext4", "-F", LOOP_PARTITION]]
        assert fake_runner.calls[-1] == ["losetup", "-d", "/dev/loop7"]

    def test_rootfs_excludes(self, assembler, fake_runner, rockchip_board):
        """Synthetic mount-point subtrees are excluded from the copy."""
        assembler.assemble(locate_artifacts(rockchip_board))

        (rsync,) = fake_runner.find("rsync")
        assert rsync[:2] == ["rsync", "-aAX"]
        for pattern in ("/dev/*", "/proc/*", "/sys/*", "/tmp/*", "/run/*"):
            assert f"--exclude={pattern}" in rsync
        assert rsync[-2] == f"{rockchip_board / 'rootfs'}/"

    def test_partition_content_matches_rootfs(self, settings, fake_runner, rockchip_board):
        """The copied tree matches the source and /boot is staged."""
        fake_runner.side_effects["rsync"] = _rsync_copy
        captured = {}

        def capture(cmd):
            mount_point = Path(cmd[-1])
            captured["rootfs"] = _tree_digest(mount_point)
            captured["boot"] = sorted(
                p.name for p in (mount_point / "boot").iterdir()
            )
            captured["extlinux"] = (
                mount_point / "boot" / "extlinux" / "extlinux.conf"
            ).read_text()

        fake_runner.side_effects["umount"] = capture
        assembler = SdImageAssembler(
            settings,
            fake_runner,
            path_exists=lambda p: p == LOOP_PARTITION,
            sleep=lambda s: None,
        )

        assembler.assemble(locate_artifacts(rockchip_board))

        source = _tree_digest(rockchip_board / "rootfs")
        copied = {k: v for k, v in captured["rootfs"].items() if not k.startswith("boot")}
        assert copied == source
        assert captured["boot"] == [
            "Image",
            "System.map",
            "config",
            "extlinux",
            "rk3588-rock-5b.dtb",
        ]
        assert "FDT /boot/rk3588-rock-5b.dtb" in captured["extlinux"]

    def test_sunxi_image(self, assembler, fake_runner, sunxi_board):
        """Sunxi images embed the SPL at 8 KiB and partition at 2 MiB."""
        image = assembler.assemble(locate_artifacts(sunxi_board))

        data = image.path.read_bytes()
        assert data[8192 : 8192 + 4096] == b"S" * 4096
        assert fake_runner.inputs[fake_runner.programs().index("sfdisk")] == "4096,,L\n"
        assert image.path.name == "pine64-sd.img"

    def test_size_override(self, assembler, rockchip_board):
        image = assembler.assemble(locate_artifacts(rockchip_board), 96 * MIB)
        assert image.size_bytes == 96 * MIB

    def test_format_failure_releases_loop(self, assembler, fake_runner, rockchip_board):
        """A failed format detaches the loop device and never mounts."""
        fake_runner.failures = {"mkfs.ext4"}

        with pytest.raises(ToolExecutionError):
            assembler.assemble(locate_artifacts(rockchip_board))

        assert "mount" not in fake_runner.programs()
        assert fake_runner.calls[-1] == ["losetup", "-d", "/dev/loop7"]
        assert (rockchip_board / "rock-5b-sd.img").exists()

    def test_copy_failure_unmounts_then_detaches(self, assembler, fake_runner, rockchip_board):
        """A failed copy unwinds in order."""
        fake_runner.failures = {"rsync"}

        with pytest.raises(ToolExecutionError):
            assembler.assemble(locate_artifacts(rockchip_board))

        assert fake_runner.programs()[-2:] == ["umount", "losetup"]
        assert fake_runner.calls[-1][:2] == ["losetup", "-d"]

    def test_partition_timeout_releases_loop(self, settings, fake_runner, rockchip_board):
        """A missing partition node detaches the loop device."""
        sleeps = []
        assembler = SdImageAssembler(
            settings, fake_runner, path_exists=lambda p: False, sleep=sleeps.append
        )

        with pytest.raises(PartitionDeviceTimeoutError):
            assembler.assemble(locate_artifacts(rockchip_board))

        assert fake_runner.programs() == ["sfdisk", "losetup", "losetup"]
        assert len(sleeps) == settings.partition_poll_attempts - 1

    def test_missing_host_tool(self, assembler, fake_runner, rockchip_board):
        """Missing host tools fail before the image is created."""
        fake_runner.missing_tools = {"sfdisk"}

        with pytest.raises(ToolPrerequisiteError):
            assembler.assemble(locate_artifacts(rockchip_board))

        assert fake_runner.calls == []
        assert not (rockchip_board / "rock-5b-sd.img").exists()

    def test_missing_rootfs(self, assembler, fake_runner, rockchip_board):
        """No rootfs tree is fatal even after confirmation."""
        shutil.rmtree(rockchip_board / "rootfs")

        with pytest.raises(ArtifactNotFoundError):
            assembler.assemble(locate_artifacts(rockchip_board))

        assert fake_runner.calls == []

    def test_missing_bootloader_still_builds(self, assembler, rockchip_board):
        """A confirmed partial build writes no bootloader."""
        (rockchip_board / "idbloader.img").unlink()
        (rockchip_board / "u-boot.itb").unlink()

        image = assembler.assemble(locate_artifacts(rockchip_board))

        with image.path.open("rb") as f:
            f.seek(32768)
            assert f.read(1024) == b"\x00" * 1024

    def test_firmware_installed(self, settings, fake_runner, rockchip_board):
        """The firmware overlay runs against the mounted root before unmount."""
        installed = []

        class RecordingFirmware:
            def install(self, target_root):
                installed.append((target_root, list(fake_runner.programs())))

        assembler = SdImageAssembler(
            settings,
            fake_runner,
            RecordingFirmware(),
            path_exists=lambda p: p == LOOP_PARTITION,
            sleep=lambda s: None,
        )
        assembler.assemble(locate_artifacts(rockchip_board))

        (target_root, programs_before), = installed
        assert target_root.parent == settings.mount_root
        assert "rsync" in programs_before
        assert "umount" not in programs_before
