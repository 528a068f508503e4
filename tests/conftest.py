"""Shared fixtures for sbc_imagegen tests.

No test touches real loop devices or mounts: every external command goes
through FakeToolRunner, which records the command and can simulate output,
failures and side effects.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

from sbc_imagegen.config import Settings
from sbc_imagegen.errors import ToolExecutionError
from sbc_imagegen.tools.runner import CommandResult


class FakeToolRunner:
    """ToolRunner that records commands instead of executing them.

    Attributes:
        calls: Every command run, in order.
        inputs: stdin text passed with each command.
        cwds: Working directory of each command.
        responses: stdout to return, keyed by program name.
        failures: Program names that exit with status 1.
        side_effects: Callables run with the command, keyed by program name.
        missing_tools: Program names `which` does not find.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.inputs: list[str | None] = []
        self.cwds: list[Path | None] = []
        self.responses: dict[str, str] = {"losetup": "/dev/loop7\n"}
        self.failures: set[str] = set()
        self.side_effects: dict[str, Callable[[list[str]], None]] = {}
        self.missing_tools: set[str] = set()

    def run(
        self,
        cmd: Sequence[str | os.PathLike[str]],
        *,
        cwd: Path | None = None,
        input_text: str | None = None,
        check: bool = True,
    ) -> CommandResult:
        command = [os.fspath(c) for c in cmd]
        self.calls.append(command)
        self.inputs.append(input_text)
        self.cwds.append(cwd)

        program = Path(command[0]).name
        if program in self.side_effects:
            self.side_effects[program](command)

        if program in self.failures:
            if check:
                raise ToolExecutionError(
                    f"{program} failed with exit code 1: boom",
                    command,
                    exit_code=1,
                    stderr="boom",
                )
            return CommandResult(command, 1, "", "boom")
        return CommandResult(command, 0, self.responses.get(program, ""), "")

    def which(self, name: str) -> str | None:
        if name in self.missing_tools:
            return None
        return f"/usr/bin/{name}"

    def programs(self) -> list[str]:
        """Program names of every recorded call, in order."""
        return [Path(c[0]).name for c in self.calls]

    def find(self, program: str) -> list[list[str]]:
        """Recorded calls of one program."""
        return [c for c in self.calls if Path(c[0]).name == program]


@pytest.fixture
def fake_runner() -> FakeToolRunner:
    """Create a fresh FakeToolRunner."""
    return FakeToolRunner()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Create settings confined to tmp_path."""
    return Settings(
        cache_dir=tmp_path / "cache",
        rk_tools_dir=tmp_path / "rk-tools",
        rkbin_dir=tmp_path / "rkbin",
        mount_root=tmp_path / "mnt",
        firmware_enabled=False,
        sd_image_size_mib=128,
        rootfs_image_size_mib=64,
        partition_poll_interval=0,
    )


def write_file(path: Path, data: bytes = b"data") -> Path:
    """Write a file, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


@pytest.fixture
def rockchip_board(tmp_path: Path) -> Path:
    """Create a complete Rockchip (rk3588) board output directory."""
    out = tmp_path / "rock-5b"
    write_file(out / "Image", b"kernel" * 100)
    write_file(out / "dtb" / "rk3588-rock-5b.dtb", b"dtb-data")
    write_file(out / "idbloader.img", b"I" * 1024)
    write_file(out / "u-boot.itb", b"U" * 2048)
    write_file(out / "rootfs" / "etc" / "hostname", b"rock-5b\n")
    write_file(out / "rootfs" / "usr" / "bin" / "true", b"\x7fELF")
    write_file(out / "config-6.1.0", b"CONFIG_ARM64=y\n")
    write_file(out / "System.map-6.1.0", b"ffff0000 T _text\n")
    write_file(out / "lib" / "modules" / "6.1.0" / "modules.dep", b"")
    write_file(out / "build.env", b"CHIP=rk3588\nDEVICE_TREE=rk3588-rock-5b.dts\n")
    return out


@pytest.fixture
def sunxi_board(tmp_path: Path) -> Path:
    """Create a complete Allwinner (sun50i) board output directory."""
    out = tmp_path / "pine64"
    write_file(out / "zImage", b"kernel")
    write_file(out / "sun50i-a64-pine64.dtb", b"dtb-data")
    write_file(out / "u-boot-sunxi-with-spl.bin", b"S" * 4096)
    write_file(out / "rootfs" / "etc" / "hostname", b"pine64\n")
    return out
