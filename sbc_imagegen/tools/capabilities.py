"""Capability wrappers over the ToolRunner.

Each wrapper composes the command line for one kind of external tool:
- Formatter: mkfs.<type> and genext2fs
- Packer: the vendor afptool packing step
- ImageMaker: the vendor rkImageMaker step
- LoaderMerger: rkbin boot_merger
"""

from __future__ import annotations

import logging
from pathlib import Path

from sbc_imagegen.errors import PackingToolFailure, ToolExecutionError
from sbc_imagegen.tools.runner import CommandResult, ToolRunner

logger = logging.getLogger(__name__)

# Flags that stop mkfs from prompting when the target is a regular file
# or carries an old signature.
FORCE_FLAGS: dict[str, str] = {
    "ext2": "-F",
    "ext3": "-F",
    "ext4": "-F",
    "btrfs": "-f",
    "xfs": "-f",
}


class Formatter:
    """Creates filesystems on devices and image files."""

    def __init__(self, runner: ToolRunner, filesystem_type: str = "ext4") -> None:
        self.runner = runner
        self.filesystem_type = filesystem_type

    @property
    def program(self) -> str:
        """The mkfs program for the configured filesystem."""
        return f"mkfs.{self.filesystem_type}"

    def format(self, target: str | Path) -> None:
        """Create a filesystem on a block device or image file."""
        cmd = [self.program]
        force = FORCE_FLAGS.get(self.filesystem_type)
        if force:
            cmd.append(force)
        cmd.append(str(target))
        logger.info("Formatting %s as %s", target, self.filesystem_type)
        self.runner.run(cmd)

    def build_from_directory(
        self,
        source_dir: Path,
        image_path: Path,
        blocks: int,
        block_size: int,
    ) -> None:
        """Create an ext2 image populated from a directory (genext2fs).

        Files are owned by root in the resulting image (-U).
        """
        logger.info(
            "Creating %s from %s (%d blocks of %d bytes)",
            image_path,
            source_dir,
            blocks,
            block_size,
        )
        self.runner.run(
            [
                "genext2fs",
                "-b",
                str(blocks),
                "-B",
                str(block_size),
                "-d",
                str(source_dir),
                "-U",
                str(image_path),
            ]
        )


def _run_vendor_tool(
    runner: ToolRunner,
    tool: str,
    cmd: list[str],
    cwd: Path | None = None,
) -> CommandResult:
    try:
        result = runner.run(cmd, cwd=cwd, check=False)
    except ToolExecutionError as e:
        raise PackingToolFailure(tool, cmd, e.exit_code, e.stderr) from e
    if not result.success:
        logger.error("%s failed with exit code %d", tool, result.exit_code)
        raise PackingToolFailure(tool, cmd, result.exit_code, result.stderr)
    return result


class Packer:
    """Packs partition images into a raw update container (afptool)."""

    def __init__(self, runner: ToolRunner, afptool: Path) -> None:
        self.runner = runner
        self.afptool = afptool

    def pack(self, base_dir: Path, output: Path, package_file: Path) -> None:
        """Pack the files listed in package_file, relative to base_dir."""
        logger.info("Packing raw image with afptool ...")
        _run_vendor_tool(
            self.runner,
            "afptool",
            [str(self.afptool), "-pack", str(base_dir), str(output), str(package_file)],
        )


class ImageMaker:
    """Wraps a raw container and loader into the final update image."""

    def __init__(self, runner: ToolRunner, tool: Path, os_type: str = "linux") -> None:
        self.runner = runner
        self.tool = tool
        self.os_type = os_type

    def make(self, tag: str, loader: Path, raw_image: Path, output: Path) -> None:
        """Create the update image for the device type named by tag."""
        logger.info("Creating final update image with rkImageMaker (%s) ...", tag)
        _run_vendor_tool(
            self.runner,
            "rkImageMaker",
            [
                str(self.tool),
                f"-{tag}",
                str(loader),
                str(raw_image),
                str(output),
                f"-os_type:{self.os_type}",
            ],
        )


class LoaderMerger:
    """Generates the merged loader binary with rkbin boot_merger."""

    def __init__(self, runner: ToolRunner, boot_merger: Path, rkbin_dir: Path) -> None:
        self.runner = runner
        self.boot_merger = boot_merger
        self.rkbin_dir = rkbin_dir

    def merge(self, ini_relative: Path) -> None:
        """Run boot_merger for an RKBOOT ini, inside the rkbin checkout."""
        _run_vendor_tool(
            self.runner,
            "boot_merger",
            [str(self.boot_merger), str(ini_relative)],
            cwd=self.rkbin_dir,
        )


__all__ = [
    "FORCE_FLAGS",
    "Formatter",
    "ImageMaker",
    "LoaderMerger",
    "Packer",
]
