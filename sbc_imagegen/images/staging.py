"""Filesystem population helpers shared by both assembly paths.

This module handles:
- Copying the root filesystem tree (preserving ownership, ACLs and xattrs,
  skipping synthetic mount-point subtrees)
- Copying kernel modules
- Staging the boot directory (kernel, device trees, kernel metadata,
  extlinux.conf)
- Measuring directory disk usage the way `du -s` does
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

from sbc_imagegen.artifacts.locator import MODULES_SUBDIR, BuildArtifactSet
from sbc_imagegen.bootconfig import EXTLINUX_DIR, EXTLINUX_FILE
from sbc_imagegen.tools.runner import ToolRunner

logger = logging.getLogger(__name__)

# Synthetic filesystems mounted at runtime; their contents never belong in an image
ROOTFS_EXCLUDES = ("/dev/*", "/proc/*", "/sys/*", "/tmp/*", "/run/*")
BOOT_SUBDIR = "boot"


def copy_rootfs(runner: ToolRunner, source: Path, target: Path) -> None:
    """Copy a root filesystem tree into a mounted target.

    Args:
        runner: ToolRunner used for rsync.
        source: Populated root filesystem tree.
        target: Destination root (usually a mount point).
    """
    logger.info("Copying rootfs from %s ...", source)
    cmd = ["rsync", "-aAX"]
    cmd.extend(f"--exclude={pattern}" for pattern in ROOTFS_EXCLUDES)
    cmd.extend([f"{source}/", f"{target}/"])
    runner.run(cmd)


def copy_modules(runner: ToolRunner, modules_dir: Path, target_root: Path) -> Path:
    """Copy a kernel modules tree into <target_root>/lib/modules."""
    dest = target_root / MODULES_SUBDIR
    dest.mkdir(parents=True, exist_ok=True)
    logger.info("Copying kernel modules from %s ...", modules_dir)
    runner.run(["cp", "-a", f"{modules_dir}/.", f"{dest}/"])
    return dest


def stage_boot_files(
    artifacts: BuildArtifactSet,
    boot_dir: Path,
    boot_config: str,
) -> list[Path]:
    """Populate a boot directory.

    Copies the kernel image, every discovered device tree blob, the optional
    kernel config and System.map (renamed to config and System.map), and
    writes extlinux/extlinux.conf.

    Args:
        artifacts: Located build artifacts.
        boot_dir: Directory to populate (created if needed).
        boot_config: Rendered extlinux.conf text.

    Returns:
        Paths of the staged files, in copy order.
    """
    boot_dir.mkdir(parents=True, exist_ok=True)
    staged: list[Path] = []

    def _copy(src: Path, name: str | None = None) -> None:
        dest = boot_dir / (name or src.name)
        shutil.copy2(src, dest)
        staged.append(dest)

    if artifacts.kernel_image is not None:
        _copy(artifacts.kernel_image)
    else:
        logger.warning("Kernel image not found in %s", artifacts.output_dir)

    if artifacts.device_trees:
        for dtb in artifacts.device_trees:
            _copy(dtb)
    else:
        logger.warning("No DTB found to copy into %s", boot_dir)

    if artifacts.kernel_config is not None:
        _copy(artifacts.kernel_config, "config")
    if artifacts.system_map is not None:
        _copy(artifacts.system_map, "System.map")

    extlinux_dir = boot_dir / EXTLINUX_DIR
    extlinux_dir.mkdir(parents=True, exist_ok=True)
    conf = extlinux_dir / EXTLINUX_FILE
    conf.write_text(boot_config, encoding="utf-8")
    staged.append(conf)

    logger.info("%s populated.", boot_dir)
    return staged


def directory_usage_kib(path: Path) -> int:
    """Disk usage of a directory tree in KiB, as reported by `du -s`.

    Counts allocated blocks of every entry (the directory itself included),
    each hard-linked inode once.
    """
    seen: set[tuple[int, int]] = set()
    total = 0
    for dirpath, dirnames, filenames in os.walk(path):
        for name in [".", *dirnames, *filenames]:
            st = os.lstat(os.path.join(dirpath, name))
            key = (st.st_dev, st.st_ino)
            if key in seen:
                continue
            seen.add(key)
            total += st.st_blocks * 512
    return -(-total // 1024)


__all__ = [
    "BOOT_SUBDIR",
    "ROOTFS_EXCLUDES",
    "copy_modules",
    "copy_rootfs",
    "directory_usage_kib",
    "stage_boot_files",
]
