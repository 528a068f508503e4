"""Scoped handles for privileged OS resources.

This module handles:
- Attaching an image file to a loop device with partition scanning
- Waiting (bounded) for the kernel to expose the partition node
- Mounting a device at a temporary mount point
- Converting termination signals into exceptions so scoped cleanup runs

Each handle is a context manager: release (detach, unmount) happens on
every exit path. When an exception is already propagating, a failed
release is logged and the original exception wins; on the success path a
failed release is raised.
"""

from __future__ import annotations

import logging
import os
import signal
import tempfile
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from types import FrameType

from sbc_imagegen.errors import (
    AssemblyInterrupted,
    LoopAttachError,
    MountError,
    PartitionDeviceTimeoutError,
    ToolExecutionError,
)
from sbc_imagegen.tools.runner import ToolRunner

logger = logging.getLogger(__name__)

TERMINATION_SIGNALS = (signal.SIGTERM, signal.SIGHUP)
MOUNT_PREFIX = "sbc-imagegen-"


@dataclass(frozen=True)
class LoopDevice:
    """An attached loop device."""

    path: str
    image_path: Path

    def partition_candidates(self, number: int = 1) -> list[str]:
        """Node names for a partition.

        Loop partitions are always named <loop>p<N>; <loop><N> would be a
        different loop device (loop1 -> loop11).
        """
        return [f"{self.path}p{number}"]


def _detach(loop: LoopDevice, runner: ToolRunner, raise_errors: bool) -> None:
    try:
        runner.run(["losetup", "-d", loop.path])
        logger.info("Detached loop device %s", loop.path)
    except ToolExecutionError as e:
        if raise_errors:
            raise
        logger.error("Failed to detach loop device %s: %s", loop.path, e)


def _detach_by_image(image_path: Path, runner: ToolRunner) -> None:
    """Detach loop devices backed by image_path after an interrupted attach."""
    try:
        result = runner.run(["losetup", "-j", str(image_path)])
    except ToolExecutionError as e:
        logger.error("Could not list loop devices for %s: %s", image_path, e)
        return
    for line in result.stdout.splitlines():
        device = line.split(":", 1)[0].strip()
        if device.startswith("/dev/"):
            _detach(LoopDevice(device, image_path), runner, raise_errors=False)


@contextmanager
def attached_loop_device(
    image_path: Path,
    runner: ToolRunner,
    *,
    partscan: bool = True,
) -> Iterator[LoopDevice]:
    """Attach an image file to the first free loop device.

    Args:
        image_path: Image file to attach.
        runner: ToolRunner used for losetup.
        partscan: Ask the kernel to scan the partition table.

    Yields:
        LoopDevice, detached when the context exits.

    Raises:
        LoopAttachError: If losetup fails or reports no device.
    """
    cmd = ["losetup", "--find", "--show"]
    if partscan:
        cmd.append("--partscan")
    cmd.append(str(image_path))

    try:
        result = runner.run(cmd)
    except ToolExecutionError as e:
        raise LoopAttachError(str(image_path), str(e)) from e
    except BaseException:
        _detach_by_image(image_path, runner)
        raise

    lines = result.stdout.strip().splitlines()
    device = lines[-1].strip() if lines else ""
    if not device.startswith("/dev/"):
        raise LoopAttachError(str(image_path), f"unexpected losetup output {device!r}")

    loop = LoopDevice(path=device, image_path=image_path)
    logger.info("Loop device: %s", loop.path)

    try:
        yield loop
    except BaseException:
        _detach(loop, runner, raise_errors=False)
        raise
    else:
        _detach(loop, runner, raise_errors=True)


def wait_for_partition(
    loop: LoopDevice,
    attempts: int = 10,
    interval: float = 0.3,
    *,
    number: int = 1,
    exists: Callable[[str], bool] = os.path.exists,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Poll for the partition node of a loop device.

    Args:
        loop: Attached loop device.
        attempts: Maximum number of polls.
        interval: Seconds to sleep between polls.
        number: Partition number.
        exists: Path existence check.
        sleep: Sleep function.

    Returns:
        Path of the partition node.

    Raises:
        PartitionDeviceTimeoutError: If the node never appears.
    """
    candidates = loop.partition_candidates(number)
    for attempt in range(1, attempts + 1):
        for candidate in candidates:
            if exists(candidate):
                logger.debug("Partition node %s found (attempt %d)", candidate, attempt)
                return candidate
        if attempt < attempts:
            sleep(interval)

    logger.error("Partition node not found for %s", loop.path)
    raise PartitionDeviceTimeoutError(loop.path, attempts, candidates)


def _remove_mount_point(mount_point: Path) -> None:
    try:
        mount_point.rmdir()
    except OSError as e:
        logger.warning("Could not remove mount point %s: %s", mount_point, e)


def _unmount(
    device: str,
    mount_point: Path,
    runner: ToolRunner,
    raise_errors: bool,
) -> None:
    os.sync()
    try:
        runner.run(["umount", str(mount_point)])
        logger.info("Unmounted %s", mount_point)
    except ToolExecutionError as e:
        if raise_errors:
            raise MountError(device, str(mount_point), str(e)) from e
        logger.error("Failed to unmount %s: %s", mount_point, e)
        return
    _remove_mount_point(mount_point)


@contextmanager
def mounted(
    device: str | Path,
    runner: ToolRunner,
    *,
    mount_root: Path | None = None,
    options: str | None = None,
) -> Iterator[Path]:
    """Mount a device (or image file) at a fresh temporary directory.

    Args:
        device: Block device or image file to mount.
        runner: ToolRunner used for mount/umount.
        mount_root: Parent for the mount point (system temp if None).
        options: Optional mount -o options (e.g., 'loop').

    Yields:
        The mount point, unmounted and removed when the context exits.

    Raises:
        MountError: If mounting or unmounting fails.
    """
    device = str(device)
    if mount_root is not None:
        mount_root.mkdir(parents=True, exist_ok=True)
    mount_point = Path(tempfile.mkdtemp(prefix=MOUNT_PREFIX, dir=mount_root))

    cmd = ["mount"]
    if options:
        cmd.extend(["-o", options])
    cmd.extend([device, str(mount_point)])

    try:
        runner.run(cmd)
    except ToolExecutionError as e:
        _remove_mount_point(mount_point)
        raise MountError(device, str(mount_point), str(e)) from e
    except BaseException:
        if os.path.ismount(mount_point):
            _unmount(device, mount_point, runner, raise_errors=False)
        else:
            _remove_mount_point(mount_point)
        raise

    logger.info("Mounted %s at %s", device, mount_point)
    try:
        yield mount_point
    except BaseException:
        _unmount(device, mount_point, runner, raise_errors=False)
        raise
    else:
        _unmount(device, mount_point, runner, raise_errors=True)


@contextmanager
def termination_guard(
    signals: tuple[signal.Signals, ...] = TERMINATION_SIGNALS,
) -> Iterator[None]:
    """Raise AssemblyInterrupted on termination signals within the block.

    SIGINT already raises KeyboardInterrupt. Handlers can only be installed
    from the main thread; elsewhere the guard is a no-op.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, frame: FrameType | None) -> None:
        logger.warning("Received signal %d, releasing resources", signum)
        raise AssemblyInterrupted(signum)

    previous = {sig: signal.signal(sig, _handler) for sig in signals}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


__all__ = [
    "LoopDevice",
    "attached_loop_device",
    "mounted",
    "termination_guard",
    "wait_for_partition",
]
