"""Error taxonomy for image assembly.

Every fatal condition raised by the engine derives from AssemblyError and
carries a stable ``code`` for programmatic handling, plus the context
(paths, offsets, chip identifiers) needed to diagnose it from the message
alone.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sbc_imagegen.artifacts.locator import MissingArtifacts


class AssemblyError(Exception):
    """Base error for image assembly operations."""

    def __init__(self, message: str, code: str = "assembly_error") -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class MissingArtifactsError(AssemblyError):
    """Required build artifacts are missing and continuation was refused."""

    def __init__(self, missing: MissingArtifacts) -> None:
        lines = "\n".join(f"  - {item.description}" for item in missing.items)
        super().__init__(
            f"Required build artifacts are missing:\n{lines}",
            code="missing_artifacts",
        )
        self.missing = missing


class ArtifactNotFoundError(AssemblyError):
    """An artifact needed by the selected assembly path is absent."""

    def __init__(self, artifact: str, location: str) -> None:
        super().__init__(
            f"{artifact} not found in {location}", code="artifact_not_found"
        )
        self.artifact = artifact
        self.location = location


class UnknownPlatformError(AssemblyError):
    """Chip identifier does not belong to a supported SoC family."""

    def __init__(self, chip_id: str) -> None:
        super().__init__(
            f"Unknown platform for chip '{chip_id}': expected a Rockchip (rk*) "
            "or Allwinner (sun*/a*) identifier",
            code="unknown_platform",
        )
        self.chip_id = chip_id


class UnsupportedPlatformError(AssemblyError):
    """The requested image type is not available for the chip's family."""

    def __init__(self, chip_id: str, family: str, image_kind: str) -> None:
        super().__init__(
            f"{image_kind} images are not supported for {family} chip '{chip_id}'",
            code="unsupported_platform",
        )
        self.chip_id = chip_id
        self.family = family
        self.image_kind = image_kind


class PartitionDeviceTimeoutError(AssemblyError):
    """The kernel never exposed the loop device's partition node."""

    def __init__(self, loop_device: str, attempts: int, candidates: Sequence[str]) -> None:
        super().__init__(
            f"Partition node for {loop_device} did not appear after {attempts} "
            f"attempts (looked for {', '.join(candidates)})",
            code="partition_timeout",
        )
        self.loop_device = loop_device
        self.attempts = attempts


class ToolPrerequisiteError(AssemblyError):
    """A required external tool or tool input file is unavailable."""

    def __init__(self, what: str, path: str | None = None) -> None:
        message = f"{what} not found" if path is None else f"{what} not found: {path}"
        super().__init__(message, code="tool_prerequisite")
        self.what = what
        self.path = path


class LoopAttachError(AssemblyError):
    """Attaching the image file to a loop device failed."""

    def __init__(self, image_path: str, reason: str) -> None:
        super().__init__(
            f"Failed to attach loop device for {image_path}: {reason}",
            code="loop_attach",
        )
        self.image_path = image_path


class MountError(AssemblyError):
    """Mounting or unmounting a filesystem failed."""

    def __init__(self, device: str, mount_point: str, reason: str) -> None:
        super().__init__(
            f"Mount operation failed for {device} at {mount_point}: {reason}",
            code="mount_error",
        )
        self.device = device
        self.mount_point = mount_point


class ToolExecutionError(AssemblyError):
    """An external command exited unsuccessfully or could not be started."""

    def __init__(
        self,
        message: str,
        command: Sequence[str],
        exit_code: int | None = None,
        stderr: str = "",
        code: str = "tool_failed",
    ) -> None:
        super().__init__(message, code=code)
        self.command = list(command)
        self.exit_code = exit_code
        self.stderr = stderr


class PackingToolFailure(ToolExecutionError):
    """The vendor packing or image-maker step failed."""

    def __init__(
        self,
        tool: str,
        command: Sequence[str],
        exit_code: int | None,
        stderr: str = "",
    ) -> None:
        detail = f" (exit code {exit_code})" if exit_code is not None else ""
        super().__init__(
            f"{tool} failed{detail}",
            command,
            exit_code=exit_code,
            stderr=stderr,
            code="packing_failed",
        )
        self.tool = tool


class BootloaderLayoutError(AssemblyError):
    """A bootloader stage would overwrite the data partition."""

    def __init__(self, artifact: str, offset: int, end: int, limit: int) -> None:
        super().__init__(
            f"Bootloader {artifact} at offset {offset} ends at byte {end}, "
            f"past the partition start {limit}",
            code="bootloader_layout",
        )
        self.artifact = artifact
        self.offset = offset


class ImageLayoutError(AssemblyError):
    """The image size leaves no room for the data partition."""

    def __init__(self, image_size: int, partition_start: int) -> None:
        super().__init__(
            f"Image size {image_size} bytes must exceed the partition start "
            f"{partition_start} bytes",
            code="image_layout",
        )
        self.image_size = image_size
        self.partition_start = partition_start


class InvalidLoaderError(AssemblyError):
    """The loader binary header cannot provide a device tag."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Invalid loader {path}: {reason}", code="invalid_loader")
        self.path = path


class FirmwareOverlayError(AssemblyError):
    """No usable firmware cache could be produced."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="firmware_error")


class AssemblyInterrupted(AssemblyError):
    """A termination signal arrived while privileged resources were held."""

    def __init__(self, signum: int) -> None:
        super().__init__(f"Interrupted by signal {signum}", code="interrupted")
        self.signum = signum


__all__ = [
    "ArtifactNotFoundError",
    "AssemblyError",
    "AssemblyInterrupted",
    "BootloaderLayoutError",
    "FirmwareOverlayError",
    "ImageLayoutError",
    "InvalidLoaderError",
    "LoopAttachError",
    "MissingArtifactsError",
    "MountError",
    "PackingToolFailure",
    "PartitionDeviceTimeoutError",
    "ToolExecutionError",
    "ToolPrerequisiteError",
    "UnknownPlatformError",
    "UnsupportedPlatformError",
]
