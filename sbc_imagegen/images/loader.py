"""Loader binary handling for the Rockchip update container.

The image maker selects its device profile with a tag read from the merged
loader: 4 bytes at offset 21 of the header, in reverse order, prefixed
with "RK" (e.g. header bytes b"8853" give "RK3588").
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from sbc_imagegen.errors import InvalidLoaderError, ToolPrerequisiteError
from sbc_imagegen.tools.capabilities import LoaderMerger

logger = logging.getLogger(__name__)

LOADER_TAG_OFFSET = 21
LOADER_TAG_LENGTH = 4
LOADER_TAG_PREFIX = "RK"


def compute_loader_tag(loader_path: Path) -> str:
    """Compute the image-maker tag from a loader binary header.

    Args:
        loader_path: Merged loader binary.

    Returns:
        Tag string such as 'RK3588'.

    Raises:
        InvalidLoaderError: If the file is too short or the tag bytes are
            not printable ASCII.
    """
    try:
        with loader_path.open("rb") as f:
            f.seek(LOADER_TAG_OFFSET)
            raw = f.read(LOADER_TAG_LENGTH)
    except OSError as e:
        raise InvalidLoaderError(str(loader_path), str(e)) from e

    if len(raw) < LOADER_TAG_LENGTH:
        raise InvalidLoaderError(
            str(loader_path),
            f"header shorter than {LOADER_TAG_OFFSET + LOADER_TAG_LENGTH} bytes",
        )
    code = raw[::-1]
    if not all(0x21 <= b <= 0x7E for b in code):
        raise InvalidLoaderError(
            str(loader_path), f"non-printable tag bytes {code.hex()}"
        )

    tag = LOADER_TAG_PREFIX + code.decode("ascii")
    logger.debug("Loader tag for %s: %s", loader_path, tag)
    return tag


def loader_path_for(output_dir: Path, chip_id: str) -> Path:
    """Path of the merged loader in a board output directory."""
    return output_dir / f"{chip_id}_loader.bin"


def rkboot_ini_for(chip_id: str) -> Path:
    """RKBOOT ini path, relative to the rkbin checkout."""
    return Path("RKBOOT") / f"{chip_id.upper()}MINIALL.ini"


def _newest_loader(rkbin_dir: Path) -> Path | None:
    candidates = [
        p
        for pattern in ("*.bin", "bin/*.bin")
        for p in rkbin_dir.glob(pattern)
        if p.is_file()
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.stat().st_mtime)


def ensure_loader(
    output_dir: Path,
    chip_id: str,
    merger: LoaderMerger,
) -> Path:
    """Return the merged loader, generating it with boot_merger if absent.

    The generated loader is copied into the output directory under its own
    name and as <chip>_loader.bin.

    Raises:
        ToolPrerequisiteError: If boot_merger produced no loader.
        PackingToolFailure: If boot_merger fails.
    """
    loader = loader_path_for(output_dir, chip_id)
    if loader.is_file():
        logger.info("Using existing loader: %s", loader)
        return loader

    logger.info("Loader not found in %s, generating from rkbin ...", output_dir)
    merger.merge(rkboot_ini_for(chip_id))

    generated = _newest_loader(merger.rkbin_dir)
    if generated is None:
        raise ToolPrerequisiteError(
            "Loader produced by boot_merger", str(merger.rkbin_dir / "*.bin")
        )

    shutil.copy2(generated, output_dir / generated.name)
    shutil.copy2(generated, loader)
    logger.info("Loader generated and copied as: %s", output_dir / generated.name)
    return loader


__all__ = [
    "LOADER_TAG_OFFSET",
    "compute_loader_tag",
    "ensure_loader",
    "loader_path_for",
    "rkboot_ini_for",
]
