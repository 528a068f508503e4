"""Artifact discovery for a board output directory.

This module handles:
- Resolving the chip identifier (explicit > build.env > DTB prefix > default)
- Discovering the kernel image, device tree blob(s), bootloader files,
  root filesystem tree, kernel modules and kernel metadata
- Reporting every missing required artifact, in checking order

The locator never aborts on missing artifacts; the caller decides whether
to continue (see artifacts.verification).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import dotenv_values

from sbc_imagegen.platforms import PlatformProfile, resolve_profile
from sbc_imagegen.types import ArtifactKind, PlatformFamily

logger = logging.getLogger(__name__)

BUILD_ENV_FILE = "build.env"
ROOTFS_DIR = "rootfs"
ROOTFS_FALLBACK_GLOB = "fresh_*"
DTB_SUBDIR = "dtb"
MODULES_SUBDIR = Path("lib") / "modules"

KERNEL_NAMES: dict[PlatformFamily, tuple[str, ...]] = {
    PlatformFamily.ROCKCHIP: ("Image", "zImage"),
    PlatformFamily.SUNXI: ("zImage", "Image"),
}


@dataclass(frozen=True)
class MissingArtifact:
    """A required artifact that could not be found."""

    kind: ArtifactKind
    description: str


@dataclass(frozen=True)
class MissingArtifacts:
    """Every missing required artifact, in checking order."""

    items: tuple[MissingArtifact, ...]

    @property
    def kinds(self) -> list[ArtifactKind]:
        """Kinds of the missing artifacts."""
        return [item.kind for item in self.items]

    def __bool__(self) -> bool:
        return bool(self.items)


@dataclass(frozen=True)
class BuildArtifactSet:
    """Artifacts discovered for one board build.

    Attributes:
        output_dir: Board output directory.
        chip_id: Resolved chip identifier.
        chip_source: Where the chip identifier came from.
        kernel_image: Kernel image (Image or zImage).
        device_tree: Selected device tree blob.
        device_trees: All discovered device tree blobs.
        bootloader_files: Present bootloader files, keyed by file name,
            in the platform's recognition order.
        rootfs_dir: Populated root filesystem tree.
        modules_dir: Kernel modules tree (optional).
        kernel_config: Kernel config-<version> file (optional).
        system_map: System.map-<version> file (optional).
    """

    output_dir: Path
    chip_id: str
    chip_source: str
    kernel_image: Path | None = None
    device_tree: Path | None = None
    device_trees: tuple[Path, ...] = ()
    bootloader_files: tuple[tuple[str, Path], ...] = ()
    rootfs_dir: Path | None = None
    modules_dir: Path | None = None
    kernel_config: Path | None = None
    system_map: Path | None = None

    @property
    def board_name(self) -> str:
        """Board name, taken from the output directory name."""
        return self.output_dir.name or self.chip_id

    def bootloader(self, name: str) -> Path | None:
        """Look up a present bootloader file by name."""
        for key, path in self.bootloader_files:
            if key == name:
                return path
        return None

    def to_dict(self) -> dict[str, object]:
        """Convert to a JSON-serializable dictionary."""

        def _s(p: Path | None) -> str | None:
            return str(p) if p is not None else None

        return {
            "output_dir": str(self.output_dir),
            "chip_id": self.chip_id,
            "chip_source": self.chip_source,
            "kernel_image": _s(self.kernel_image),
            "device_tree": _s(self.device_tree),
            "device_trees": [str(p) for p in self.device_trees],
            "bootloader_files": {k: str(v) for k, v in self.bootloader_files},
            "rootfs_dir": _s(self.rootfs_dir),
            "modules_dir": _s(self.modules_dir),
            "kernel_config": _s(self.kernel_config),
            "system_map": _s(self.system_map),
        }


@dataclass(frozen=True)
class ArtifactScan:
    """Result of scanning an output directory."""

    artifacts: BuildArtifactSet
    profile: PlatformProfile
    missing: MissingArtifacts = field(default_factory=lambda: MissingArtifacts(()))

    @property
    def complete(self) -> bool:
        """Whether every required artifact is present."""
        return not self.missing


def is_present(path: Path) -> bool:
    """Check that a path is an existing, non-empty regular file."""
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False


def load_build_env(output_dir: Path) -> dict[str, str]:
    """Load the environment snapshot written by a previous build.

    Args:
        output_dir: Board output directory.

    Returns:
        Mapping of variables (empty if the file is absent).
    """
    env_path = output_dir / BUILD_ENV_FILE
    if not env_path.is_file():
        return {}
    logger.info("Loading %s", env_path)
    values = dotenv_values(env_path)
    return {k: v for k, v in values.items() if v is not None}


def find_device_trees(output_dir: Path) -> list[Path]:
    """Find device tree blobs in the output root, then in dtb/."""
    found = sorted(p for p in output_dir.glob("*.dtb") if is_present(p))
    dtb_dir = output_dir / DTB_SUBDIR
    if dtb_dir.is_dir():
        found.extend(sorted(p for p in dtb_dir.glob("*.dtb") if is_present(p)))
    return found


def select_device_tree(
    output_dir: Path,
    candidates: list[Path],
    device_tree_name: str | None = None,
) -> Path | None:
    """Select the device tree blob to boot.

    A name exported by the previous build (DEVICE_TREE, may end in .dts)
    is preferred, looked up in dtb/ then in the output root. Otherwise the
    first discovered blob is used.
    """
    if device_tree_name:
        name = device_tree_name.removesuffix(".dts")
        if not name.endswith(".dtb"):
            name = f"{name}.dtb"
        for candidate in (output_dir / DTB_SUBDIR / name, output_dir / name):
            if is_present(candidate):
                return candidate
        logger.warning("DEVICE_TREE %s not found in %s", name, output_dir)
    return candidates[0] if candidates else None


def chip_from_device_tree(dtb: Path) -> str:
    """Infer a chip identifier from a DTB file name prefix."""
    return dtb.name.split("-", 1)[0]


def resolve_chip_id(
    explicit: str | None,
    build_env: dict[str, str],
    device_tree: Path | None,
    default: str,
) -> tuple[str, str]:
    """Resolve the chip identifier by precedence.

    Args:
        explicit: Value supplied by the caller.
        build_env: Values from build.env.
        device_tree: Selected device tree blob.
        default: Hard-coded fallback.

    Returns:
        Tuple of (chip_id, source) where source is one of
        'explicit', 'build.env', 'device-tree', 'default'.
    """
    if explicit:
        return explicit, "explicit"
    if build_env.get("CHIP"):
        return build_env["CHIP"], "build.env"
    if device_tree is not None:
        return chip_from_device_tree(device_tree), "device-tree"
    return default, "default"


def find_rootfs(output_dir: Path) -> Path | None:
    """Find the populated root filesystem tree."""
    rootfs = output_dir / ROOTFS_DIR
    if rootfs.is_dir():
        return rootfs
    fallbacks = sorted(p for p in output_dir.glob(ROOTFS_FALLBACK_GLOB) if p.is_dir())
    return fallbacks[0] if fallbacks else None


def find_kernel_metadata(output_dir: Path) -> tuple[Path | None, Path | None]:
    """Find config-<ver> and the matching System.map-<ver>.

    Returns:
        Tuple of (kernel_config, system_map); either may be None.
    """
    configs = sorted(p for p in output_dir.glob("config-*") if p.is_file())
    if not configs:
        return None, None
    version = configs[0].name.split("-", 1)[1]
    system_map = output_dir / f"System.map-{version}"
    return configs[0], system_map if system_map.is_file() else None


def locate_artifacts(
    output_dir: Path,
    chip_id: str | None = None,
    *,
    default_chip: str = "rk3588",
) -> ArtifactScan:
    """Scan an output directory for build artifacts.

    Missing items are reported in this order: rootfs directory, kernel
    image, device tree blob(s), bootloader combination.

    Args:
        output_dir: Board output directory.
        chip_id: Optional explicit chip identifier.
        default_chip: Chip used when nothing else resolves one.

    Returns:
        ArtifactScan with the artifact set, resolved profile and missing items.

    Raises:
        UnknownPlatformError: If the resolved chip matches no family.
    """
    output_dir = Path(output_dir)
    logger.debug("Scanning artifacts in %s", output_dir)

    build_env = load_build_env(output_dir)
    device_trees = find_device_trees(output_dir)
    device_tree = select_device_tree(
        output_dir, device_trees, build_env.get("DEVICE_TREE")
    )
    if device_tree is not None and device_tree not in device_trees:
        device_trees.insert(0, device_tree)

    chip, chip_source = resolve_chip_id(chip_id, build_env, device_tree, default_chip)
    profile = resolve_profile(chip)
    logger.info(
        "Using CHIP=%s (from %s), platform=%s",
        profile.chip_id,
        chip_source,
        profile.family.value,
    )

    missing: list[MissingArtifact] = []

    rootfs_dir = find_rootfs(output_dir)
    if rootfs_dir is None:
        missing.append(
            MissingArtifact(
                ArtifactKind.ROOTFS,
                f"rootfs directory ({output_dir / ROOTFS_DIR})",
            )
        )

    kernel_names = KERNEL_NAMES[profile.family]
    kernel_image = next(
        (output_dir / n for n in kernel_names if is_present(output_dir / n)), None
    )
    if kernel_image is None:
        missing.append(
            MissingArtifact(
                ArtifactKind.KERNEL,
                f"kernel image ({' / '.join(kernel_names)}) in {output_dir}",
            )
        )

    if device_tree is None:
        missing.append(
            MissingArtifact(
                ArtifactKind.DEVICE_TREE,
                f"device tree blob (*.dtb or {DTB_SUBDIR}/*.dtb) in {output_dir}",
            )
        )

    bootloader_files = tuple(
        (name, output_dir / name)
        for name in profile.bootloader_names
        if is_present(output_dir / name)
    )
    if profile.select_boot_layout({name for name, _ in bootloader_files}) is None:
        combos = " or ".join(
            " + ".join(layout.artifacts) for layout in profile.boot_layouts
        )
        missing.append(
            MissingArtifact(
                ArtifactKind.BOOTLOADER,
                f"{profile.family.value} bootloader ({combos}) in {output_dir}",
            )
        )

    modules_dir = output_dir / MODULES_SUBDIR
    kernel_config, system_map = find_kernel_metadata(output_dir)

    artifacts = BuildArtifactSet(
        output_dir=output_dir,
        chip_id=profile.chip_id,
        chip_source=chip_source,
        kernel_image=kernel_image,
        device_tree=device_tree,
        device_trees=tuple(device_trees),
        bootloader_files=bootloader_files,
        rootfs_dir=rootfs_dir,
        modules_dir=modules_dir if modules_dir.is_dir() else None,
        kernel_config=kernel_config,
        system_map=system_map,
    )

    if missing:
        logger.warning("Some required artifacts are missing:")
        for item in missing:
            logger.warning("  - %s", item.description)
    else:
        logger.info("All expected artifacts were found.")

    return ArtifactScan(
        artifacts=artifacts,
        profile=profile,
        missing=MissingArtifacts(tuple(missing)),
    )


__all__ = [
    "ArtifactScan",
    "BuildArtifactSet",
    "MissingArtifact",
    "MissingArtifacts",
    "chip_from_device_tree",
    "find_device_trees",
    "find_kernel_metadata",
    "find_rootfs",
    "is_present",
    "load_build_env",
    "locate_artifacts",
    "resolve_chip_id",
    "select_device_tree",
]
