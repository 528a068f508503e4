"""External firmware overlay.

This module handles:
- Maintaining a local shallow clone of an out-of-tree firmware collection
- Fast-forward refreshing the clone, falling back to the existing cache
  with a warning when the refresh fails
- Mirroring the cache into <target>/lib/firmware (files absent from the
  cache are deleted from the target)

A failed initial clone is fatal because no usable cache exists.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from sbc_imagegen.errors import FirmwareOverlayError, ToolExecutionError
from sbc_imagegen.tools.runner import ToolRunner

logger = logging.getLogger(__name__)

FIRMWARE_SUBDIR = Path("lib") / "firmware"
DEFAULT_BRANCH = "main"


def parse_remote_head(remote_show_output: str) -> str | None:
    """Extract the HEAD branch from `git remote show origin` output."""
    for line in remote_show_output.splitlines():
        stripped = line.strip()
        if stripped.startswith("HEAD branch:"):
            branch = stripped.split(":", 1)[1].strip()
            if branch and branch != "(unknown)":
                return branch
    return None


class FirmwareOverlay:
    """Synchronizes an external firmware collection into a target root.

    Args:
        cache_dir: Directory of the cached clone.
        repo_url: Git URL of the firmware collection.
        runner: ToolRunner used for git and rsync.
    """

    def __init__(self, cache_dir: Path, repo_url: str, runner: ToolRunner) -> None:
        self.cache_dir = cache_dir
        self.repo_url = repo_url
        self.runner = runner

    @property
    def has_cache(self) -> bool:
        """Whether a usable clone exists."""
        return (self.cache_dir / ".git").is_dir()

    def _clone(self) -> None:
        logger.info("Fetching firmware into cache %s ...", self.cache_dir)
        if self.cache_dir.exists():
            shutil.rmtree(self.cache_dir)
        self.cache_dir.parent.mkdir(parents=True, exist_ok=True)

        if self.runner.which("git") is None:
            raise FirmwareOverlayError(
                f"git is not installed and no firmware cache exists at {self.cache_dir}"
            )
        try:
            self.runner.run(
                ["git", "clone", "--depth=1", self.repo_url, str(self.cache_dir)]
            )
        except ToolExecutionError as e:
            raise FirmwareOverlayError(
                f"Failed to clone firmware from {self.repo_url} and no cache exists: {e}"
            ) from e

    def _refresh(self) -> None:
        logger.info("Updating cached firmware ...")
        try:
            shown = self.runner.run(
                ["git", "-C", str(self.cache_dir), "remote", "show", "origin"],
                check=False,
            )
            branch = parse_remote_head(shown.stdout) or DEFAULT_BRANCH
            self.runner.run(
                ["git", "-C", str(self.cache_dir), "fetch", "--depth=1", "origin", branch]
            )
            self.runner.run(
                ["git", "-C", str(self.cache_dir), "reset", "--hard", f"origin/{branch}"]
            )
        except ToolExecutionError as e:
            logger.warning("Firmware cache update failed - using existing cache: %s", e)

    def ensure_cache(self) -> Path:
        """Make sure a usable firmware cache exists.

        Returns:
            Path to the cache directory.

        Raises:
            FirmwareOverlayError: If no cache exists and cloning fails.
        """
        if self.has_cache:
            self._refresh()
        else:
            self._clone()
        return self.cache_dir

    def install(self, target_root: Path) -> Path:
        """Mirror the firmware cache into <target_root>/lib/firmware.

        Args:
            target_root: Root of the target filesystem.

        Returns:
            The firmware directory inside the target.
        """
        cache = self.ensure_cache()
        firmware_dir = target_root / FIRMWARE_SUBDIR
        firmware_dir.mkdir(parents=True, exist_ok=True)

        logger.info("Installing firmware into %s ...", firmware_dir)
        self.runner.run(
            [
                "rsync",
                "-a",
                "--delete",
                "--exclude=.git",
                f"{cache}/",
                f"{firmware_dir}/",
            ]
        )
        return firmware_dir


__all__ = ["FIRMWARE_SUBDIR", "FirmwareOverlay", "parse_remote_head"]
