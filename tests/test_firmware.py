"""Tests for firmware module.

Tests cache population, refresh degradation and mirroring with
FakeToolRunner.
"""

from pathlib import Path

import pytest

from sbc_imagegen.errors import FirmwareOverlayError
from sbc_imagegen.firmware import FirmwareOverlay, parse_remote_head

REPO = "https://github.com/armbian/firmware.git"


def _fake_clone(cmd: list[str]) -> None:
    if cmd[1] == "clone":
        (Path(cmd[-1]) / ".git").mkdir(parents=True)


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    return tmp_path / "cache" / "armbian-firmware"


class TestParseRemoteHead:
    def test_branch(self):
        output = "* remote origin\n  Fetch URL: x\n  HEAD branch: master\n"
        assert parse_remote_head(output) == "master"

    def test_unknown(self):
        assert parse_remote_head("  HEAD branch: (unknown)\n") is None
        assert parse_remote_head("") is None


class TestEnsureCache:
    """Tests for FirmwareOverlay.ensure_cache."""

    def test_clones_when_absent(self, fake_runner, cache_dir):
        """A missing cache is cloned shallowly."""
        fake_runner.side_effects["git"] = _fake_clone
        overlay = FirmwareOverlay(cache_dir, REPO, fake_runner)

        assert overlay.ensure_cache() == cache_dir

        assert fake_runner.calls == [["git", "clone", "--depth=1", REPO, str(cache_dir)]]
        assert overlay.has_cache

    def test_clone_failure_is_fatal(self, fake_runner, cache_dir):
        """Without a cache a failed clone is an error."""
        fake_runner.failures = {"git"}

        with pytest.raises(FirmwareOverlayError) as exc_info:
            FirmwareOverlay(cache_dir, REPO, fake_runner).ensure_cache()

        assert exc_info.value.code == "firmware_error"

    def test_missing_git_is_fatal(self, fake_runner, cache_dir):
        fake_runner.missing_tools = {"git"}

        with pytest.raises(FirmwareOverlayError, match="git is not installed"):
            FirmwareOverlay(cache_dir, REPO, fake_runner).ensure_cache()

    def test_stale_directory_replaced(self, fake_runner, cache_dir):
        """A directory without .git is not a usable cache."""
        (cache_dir / "junk").mkdir(parents=True)
        fake_runner.side_effects["git"] = _fake_clone

        FirmwareOverlay(cache_dir, REPO, fake_runner).ensure_cache()

        assert not (cache_dir / "junk").exists()

    def test_refreshes_existing_cache(self, fake_runner, cache_dir):
        """An existing cache is fetched and reset to the remote head."""
        (cache_dir / ".git").mkdir(parents=True)
        fake_runner.responses["git"] = "  HEAD branch: master\n"

        FirmwareOverlay(cache_dir, REPO, fake_runner).ensure_cache()

        assert fake_runner.calls == [
            ["git", "-C", str(cache_dir), "remote", "show", "origin"],
            ["git", "-C", str(cache_dir), "fetch", "--depth=1", "origin", "master"],
            ["git", "-C", str(cache_dir), "reset", "--hard", "origin/master"],
        ]

    def test_refresh_failure_degrades(self, fake_runner, cache_dir):
        """A failed refresh keeps the existing cache."""
        (cache_dir / ".git").mkdir(parents=True)
        fake_runner.failures = {"git"}

        assert FirmwareOverlay(cache_dir, REPO, fake_runner).ensure_cache() == cache_dir
        assert (cache_dir / ".git").is_dir()


class TestInstall:
    """Tests for FirmwareOverlay.install."""

    def test_mirrors_into_lib_firmware(self, fake_runner, cache_dir, tmp_path):
        """The cache is mirrored with deletion, without the .git directory."""
        (cache_dir / ".git").mkdir(parents=True)
        target = tmp_path / "mnt"

        firmware_dir = FirmwareOverlay(cache_dir, REPO, fake_runner).install(target)

        assert firmware_dir == target / "lib" / "firmware"
        assert firmware_dir.is_dir()
        assert fake_runner.calls[-1] == [
            "rsync",
            "-a",
            "--delete",
            "--exclude=.git",
            f"{cache_dir}/",
            f"{firmware_dir}/",
        ]

    def test_install_after_failed_refresh(self, fake_runner, cache_dir, tmp_path):
        """Mirroring still happens from the stale cache."""
        (cache_dir / ".git").mkdir(parents=True)

        def fail_fetch(cmd):
            if "fetch" in cmd:
                fake_runner.failures.add("git")

        fake_runner.side_effects["git"] = fail_fetch

        FirmwareOverlay(cache_dir, REPO, fake_runner).install(tmp_path / "mnt")

        assert fake_runner.programs()[-1] == "rsync"
        assert not any("reset" in c for c in fake_runner.calls)
