"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from sbc_imagegen.config import Settings, get_settings, print_settings_json


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings(_env_file=None)

        assert settings.cache_dir == Path.home() / ".cache" / "sbc-imagegen"
        assert settings.default_chip == "rk3588"
        assert settings.sd_image_size_mib == 6144
        assert settings.rootfs_image_size_mib == 5120
        assert settings.filesystem_type == "ext4"
        assert settings.partition_poll_attempts == 10
        assert settings.partition_poll_interval == 0.3
        assert settings.firmware_enabled is True
        assert settings.log_level == "INFO"

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "SBC_IMG_DEFAULT_CHIP": "rk3568",
                "SBC_IMG_LOG_LEVEL": "DEBUG",
                "SBC_IMG_SD_IMAGE_SIZE_MIB": "8192",
                "SBC_IMG_FIRMWARE_ENABLED": "false",
            },
        ):
            settings = Settings()
            assert settings.default_chip == "rk3568"
            assert settings.log_level == "DEBUG"
            assert settings.sd_image_size_mib == 8192
            assert settings.firmware_enabled is False

    def test_settings_paths_from_env(self) -> None:
        """Tool directories should be configurable via env."""
        with patch.dict(
            os.environ,
            {
                "SBC_IMG_RK_TOOLS_DIR": "/opt/rk-tools",
                "SBC_IMG_CACHE_DIR": "/tmp/test-cache",
            },
        ):
            settings = Settings()
            assert settings.rk_tools_dir == Path("/opt/rk-tools")
            assert settings.firmware_cache_dir == Path("/tmp/test-cache/armbian-firmware")

    def test_image_size_lower_bound(self) -> None:
        """Image sizes below 64 MiB should be rejected."""
        with pytest.raises(ValidationError):
            Settings(sd_image_size_mib=16)

    def test_poll_attempts_bounds(self) -> None:
        """Partition polling must be bounded."""
        with pytest.raises(ValidationError):
            Settings(partition_poll_attempts=0)
        with pytest.raises(ValidationError):
            Settings(partition_poll_attempts=1000)


class TestGetSettings:
    """Test get_settings function."""

    def test_get_settings_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        settings = get_settings()
        assert isinstance(settings, Settings)


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_print_settings_json(self) -> None:
        """print_settings_json should return valid JSON."""
        settings = Settings()
        json_str = print_settings_json(settings)

        parsed = json.loads(json_str)

        assert "cache_dir" in parsed
        assert "rk_tools_dir" in parsed
        assert "sd_image_size_mib" in parsed
        assert parsed["filesystem_type"] == settings.filesystem_type

    def test_print_settings_json_default(self) -> None:
        """print_settings_json should work without explicit settings."""
        parsed = json.loads(print_settings_json())
        assert "default_chip" in parsed
