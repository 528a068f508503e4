"""Configuration settings for sbc_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_cache_dir() -> Path:
    """Return the default cache directory."""
    return Path.home() / ".cache" / "sbc-imagegen"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the SBC_IMG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="SBC_IMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for the firmware cache",
    )
    rk_tools_dir: Path = Field(
        default=Path("rk-tools"),
        description="Directory holding afptool, rkImageMaker and per-chip package files",
    )
    rkbin_dir: Path = Field(
        default=Path("rkbin"),
        description="Rockchip rkbin checkout (boot_merger, RKBOOT ini files)",
    )
    mount_root: Path | None = Field(
        default=None,
        description="Parent directory for temporary mount points (system default if not set)",
    )
    log_file: Path | None = Field(
        default=None,
        description="File receiving the output of every external tool",
    )

    # Firmware overlay
    firmware_enabled: bool = Field(
        default=True,
        description="Install the external firmware collection into images",
    )
    firmware_repo_url: str = Field(
        default="https://github.com/armbian/firmware.git",
        description="Git URL of the external firmware collection",
    )

    # Platform
    default_chip: str = Field(
        default="rk3588",
        description="Chip identifier used when none can be resolved",
    )
    emmc_root_device: str | None = Field(
        default=None,
        description="Override for the root device written into eMMC boot config",
    )

    # Geometry
    sd_image_size_mib: int = Field(
        default=6144,
        ge=64,
        description="Size of the SD card image in MiB",
    )
    rootfs_image_size_mib: int = Field(
        default=5120,
        ge=64,
        description="Size of the eMMC rootfs.img in MiB",
    )
    filesystem_type: str = Field(
        default="ext4",
        description="Root filesystem type (formatted with mkfs.<type>)",
    )

    # Partition node polling
    partition_poll_attempts: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Attempts made waiting for the loop partition node",
    )
    partition_poll_interval: float = Field(
        default=0.3,
        ge=0,
        description="Seconds between partition node polls",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    @property
    def firmware_cache_dir(self) -> Path:
        """Directory of the cached firmware checkout."""
        return self.cache_dir / "armbian-firmware"


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
