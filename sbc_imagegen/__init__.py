"""SBC Image Generator - storage image assembly for ARM single-board computers.

This package turns the artifacts of a board build (kernel, device tree,
bootloader, root filesystem) into flashable SD card images and Rockchip
eMMC update containers.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
