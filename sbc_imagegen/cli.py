"""Thin CLI wrapper for sbc_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
import os
import sys
from pathlib import Path
from typing import Annotated, NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from sbc_imagegen import __version__
from sbc_imagegen.artifacts.locator import MissingArtifacts
from sbc_imagegen.artifacts.verification import ConfirmCallback
from sbc_imagegen.config import get_settings, print_settings_json
from sbc_imagegen.errors import AssemblyError
from sbc_imagegen.types import StorageImage

app = typer.Typer(
    name="sbc-imagegen",
    help="SBC Image Generator - assemble SD card and eMMC images from build artifacts",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

OutputDirArgument = Annotated[
    Path,
    typer.Argument(
        help="Board output directory holding the build artifacts",
        exists=True,
        file_okay=False,
        dir_okay=True,
    ),
]
ChipArgument = Annotated[
    str | None,
    typer.Argument(help="Chip identifier (e.g., rk3588, sun50i); resolved if omitted"),
]
JsonOption = Annotated[bool, typer.Option("--json", help="Output as JSON")]
YesOption = Annotated[
    bool,
    typer.Option("--yes", "-y", help="Continue without asking when artifacts are missing"),
]
NoFirmwareOption = Annotated[
    bool,
    typer.Option("--no-firmware", help="Skip the external firmware overlay"),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"sbc-imagegen version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Route log records through rich on stderr."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """SBC Image Generator - assemble SD card and eMMC images from build artifacts."""
    configure_logging(get_settings().log_level)


@app.command()
def config(json_output: JsonOption = False) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        typer.echo(print_settings_json(settings))
        return

    mount_root_display = (
        str(settings.mount_root) if settings.mount_root else "(system default)"
    )
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Cache directory:     {settings.cache_dir}")
    console.print(f"  Vendor tools:        {settings.rk_tools_dir}")
    console.print(f"  rkbin directory:     {settings.rkbin_dir}")
    console.print(f"  Mount root:          {mount_root_display}")
    console.print(f"  Tool log file:       {settings.log_file or '(none)'}")
    console.print()
    console.print("[bold]Firmware:[/bold]")
    console.print(f"  Enabled:             {settings.firmware_enabled}")
    console.print(f"  Repository:          {settings.firmware_repo_url}")
    console.print()
    console.print("[bold]Images:[/bold]")
    console.print(f"  Default chip:        {settings.default_chip}")
    console.print(f"  SD image size:       {settings.sd_image_size_mib} MiB")
    console.print(f"  eMMC rootfs size:    {settings.rootfs_image_size_mib} MiB")
    console.print(f"  Filesystem:          {settings.filesystem_type}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(
        f"  Partition polling:   {settings.partition_poll_attempts} x "
        f"{settings.partition_poll_interval}s"
    )


@app.command()
def profile(
    chip_id: Annotated[str, typer.Argument(help="Chip identifier")],
    json_output: JsonOption = False,
) -> None:
    """Show the platform profile resolved for a chip."""
    from sbc_imagegen.platforms import resolve_profile

    try:
        resolved = resolve_profile(chip_id)
    except AssemblyError as e:
        _fail(e, json_output)

    if json_output:
        output = {
            "chip_id": resolved.chip_id,
            "family": resolved.family.value,
            "partition_start_bytes": resolved.partition_start_bytes,
            "root_device": resolved.root_device,
            "emmc_root_device": resolved.emmc_root_device,
            "console": resolved.console.kernel_arg,
            "emmc_console": (
                resolved.emmc_console.kernel_arg if resolved.emmc_console else None
            ),
            "boot_layouts": {
                layout.name: [
                    {"artifact": e.artifact, "offset_bytes": e.offset_bytes}
                    for e in layout.embeds
                ]
                for layout in resolved.boot_layouts
            },
        }
        typer.echo(json.dumps(output, indent=2))
        return

    console.print(f"[bold]{resolved.chip_id}[/bold] ({resolved.family.value})")
    console.print(f"  Partition start:     {resolved.partition_start_bytes} bytes")
    console.print(f"  Root device:         {resolved.root_device}")
    if resolved.emmc_root_device:
        console.print(f"  eMMC root device:    {resolved.emmc_root_device}")
    console.print(f"  Console:             {resolved.console.kernel_arg}")
    if resolved.emmc_console:
        console.print(f"  eMMC console:        {resolved.emmc_console.kernel_arg}")
    for layout in resolved.boot_layouts:
        embeds = ", ".join(f"{e.artifact}@sector {e.sector}" for e in layout.embeds)
        console.print(f"  Bootloader ({layout.name}): {embeds}")


@app.command()
def scan(
    output_dir: OutputDirArgument,
    chip_id: ChipArgument = None,
    json_output: JsonOption = False,
) -> None:
    """Report the artifacts found in a board output directory.

    Exits with code 1 when required artifacts are missing.
    """
    from sbc_imagegen.artifacts.locator import locate_artifacts

    settings = get_settings()
    try:
        result = locate_artifacts(output_dir, chip_id, default_chip=settings.default_chip)
    except AssemblyError as e:
        _fail(e, json_output)

    if json_output:
        output = {
            "complete": result.complete,
            "family": result.profile.family.value,
            "artifacts": result.artifacts.to_dict(),
            "missing": [
                {"kind": item.kind.value, "description": item.description}
                for item in result.missing.items
            ],
        }
        typer.echo(json.dumps(output, indent=2))
    else:
        artifacts = result.artifacts
        console.print(
            f"[bold]{escape(artifacts.board_name)}[/bold]: chip {artifacts.chip_id} "
            f"(from {artifacts.chip_source}), {result.profile.family.value}"
        )
        console.print(f"  Kernel:      {artifacts.kernel_image or '-'}")
        console.print(f"  Device tree: {artifacts.device_tree or '-'}")
        console.print(f"  Rootfs:      {artifacts.rootfs_dir or '-'}")
        console.print(f"  Modules:     {artifacts.modules_dir or '-'}")
        for name, path in artifacts.bootloader_files:
            console.print(f"  Bootloader:  {name} ({path})")
        if result.complete:
            console.print("[green]✓ All expected artifacts were found[/green]")
        else:
            _print_missing(result.missing)

    if not result.complete:
        raise typer.Exit(code=1)


def _print_missing(missing: MissingArtifacts) -> None:
    console.print("[yellow]Some required artifacts are missing:[/yellow]")
    for item in missing.items:
        console.print(f"  - {escape(item.description)}")


def _confirm_callback(yes: bool) -> ConfirmCallback | None:
    if yes:
        return lambda missing: True
    if not sys.stdin.isatty():
        return None

    def _ask(missing: MissingArtifacts) -> bool:
        _print_missing(missing)
        return typer.confirm("Continue anyway?", default=False)

    return _ask


def _warn_if_unprivileged() -> None:
    if hasattr(os, "geteuid") and os.geteuid() != 0:
        err_console.print(
            "[yellow]Warning:[/yellow] image assembly needs root privileges "
            "(loop devices and mounts)"
        )


def _fail(error: AssemblyError, json_output: bool) -> NoReturn:
    if json_output:
        typer.echo(
            json.dumps(
                {"success": False, "error_code": error.code, "message": error.message},
                indent=2,
            )
        )
    else:
        console.print(f"[red]✗ {escape(error.message)} ({error.code})[/red]")
    raise typer.Exit(code=1) from None


def _report(image: StorageImage, json_output: bool) -> None:
    if json_output:
        typer.echo(json.dumps({"success": True, **image.to_dict()}, indent=2))
        return
    console.print(f"[green]✓ {image.kind.value.upper()} image created[/green]")
    console.print(f"  Image: {image.path}")
    console.print(f"  Board: {image.board} ({image.chip_id})")
    console.print(f"  Size:  {image.size_bytes} bytes")
    for name, path in image.intermediates.items():
        console.print(f"  {name}: {path}")


@app.command("assemble-sd")
def assemble_sd_cmd(
    output_dir: OutputDirArgument,
    chip_id: ChipArgument = None,
    yes: YesOption = False,
    size_mib: Annotated[
        int | None,
        typer.Option("--size-mib", min=64, help="Image size in MiB"),
    ] = None,
    no_firmware: NoFirmwareOption = False,
    json_output: JsonOption = False,
) -> None:
    """Assemble a raw partitioned SD card image (<board>-sd.img)."""
    from sbc_imagegen.images.service import assemble_sd

    _warn_if_unprivileged()
    try:
        image = assemble_sd(
            output_dir,
            chip_id,
            settings=get_settings(),
            confirm=_confirm_callback(yes),
            image_size_mib=size_mib,
            firmware=False if no_firmware else None,
        )
    except AssemblyError as e:
        _fail(e, json_output)
    _report(image, json_output)


@app.command("assemble-emmc")
def assemble_emmc_cmd(
    output_dir: OutputDirArgument,
    chip_id: ChipArgument = None,
    yes: YesOption = False,
    size_mib: Annotated[
        int | None,
        typer.Option("--size-mib", min=64, help="rootfs.img size in MiB"),
    ] = None,
    no_firmware: NoFirmwareOption = False,
    json_output: JsonOption = False,
) -> None:
    """Assemble a Rockchip eMMC update container (update-emmc-<board>.img)."""
    from sbc_imagegen.images.service import assemble_emmc

    _warn_if_unprivileged()
    try:
        image = assemble_emmc(
            output_dir,
            chip_id,
            settings=get_settings(),
            confirm=_confirm_callback(yes),
            rootfs_size_mib=size_mib,
            firmware=False if no_firmware else None,
        )
    except AssemblyError as e:
        _fail(e, json_output)
    _report(image, json_output)


if __name__ == "__main__":
    app()
