"""Command-line interface for NA firmware provisioning."""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from . import __version__
from .channel import SerialKeyExchangeChannel, SimulatedPeerChannel
from .config import ProvisioningConfig, generate_default_config, load_config
from .errors import ProvisioningError
from .esp import EsptoolFlasher, list_serial_ports
from .flasher import FileImageSource, FirmwareImage, SimulatedFlasher
from .log import setup_logging
from .session import Session, SessionState

console = Console()

STATE_MESSAGES = {
    SessionState.CONNECTING: "Synchronizing with the board bootloader...",
    SessionState.CONNECTED: "Board connected",
    SessionState.FLASHING: "Writing firmware...",
    SessionState.REBOOTING: "Firmware installed, rebooting the board...",
    SessionState.COMPLETED: "Serial port released, the board is ready to use",
}


def _parse_offset(ctx: click.Context, param: click.Parameter, value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value, 0)
    except ValueError:
        raise click.BadParameter(f"Invalid flash offset: {value}")


@click.group()
@click.version_option(version=__version__, prog_name="na-provision")
@click.option("--config", "-c", type=click.Path(exists=True), help="Configuration file path")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.pass_context
def main(ctx: click.Context, config: Optional[str], verbose: bool) -> None:
    """NA Firmware Provisioning Tool.

    Flash firmware onto a board over its serial bootloader, optionally
    authenticated by an ephemeral ECDH key exchange.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    if config:
        ctx.obj["config"] = load_config(Path(config))
    else:
        ctx.obj["config"] = ProvisioningConfig()

    setup_logging("DEBUG" if verbose else ctx.obj["config"].logging.level)


async def _provision(session: Session, image: FirmwareImage, secure: bool) -> None:
    await session.connect()
    if secure:
        await session.establish_secure_channel()
    await session.flash(image)


@main.command()
@click.option("--image", "-i", type=click.Path(), required=True, help="Firmware binary to flash")
@click.option("--port", "-p", help="Serial port (auto-detected when omitted)")
@click.option("--offset", callback=_parse_offset, help="Flash offset, e.g. 0x10000")
@click.option("--secure/--no-secure", default=None, help="Run the key exchange before flashing")
@click.option("--settle", type=click.FloatRange(min=0.0), help="Seconds to wait after reset")
@click.option("--simulate", is_flag=True, help="Use a simulated device")
@click.pass_context
def flash(
    ctx: click.Context,
    image: str,
    port: Optional[str],
    offset: Optional[int],
    secure: Optional[bool],
    settle: Optional[float],
    simulate: bool,
) -> None:
    """Flash firmware to a connected board."""
    config: ProvisioningConfig = ctx.obj["config"].model_copy(deep=True)
    verbose: bool = ctx.obj["verbose"]

    if port:
        config.serial.port = port
    if offset is not None:
        config.flash.offset = offset
    if settle is not None:
        config.flash.settle_interval_s = settle
    if secure is None:
        secure = config.security.require_secure_channel

    try:
        firmware = FileImageSource(Path(image), config.flash.offset).fetch_image()
    except ProvisioningError as e:
        console.print(f"[bold red]Error:[/bold red] {e.message}")
        sys.exit(1)

    if simulate:
        flasher = SimulatedFlasher(port=config.serial.port or "/dev/ttySIM0")
        channel = SimulatedPeerChannel() if secure else None
    else:
        flasher = EsptoolFlasher(config.serial, app_handshake=secure)
        channel = SerialKeyExchangeChannel(config.security.handshake_timeout_s) if secure else None

    console.print(
        f"[bold blue]Flashing {firmware.name} ({firmware.size} bytes) "
        f"at 0x{firmware.offset:x}[/bold blue]"
    )
    if verbose:
        console.print(f"  SHA-256: {firmware.sha256()}")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Waiting for device...", total=100)

        def on_state_change(state: SessionState) -> None:
            if state in STATE_MESSAGES:
                progress.update(task, description=STATE_MESSAGES[state])

        session = Session(
            flasher,
            config,
            channel=channel,
            on_state_change=on_state_change,
            on_progress=lambda percent: progress.update(task, completed=percent),
        )

        try:
            asyncio.run(_provision(session, firmware, secure))
        except ProvisioningError as e:
            error = session.last_error or e
            progress.stop()
            console.print(f"[bold red]Error:[/bold red] {error}")
            if e.remediation:
                console.print(f"[yellow]Hint:[/yellow] {e.remediation}")
            sys.exit(1)

    table = Table(title="Provisioning Summary")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Chip", session.chip_identifier or "unknown")
    table.add_row("Image", f"{firmware.name} ({firmware.size} bytes)")
    table.add_row("Offset", f"0x{firmware.offset:x}")
    table.add_row("Secure channel", "yes" if secure else "no")
    console.print(table)
    console.print("[bold green]✓[/bold green] Provisioning complete, the board can be unplugged")


@main.command()
@click.option("--output", "-o", type=click.Path(), required=True, help="Output file path")
@click.option("--format", "fmt", type=click.Choice(["yaml", "json"]), default="yaml", help="Output format")
def init_config(output: str, fmt: str) -> None:
    """Generate a default configuration file."""
    output_path = Path(output)
    config_content = generate_default_config(fmt)

    with open(output_path, "w") as f:
        f.write(config_content)

    console.print(f"[bold green]✓[/bold green] Configuration file created at {output_path}")


@main.command()
def list_devices() -> None:
    """List serial ports a board may be attached to."""
    console.print("[bold blue]Available Serial Ports:[/bold blue]")
    ports = list_serial_ports()

    if not ports:
        console.print("  No serial ports found")
    else:
        table = Table()
        table.add_column("Port", style="cyan")
        table.add_column("Description")
        table.add_column("Hardware ID")
        table.add_column("USB")

        for port in ports:
            table.add_row(port.device, port.description, port.hwid, "yes" if port.is_usb else "no")

        console.print(table)


if __name__ == "__main__":
    main()
