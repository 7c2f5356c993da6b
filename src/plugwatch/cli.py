"""CLI entry point for plugwatch."""

import json
import logging
import sys
import threading
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.live import Live
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from . import __version__
from .core.config import Config, DeviceConfig, get_config, set_config
from .core.exceptions import CloudRegistryError, PlugWatchError, ValidationError
from .core.utils import format_duration, mask_key, validate_ip, validate_local_key

console = Console()


def print_error(message: str) -> None:
    """Print error message in red."""
    console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print success message in green."""
    console.print(f"[green]✓[/green] {message}")


def print_warning(message: str) -> None:
    """Print warning message in yellow."""
    console.print(f"[yellow]Warning:[/yellow] {message}")


def _save_json(data: dict | list, output: str) -> None:
    output_path = Path(output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w") as f:
        json.dump(data, f, indent=2)
    print_success(f"Results saved to {output_path}")


def _build_manager(config: Config, with_cloud: bool):
    from .smartplug import DeviceManager, TuyaCloudRegistry

    registry = None
    if with_cloud:
        try:
            registry = TuyaCloudRegistry.from_config(config.cloud)
        except (CloudRegistryError, ValueError) as e:
            print_error(str(e))
            sys.exit(1)
    return DeviceManager(registry=registry, config=config.discovery)


def _run_with_spinner(description: str, func):
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        task = progress.add_task(description, total=None)
        try:
            result = func()
            progress.update(task, completed=True)
        except PlugWatchError as e:
            print_error(str(e))
            sys.exit(1)
    return result


@click.group()
@click.version_option(version=__version__, prog_name="plugwatch")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    help="Configuration file (default: $PLUGWATCH_CONFIG or .plugwatch.json)",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_path: str | None) -> None:
    """plugwatch - smart plug discovery and washer/dryer cycle detection."""
    ctx.ensure_object(dict)
    try:
        if config_path:
            set_config(Config.from_file(Path(config_path)))
        config = get_config()
    except (json.JSONDecodeError, OSError) as e:
        print_error(f"Could not load configuration: {e}")
        sys.exit(1)
    config.verbose = verbose or config.verbose

    logging.basicConfig(
        level=logging.DEBUG if config.verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    ctx.obj["config"] = config


@main.command()
@click.option("--timeout", type=float, default=None, help="Listening window per port in seconds")
@click.option("--output", "-o", type=click.Path(), help="Output file (JSON)")
@click.pass_context
def discover(ctx: click.Context, timeout: float | None, output: str | None) -> None:
    """Listen for Tuya devices broadcasting on the LAN."""
    from .smartplug import DiscoveryListener

    config: Config = ctx.obj["config"]
    window = timeout if timeout is not None else config.discovery.window
    listener = DiscoveryListener(ports=config.discovery.ports, window=window)

    console.print(f"[bold]Listening on UDP ports {', '.join(map(str, listener.ports))} for {window:.0f}s...[/bold]")
    devices = _run_with_spinner("Listening...", listener.discover)

    if not devices:
        console.print("[yellow]No devices discovered.[/yellow]")
        return

    table = Table(title=f"Discovered Devices ({len(devices)})")
    table.add_column("Device ID", style="cyan")
    table.add_column("IP Address", style="green")
    table.add_column("Protocol", style="yellow")
    for device in devices:
        table.add_row(device.device_id, device.ip_address, device.protocol_version)
    console.print(table)

    if output:
        _save_json({"devices": [d.to_dict() for d in devices]}, output)


@main.command()
@click.option("--show-keys", is_flag=True, help="Show local keys unmasked")
@click.option("--output", "-o", type=click.Path(), help="Output file (JSON)")
@click.pass_context
def devices(ctx: click.Context, show_keys: bool, output: str | None) -> None:
    """Discover plugs and match them with the Tuya cloud."""
    from .smartplug import unmatched

    config: Config = ctx.obj["config"]
    manager = _build_manager(config, with_cloud=True)

    console.print("[bold]Discovering plugs and fetching cloud devices...[/bold]")
    matched = _run_with_spinner("Matching...", manager.discover_and_match)

    if not matched:
        console.print("[yellow]No matching devices found in the cloud.[/yellow]")
        return

    table = Table(title=f"Matched Smart Plugs ({len(matched)})")
    table.add_column("#", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Device ID", style="green")
    table.add_column("IP Address", style="yellow")
    table.add_column("Protocol")
    table.add_column("Local Key", style="magenta")
    for index, device in enumerate(matched, start=1):
        table.add_row(
            str(index),
            device.display_name,
            device.device_id,
            device.ip_address,
            device.protocol_version,
            device.local_key if show_keys else mask_key(device.local_key),
        )
    console.print(table)

    missing = unmatched(manager.last_discovered, matched)
    if missing:
        print_warning(
            f"{len(missing)} device(s) on the network have no cloud entry: "
            + ", ".join(d.device_id for d in missing)
        )

    if output:
        _save_json({"devices": [d.to_dict() for d in matched]}, output)


@main.command("export-config")
@click.argument("device_id", required=False)
@click.option("--dps", "power_value_id", default="19", help="DPS id of the power reading")
@click.option("--output", "-o", type=click.Path(), help="Output file (JSON)")
@click.pass_context
def export_config(ctx: click.Context, device_id: str | None, power_value_id: str, output: str | None) -> None:
    """Print device configuration entries for matched plugs."""
    config: Config = ctx.obj["config"]
    manager = _build_manager(config, with_cloud=True)
    matched = _run_with_spinner("Matching...", manager.discover_and_match)

    if device_id:
        matched = [d for d in matched if d.device_id == device_id]
    if not matched:
        print_error(f"Device {device_id} not matched" if device_id else "No matching devices found")
        sys.exit(1)

    entries = [d.to_device_config(power_value_id=power_value_id) for d in matched]
    console.print_json(data={"devices": entries})
    if output:
        _save_json({"devices": entries}, output)


@main.command()
@click.argument("device_id")
@click.option("--key", "local_key", help="Local key (default: from config or cloud)")
@click.option("--ip", "ip_address", help="Device IP (default: discovered)")
@click.option("--dps", "power_value_id", default=None, help="DPS id of the power reading")
@click.option("--duration", type=int, default=None, help="Tracking duration in seconds")
@click.option("--output", "-o", type=click.Path(), help="Output file (JSON)")
@click.pass_context
def track(
    ctx: click.Context,
    device_id: str,
    local_key: str | None,
    ip_address: str | None,
    power_value_id: str | None,
    duration: int | None,
    output: str | None,
) -> None:
    """Sample a plug's power draw and suggest cycle thresholds."""
    from .monitor import ThresholdCalibrator, build_reader, track_power

    config: Config = ctx.obj["config"]
    device = config.get_device(device_id) or DeviceConfig(device_id=device_id)
    device.local_key = local_key or device.local_key
    device.ip_address = ip_address or device.ip_address
    device.power_value_id = power_value_id or device.power_value_id

    if device.ip_address:
        try:
            validate_ip(device.ip_address)
        except ValidationError as e:
            print_error(str(e))
            sys.exit(1)
    if device.local_key and not validate_local_key(device.local_key):
        print_warning("Local key does not look like a 16 character Tuya key")

    if not device.local_key or not device.ip_address:
        manager = _build_manager(config, with_cloud=not device.local_key)
        if device.local_key:
            record = _run_with_spinner("Locating device...", lambda: manager.find_device(device_id))
            device.ip_address, device.protocol_version = record.ip_address, record.protocol_version
        else:
            matched = [d for d in _run_with_spinner("Matching...", manager.discover_and_match) if d.device_id == device_id]
            if not matched:
                print_error(f"Device {device_id} not found on the network or in the cloud")
                sys.exit(1)
            device.local_key = matched[0].local_key
            device.ip_address = matched[0].ip_address
            device.protocol_version = matched[0].protocol_version

    reader = build_reader(device, polling=config.polling)
    calibrator = ThresholdCalibrator()
    stop_event = threading.Event()
    samples = []
    table = Table(title=f"Power of {device.display_name} (DPS {device.power_value_id})")
    table.add_column("Time", style="cyan")
    table.add_column("Power (W)", justify="right", style="green")
    table.add_column("Voltage (V)", justify="right")
    table.add_column("Current (mA)", justify="right")

    def on_sample(sample):
        samples.append(sample)
        calibrator.add(sample.watt)
        table.add_row(
            datetime.fromtimestamp(sample.timestamp).strftime("%H:%M:%S"),
            "-" if sample.is_missing else f"{sample.watt:.1f}",
            "-" if sample.voltage is None else f"{sample.voltage:.1f}",
            "-" if sample.current is None else f"{sample.current:.0f}",
        )

    label = format_duration(duration) if duration else "until Ctrl+C"
    console.print(f"[bold]Tracking {device.display_name} ({label})...[/bold]")
    with Live(table, console=console, refresh_per_second=2):
        try:
            track_power(reader, duration=duration, stop_event=stop_event, on_sample=on_sample)
        except KeyboardInterrupt:
            stop_event.set()

    suggestion = calibrator.suggestion
    if suggestion:
        console.print(
            Panel(
                f"Samples: {suggestion.sample_count} | Mean: {suggestion.mean:.1f} W | "
                f"Stddev: {suggestion.stddev:.1f} W\n"
                f"[green]startValue ≈ {suggestion.start_value:.1f} W[/green] | "
                f"[yellow]endValue ≈ {suggestion.end_value:.1f} W[/yellow]",
                title="Threshold Suggestion",
            )
        )
    else:
        print_warning("No power readings received.")

    if output:
        _save_json(
            {
                "device_id": device.device_id,
                "power_value_id": device.power_value_id,
                "samples": [s.to_dict() for s in samples],
                "suggestion": suggestion.to_dict() if suggestion else None,
            },
            output,
        )


@main.command()
@click.pass_context
def monitor(ctx: click.Context) -> None:
    """Track all configured devices until interrupted."""
    from .monitor import LoggingChannel, MessageGateway, Monitor

    config: Config = ctx.obj["config"]
    if not config.devices:
        print_error("No devices configured.")
        sys.exit(1)

    manager = _build_manager(config, with_cloud=False)
    gateway = MessageGateway()
    gateway.add_channel(LoggingChannel())
    runner = Monitor(config, manager=manager, gateway=gateway)

    trackers = runner.start()
    for device_id, error in runner.errors.items():
        print_warning(f"{device_id}: {error}")
    if not trackers:
        print_error("No device could be tracked.")
        sys.exit(1)

    print_success(f"Tracking {len(trackers)} device(s). Press Ctrl+C to stop.")
    stop_event = threading.Event()
    try:
        while not stop_event.wait(1.0):
            pass
    except KeyboardInterrupt:
        console.print("[dim]Stopping...[/dim]")
    finally:
        runner.stop()


@main.command("list-regions")
def list_regions() -> None:
    """List Tuya cloud data center regions."""
    from .smartplug import list_cloud_regions

    table = Table(title="Tuya Cloud Regions")
    table.add_column("Region", style="cyan")
    table.add_column("Data Center", style="green")

    for code, name in list_cloud_regions().items():
        table.add_row(code, name)

    console.print(table)


if __name__ == "__main__":
    main()
