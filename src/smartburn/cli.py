"""
SmartBurn CLI

Command-line front end for flashing STM32 boards over ST-LINK or the
USART bootloader.
"""

import logging
import sys
import threading
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table

from smartburn import __version__
from smartburn.core.auto_burn import AutoBurnSession
from smartburn.core.connection_monitor import ConnectionMonitor
from smartburn.core.connection_probe import ConnectionProbe
from smartburn.core.firmware import FirmwareImage, find_all_firmware, find_latest_firmware, format_size
from smartburn.core.models import Device, FirmwareKind, ProgramResult
from smartburn.core.path_utils import ensure_firmware_dirs, get_firmware_dir, get_firmwares_path
from smartburn.core.platform_info import detect_platform
from smartburn.core.programmer import ProgramOrchestrator
from smartburn.core.serial_boot_controller import SerialBootController
from smartburn.core.serial_bootloader import TRANSPORT as SERIAL_TRANSPORT
from smartburn.core.serial_bootloader import BootloaderEngine
from smartburn.core.serial_utils import SerialPortManager
from smartburn.core.settings import SettingsManager
from smartburn.core.tool_adapter import find_programmer_cli

logger = logging.getLogger("smartburn")

console = Console()

app = typer.Typer(help="SmartBurn - STM32 firmware flasher (ST-LINK and USART bootloader)")


def setup_logging(verbose: bool = False) -> None:
    """Route smartburn logs through rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


def print_header(text: str) -> None:
    """Print fancy header."""
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    """Print success message."""
    console.print(f"✓ {escape(text)}", style="green")


def print_warning(text: str) -> None:
    """Print warning message."""
    console.print(f"⚠️  {escape(text)}", style="yellow")


def print_error(text: str) -> None:
    """Print error message."""
    console.print(f"❌ {escape(text)}", style="red")


def get_settings(ctx: typer.Context) -> SettingsManager:
    """Settings loaded by the app callback."""
    return ctx.obj


def parse_kind(value: str) -> FirmwareKind:
    """Parse "boot"/"app" into a FirmwareKind."""
    try:
        return FirmwareKind(value.strip().lower())
    except ValueError:
        raise typer.BadParameter(f"Firmware kind must be 'boot' or 'app', got '{value}'")


def load_image(path: str, kind: FirmwareKind, address: Optional[str]) -> FirmwareImage:
    """Validate a firmware file, exiting on an unusable one."""
    try:
        image = FirmwareImage.from_path(path, kind, address)
    except ValueError:
        raise typer.BadParameter(f"Invalid address: {address}")
    if not image.valid:
        print_error(f"Firmware is not usable: {path}")
        raise typer.Exit(1)
    return image


def device_table(device: Device) -> Table:
    """Render a Device snapshot."""
    table = Table(title="ST-LINK")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Status", device.status.value)
    table.add_row("Serial number", device.serial_number or "-")
    table.add_row("Probe firmware", device.firmware_version or "-")
    table.add_row("Target connected", "yes" if device.chip_connected else "no")
    table.add_row("Chip type", device.chip_type or "-")
    table.add_row("Chip ID", device.chip_id or "-")
    if device.error_message:
        table.add_row("Message", device.error_message)
    return table


def run_with_progress(description: str, job) -> ProgramResult:
    """Run job(progress_callback) under a rich progress bar."""
    with Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        TextColumn("[{task.percentage:.0f}%]"),
        console=console,
    ) as progress:
        task = progress.add_task(description, total=100)
        return job(lambda percent: progress.update(task, completed=percent))


def report_results(settings: SettingsManager, transport: str, results: List[ProgramResult]) -> None:
    """Print results, count them, and exit non-zero on failure."""
    for result in results:
        if result.success:
            print_success(result.to_summary())
        else:
            print_error(result.to_summary())
    success = bool(results) and all(r.success for r in results)
    settings.record_result(transport, success)
    settings.save_settings()
    total, passed, failed = settings.get_counters(transport)
    console.print(f"[dim]{transport}: {total} total, {passed} passed, {failed} failed[/dim]")
    if not success:
        raise typer.Exit(1)


def resolve_images(
    settings: SettingsManager, boot: Optional[str], app_path: Optional[str], search_dir: Optional[str]
) -> List[Optional[FirmwareImage]]:
    """Pick boot/app images from options, then settings, then the newest file on disk."""
    images: List[Optional[FirmwareImage]] = []
    for kind, explicit in ((FirmwareKind.BOOT, boot), (FirmwareKind.APP, app_path)):
        address = settings.get_firmware_address(kind.value)
        path = explicit or settings.get_firmware_path(kind.value)
        if path:
            images.append(load_image(path, kind, address))
            settings.set_firmware_path(kind.value, path)
            continue
        directory = search_dir or settings.get_search_dir() or str(get_firmware_dir(kind))
        images.append(find_latest_firmware(kind, directory, address))
    return images


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output, including raw CLI output"),
    config: Optional[Path] = typer.Option(None, "--config", help="Settings file to use"),
) -> None:
    """Load settings and configure logging."""
    setup_logging(verbose)
    ctx.obj = SettingsManager(config)


@app.command()
def info(ctx: typer.Context) -> None:
    """Show platform, programmer and firmware locations."""
    settings = get_settings(ctx)
    system = SerialPortManager.get_system_info()
    table = Table(title="SmartBurn")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Version", __version__)
    table.add_row("Platform", f"{detect_platform()} {system['release']} ({system['architecture']})")
    table.add_row("Programmer CLI", find_programmer_cli(settings.get_cli_path()))
    table.add_row("Settings", str(settings.config_file))
    table.add_row("Firmware", settings.get_search_dir() or str(get_firmwares_path()))
    console.print(table)


@app.command("config")
def config_command(
    ctx: typer.Context,
    cli_path: Optional[str] = typer.Option(None, "--cli-path", help="STM32_Programmer_CLI executable"),
    frequency: Optional[int] = typer.Option(None, "--frequency", help="SWD frequency in kHz"),
    interval: Optional[float] = typer.Option(None, "--interval", help="Connection check interval in seconds"),
    monitor_enabled: Optional[bool] = typer.Option(None, "--monitor/--no-monitor", help="Allow connection monitoring"),
    baud: Optional[int] = typer.Option(None, "--baud", help="Serial bootloader baud rate"),
    strategy: Optional[str] = typer.Option(None, "--strategy", help="Bootloader entry: pins or command"),
    search_dir: Optional[str] = typer.Option(None, "--search-dir", help="Where to look for firmware"),
    auto_boot: Optional[bool] = typer.Option(None, "--auto-boot/--no-auto-boot", help="Auto-burn flashes BOOT"),
    auto_app: Optional[bool] = typer.Option(None, "--auto-app/--no-auto-app", help="Auto-burn flashes APP"),
) -> None:
    """Show settings, or change and save the ones given."""
    settings = get_settings(ctx)
    changed = False
    if cli_path is not None:
        settings.set_cli_path(cli_path)
        changed = True
    if frequency is not None:
        settings.set_frequency(frequency)
        changed = True
    if interval is not None:
        settings.set_monitor_interval(interval)
        changed = True
    if monitor_enabled is not None:
        settings.set_monitor_enabled(monitor_enabled)
        changed = True
    if baud is not None:
        if baud not in SerialPortManager.get_default_baudrates():
            print_warning(f"{baud} baud is outside the rates the bootloader detects reliably")
        settings.set_serial_baud_rate(baud)
        changed = True
    if strategy is not None:
        try:
            settings.set_boot_strategy(strategy)
        except ValueError as e:
            raise typer.BadParameter(str(e))
        changed = True
    if search_dir is not None:
        settings.set_search_dir(search_dir)
        changed = True
    if auto_boot is not None or auto_app is not None:
        flash_boot, flash_app = settings.get_auto_burn_kinds()
        settings.set_auto_burn_kinds(
            flash_boot if auto_boot is None else auto_boot,
            flash_app if auto_app is None else auto_app,
        )
        changed = True
    if changed:
        if not settings.save_settings():
            print_error(f"Could not save {settings.config_file}")
            raise typer.Exit(1)
        print_success(f"Saved {settings.config_file}")

    flash_boot, flash_app = settings.get_auto_burn_kinds()
    table = Table(title="Settings")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Programmer CLI", settings.get_cli_path() or "(auto)")
    table.add_row("SWD frequency", f"{settings.get_frequency()} kHz")
    table.add_row("Monitoring", "on" if settings.get_monitor_enabled() else "off")
    table.add_row("Check interval", f"{settings.get_monitor_interval():.1f}s")
    table.add_row("Serial baud rate", str(settings.get_serial_baud_rate()))
    table.add_row("Bootloader entry", settings.get_boot_strategy())
    table.add_row("Firmware search dir", settings.get_search_dir() or "(default)")
    table.add_row("Auto-burn images", ", ".join(k for k, on in (("BOOT", flash_boot), ("APP", flash_app)) if on) or "none")
    console.print(table)


@app.command()
def ports(
    usb_uart: bool = typer.Option(False, "--usb-uart", help="Only USB-UART adapters"),
    stlink: bool = typer.Option(False, "--stlink", help="Only ST-LINK virtual COM ports"),
    check: bool = typer.Option(False, "--check", help="Try to open each port"),
) -> None:
    """List available serial ports."""
    print_header("Available Serial Ports")

    if usb_uart:
        ports_list = SerialPortManager.get_usb_uart_ports()
    elif stlink:
        ports_list = SerialPortManager.get_stlink_ports()
    else:
        ports_list = SerialPortManager.get_available_ports()
    if not ports_list:
        print_warning("No serial ports found")
        return

    table = Table(title="Serial Ports")
    table.add_column("Port", style="cyan")
    table.add_column("Kind", style="magenta")
    table.add_column("Description", style="green")
    if check:
        table.add_column("Opens")
    for port in ports_list:
        row = [port["device"], SerialPortManager.describe_port(port) or "-", port["description"] or "-"]
        if check:
            row.append("yes" if SerialPortManager.test_port_connection(port["device"]) else "no")
        table.add_row(*row)
    console.print(table)


@app.command()
def wiring() -> None:
    """Show the expected USB-UART wiring for the serial bootloader."""
    console.print(Panel(SerialBootController.get_signal_mapping_info(), title="Wiring", expand=False))


@app.command()
def probe(ctx: typer.Context) -> None:
    """Check the ST-LINK and the target chip once."""
    settings = get_settings(ctx)
    config = settings.programmer_config()
    console.print(f"Programmer: {find_programmer_cli(config.cli_path)}")

    device = ConnectionProbe.from_config(config).probe()
    console.print(device_table(device))
    if not device.ready_to_program:
        raise typer.Exit(1)


@app.command()
def flash(
    ctx: typer.Context,
    boot: Optional[str] = typer.Option(None, "--boot", "-b", help="Bootloader image (full chip erase first)"),
    app_image: Optional[str] = typer.Option(None, "--app", "-a", help="Application image (started after write)"),
    search_dir: Optional[str] = typer.Option(None, "--search-dir", help="Where to look for the newest images"),
) -> None:
    """Flash boot and/or app images over ST-LINK."""
    settings = get_settings(ctx)
    boot_image, app_img = resolve_images(settings, boot, app_image, search_dir)
    if boot_image is None and app_img is None:
        print_error("No firmware given and none found")
        raise typer.Exit(1)

    print_header("Flash over ST-LINK")
    for image in (boot_image, app_img):
        if image is not None:
            console.print(f"{image.kind.value.upper()}: {image} at {image.address_text}")

    orchestrator = ProgramOrchestrator.from_config(settings.programmer_config())
    results = run_with_progress("Programming", lambda p: orchestrator.program_all(boot_image, app_img, p))
    report_results(settings, "stlink", results)


@app.command()
def erase(ctx: typer.Context) -> None:
    """Mass-erase the target over ST-LINK."""
    settings = get_settings(ctx)
    print_header("Full Chip Erase")
    orchestrator = ProgramOrchestrator.from_config(settings.programmer_config())
    result = run_with_progress("Erasing", orchestrator.erase_chip)
    if result.success:
        print_success(result.to_summary())
    else:
        print_error(result.to_summary())
        raise typer.Exit(1)


@app.command()
def verify(
    ctx: typer.Context,
    image_path: str = typer.Argument(..., help="Firmware image to compare against"),
    kind: str = typer.Option("app", "--kind", "-k", help="boot or app"),
    address: Optional[str] = typer.Option(None, "--address", help="Start address (default from settings)"),
    quick: bool = typer.Option(False, "--quick", help="Fast checksum comparison instead of a full read-back"),
) -> None:
    """Compare the target flash with an image over ST-LINK without writing."""
    settings = get_settings(ctx)
    firmware_kind = parse_kind(kind)
    image = load_image(image_path, firmware_kind, address or settings.get_firmware_address(firmware_kind.value))

    print_header("Verify over ST-LINK")
    console.print(f"{firmware_kind.value.upper()}: {image} at {image.address_text}")
    orchestrator = ProgramOrchestrator.from_config(settings.programmer_config())
    result = run_with_progress("Verifying", lambda p: orchestrator.verify(image, p, quick))
    if result.success:
        print_success(result.to_summary())
    else:
        print_error(result.to_summary())
        raise typer.Exit(1)


@app.command("flash-serial")
def flash_serial(
    ctx: typer.Context,
    image_path: str = typer.Argument(..., help="Firmware image (.bin or .hex)"),
    port: Optional[str] = typer.Option(None, "--port", "-p", help="Serial port"),
    kind: str = typer.Option("app", "--kind", "-k", help="boot or app"),
    address: Optional[str] = typer.Option(None, "--address", help="Start address for .bin images"),
    baud: Optional[int] = typer.Option(None, "--baud", help="Baud rate"),
    strategy: Optional[str] = typer.Option(None, "--strategy", help="Bootloader entry: pins or command"),
    enter_command: Optional[str] = typer.Option(None, "--enter-command", help="Hex bytes for the command strategy"),
    verify: bool = typer.Option(False, "--verify", help="Read the image back after writing"),
) -> None:
    """Flash an image through the STM32 USART bootloader."""
    settings = get_settings(ctx)
    config = settings.serial_config(port)
    changes = {}
    if baud:
        changes["baud_rate"] = baud
    if strategy:
        changes["boot_strategy"] = strategy
    if verify:
        changes["verify"] = True
    try:
        if enter_command:
            changes["enter_command"] = bytes.fromhex(enter_command)
        config = replace(config, **changes)
    except ValueError as e:
        raise typer.BadParameter(str(e))
    if not config.port:
        print_error("No serial port given (use --port)")
        raise typer.Exit(1)
    if not SerialPortManager.is_port_available(config.port):
        print_warning(f"{config.port} is not in the list of detected ports")
    if config.baud_rate not in SerialPortManager.get_default_baudrates():
        print_warning(f"{config.baud_rate} baud is outside the rates the bootloader detects reliably")

    image = load_image(image_path, parse_kind(kind), address)
    print_header("Flash over USART bootloader")
    console.print(f"Port: {config.port} @ {config.baud_rate}, entry: {config.boot_strategy}")
    console.print(f"Image: {image}")

    engine = BootloaderEngine(config)
    result = run_with_progress("Flashing", lambda p: engine.flash(image, p))
    settings.set_serial_last_port(config.port)
    report_results(settings, SERIAL_TRANSPORT, [result])


@app.command("chip-info")
def chip_info(
    ctx: typer.Context,
    port: Optional[str] = typer.Option(None, "--port", "-p", help="Serial port"),
) -> None:
    """Read bootloader version and product ID over the serial bootloader."""
    settings = get_settings(ctx)
    config = settings.serial_config(port)
    if not config.port:
        print_error("No serial port given (use --port)")
        raise typer.Exit(1)

    result = BootloaderEngine(config).identify()
    if not result.success:
        print_error(result.to_summary())
        raise typer.Exit(1)

    table = Table(title="Bootloader")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    version = result.details["bootloader_version"]
    table.add_row("Version", f"{version >> 4}.{version & 0x0F}")
    table.add_row("Product ID", f"0x{result.details['product_id']:04X}")
    table.add_row("Option bytes", result.details["option_bytes"])
    table.add_row("Commands", ", ".join(result.details["commands"]))
    console.print(table)


@app.command()
def monitor(
    ctx: typer.Context,
    interval: Optional[float] = typer.Option(None, "--interval", "-i", help="Seconds between checks (min 1)"),
    duration: float = typer.Option(0, "--duration", help="Stop after this many seconds (0 = until Ctrl+C)"),
) -> None:
    """Watch the ST-LINK connection and print every change."""
    settings = get_settings(ctx)
    if not settings.get_monitor_enabled():
        print_warning("Connection monitoring is disabled in settings (smartburn config --monitor)")
        raise typer.Exit(1)
    config = settings.programmer_config()
    probe_ = ConnectionProbe.from_config(config)
    watcher = ConnectionMonitor(probe_.probe, interval or config.poll_interval)
    done = threading.Event()
    last: List[str] = []

    def on_device(device: Device) -> None:
        text = device.describe()
        if not last or last[-1] != text:
            last.append(text)
            style = "green" if device.ready_to_program else "yellow"
            console.print(text, style=style)

    watcher.subscribe(on_device)
    print_header(f"Monitoring every {watcher.interval:.0f}s (Ctrl+C to stop)")
    watcher.start()
    try:
        done.wait(duration if duration > 0 else None)
    except KeyboardInterrupt:
        console.print("\n[yellow]Monitoring stopped[/yellow]")
    finally:
        watcher.stop()


@app.command()
def auto(
    ctx: typer.Context,
    boot: Optional[str] = typer.Option(None, "--boot", "-b", help="Bootloader image"),
    app_image: Optional[str] = typer.Option(None, "--app", "-a", help="Application image"),
    search_dir: Optional[str] = typer.Option(None, "--search-dir", help="Where to look for the newest images"),
    count: int = typer.Option(0, "--count", "-n", help="Stop after this many boards (0 = until Ctrl+C)"),
) -> None:
    """Flash every board that gets connected, one after another."""
    settings = get_settings(ctx)
    boot_image, app_img = resolve_images(settings, boot, app_image, search_dir)
    flash_boot, flash_app = settings.get_auto_burn_kinds()
    # Images given on the command line are always flashed
    if not (flash_boot or boot):
        boot_image = None
    if not (flash_app or app_image):
        app_img = None
    if boot_image is None and app_img is None:
        print_error("No firmware given and none found")
        raise typer.Exit(1)

    config = settings.programmer_config()
    probe_ = ConnectionProbe.from_config(config)
    orchestrator = ProgramOrchestrator.from_config(config, probe=probe_)

    def on_board(number: int, results: List[ProgramResult]) -> None:
        success = bool(results) and all(r.success for r in results)
        settings.record_result("stlink", success)
        settings.save_settings()
        if success:
            print_success(f"Board #{number} PASS")
        else:
            print_error(f"Board #{number} FAIL: {results[-1].message if results else '-'}")

    session = AutoBurnSession(orchestrator, probe_, boot_image, app_img, max_boards=count, on_board=on_board)
    print_header("Automatic mode (Ctrl+C to stop)")
    worker = threading.Thread(target=session.run, name="auto-burn", daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.5)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping after the current board...[/yellow]")
        session.stop()
        worker.join()

    stats = session.stats
    table = Table(title="Session")
    table.add_column("Boards", style="cyan")
    table.add_column("Passed", style="green")
    table.add_column("Failed", style="red")
    table.add_row(str(stats.boards), str(stats.passed), str(stats.failed))
    console.print(table)
    if stats.failed:
        raise typer.Exit(1)


@app.command()
def scan(
    ctx: typer.Context,
    directory: Optional[str] = typer.Argument(None, help="Directory to scan (default: firmwares/)"),
) -> None:
    """List firmware images found in a directory, newest first."""
    settings = get_settings(ctx)
    root = directory or settings.get_search_dir()
    if not root:
        ensure_firmware_dirs()
        root = str(get_firmwares_path())

    table = Table(title=f"Firmware in {root}")
    table.add_column("Kind", style="cyan")
    table.add_column("File", style="green")
    table.add_column("Size", style="magenta")
    table.add_column("Address")
    table.add_column("SHA-256")
    found = 0
    for kind in FirmwareKind:
        for image in find_all_firmware(kind, root, settings.get_firmware_address(kind.value)):
            found += 1
            table.add_row(
                kind.value.upper(),
                image.file_name,
                format_size(image.size_bytes),
                image.address_text,
                image.content_hash[:12] or "-",
            )
    if not found:
        print_warning(f"No boot/app firmware found in {root}")
        return
    console.print(table)


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(0)
    except Exception as e:
        logger.debug("Fatal error", exc_info=True)
        console.print(f"\n[red bold]Fatal error:[/red bold] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
