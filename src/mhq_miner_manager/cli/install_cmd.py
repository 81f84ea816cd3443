"""Install, uninstall and status commands."""

from pathlib import Path

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from mhq_miner_manager.bridge import BridgeConfig, InstallerBridge
from mhq_miner_manager.config import Settings, current_os, get_settings
from mhq_miner_manager.core.installer import Installer
from mhq_miner_manager.daemon.logging_setup import setup_logging
from mhq_miner_manager.errors import InstallerError, NotInstalledError
from mhq_miner_manager.models import InstallationRecord, ProgressStage

console = Console()

_STAGE_LABELS = {
    ProgressStage.FETCH_STARTED: "Downloading MiningHQ services...",
    ProgressStage.FETCH_DONE: "Downloads verified",
    ProgressStage.REGISTERING: "Registering services...",
    ProgressStage.DONE: "Finishing up...",
}

_MANUAL_REMOVAL_NOTICE = (
    "We were unable to find the installed location for the MiningHQ services. "
    "Please remove the files manually where you installed the services."
)


def _home_dir() -> Path:
    return Path.home()


def _configure_logging(debug: bool, settings: Settings, home: Path, operating_system: str) -> None:
    level = settings.logging.debug_level if debug else settings.logging.level
    log_path = setup_logging(
        log_level=level,
        console=debug,
        file=debug,
        home_dir=home,
        operating_system=operating_system,
    )
    if log_path is not None:
        console.print(f"[dim]Writing debug log to {log_path}[/dim]")


def _print_installed(record: InstallationRecord) -> None:
    console.print(f"[green]MiningHQ services installed:[/green] {record.install_path}")
    for name in record.service_identifiers:
        console.print(f"  [cyan]{name}[/cyan]")


def install(
    no_gui: bool = typer.Option(False, "--no-gui", help="Run the manager without the interactive display"),
    debug: bool = typer.Option(False, "--debug", help="Run the manager in debug mode, a log file will be created"),
    api_endpoint: str = typer.Option(None, "--api-endpoint", help="The base API endpoint for MiningHQ"),
    uninstall: bool = typer.Option(False, "--uninstall", help="Completely remove MiningHQ services from this system"),
):
    """Install the MiningHQ services (or remove them with --uninstall)."""
    settings = get_settings()
    home = _home_dir()
    operating_system = current_os()
    endpoint = api_endpoint or settings.api_endpoint
    _configure_logging(debug, settings, home, operating_system)

    # --uninstall is a command-line only operation
    if uninstall:
        _do_uninstall(home, operating_system, endpoint, settings)
        return

    try:
        if no_gui:
            installer = Installer(home, operating_system, endpoint, settings=settings)
            record = installer.install_sync()
        else:
            config = BridgeConfig(
                home_dir=home,
                operating_system=operating_system,
                api_endpoint=endpoint,
                debug=debug,
            )
            record = _run_interactive(InstallerBridge(config, settings=settings))
    except InstallerError as e:
        console.print(f"[red]Installation failed:[/red] {e}")
        raise typer.Exit(code=1)

    _print_installed(record)


def _run_interactive(bridge: InstallerBridge) -> InstallationRecord:
    """Drive an install through the bridge with a live progress display."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        task = progress.add_task("Preparing installation...", total=None)
        bridge.start_install()
        try:
            for event in bridge.iter_events():
                progress.update(task, description=_STAGE_LABELS.get(event.stage, event.message))
        except KeyboardInterrupt:
            progress.update(task, description="Cancelling...")
            bridge.cancel()
        return bridge.wait()


def uninstall_services():
    """Completely remove MiningHQ services from this system."""
    settings = get_settings()
    _do_uninstall(_home_dir(), current_os(), settings.api_endpoint, settings)


def _do_uninstall(home: Path, operating_system: str, endpoint: str, settings: Settings) -> None:
    try:
        installer = Installer(home, operating_system, endpoint, settings=settings)
        with console.status("Removing MiningHQ services..."):
            installer.uninstall_sync()
    except NotInstalledError:
        console.print(f"[yellow]{_MANUAL_REMOVAL_NOTICE}[/yellow]")
        return
    except InstallerError as e:
        console.print(f"[red]Uninstallation failed:[/red] {e}")
        raise typer.Exit(code=1)

    console.print("[bold green]MiningHQ services removed[/bold green]")


def status():
    """Show where the services are installed and whether they are running."""
    settings = get_settings()
    try:
        installer = Installer(_home_dir(), current_os(), settings.api_endpoint, settings=settings)
    except InstallerError as e:
        console.print(f"[red]Unable to inspect installation:[/red] {e}")
        raise typer.Exit(code=1)

    record = installer.current_record()
    if record is None:
        console.print("[yellow]MiningHQ services are not installed[/yellow]")
        raise typer.Exit(code=1)

    table = Table(title=f"MiningHQ services in {record.install_path}")
    table.add_column("Service")
    table.add_column("Status")
    for name, state in installer.service_status().items():
        colour = "green" if state == "RUNNING" else "yellow"
        table.add_row(name, f"[{colour}]{state}[/{colour}]")
    console.print(table)
