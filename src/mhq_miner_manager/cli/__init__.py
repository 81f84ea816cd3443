"""CLI package for mhq-miner-manager."""

import typer

from mhq_miner_manager.cli import install_cmd

app = typer.Typer(
    name="mhq-miner-manager",
    help="Install and manage the MiningHQ miner services",
    no_args_is_help=True,
)

app.command(name="install", help="Install the MiningHQ services")(install_cmd.install)

# Register uninstall as a top-level command
app.command(name="uninstall", help="Stop and remove the MiningHQ services")(install_cmd.uninstall_services)

app.command(name="status", help="Show installed services and their state")(install_cmd.status)


@app.command()
def version():
    """Show version information."""
    from mhq_miner_manager import __version__
    typer.echo(f"mhq-miner-manager {__version__}")


if __name__ == "__main__":
    app()
