"""Main CLI implementation using Typer."""

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional

import typer
from rich.console import Console

from podprov.cli import commands
from podprov.errors import ConfigError, PreflightError, ProvisionError
from podprov.provision.config import DEFAULT_CONFIG_PATH
from podprov.provision.main import ProvisionApp, load_app


# Create Typer app
app = typer.Typer(
    name="podprovctl",
    help="Multi-user Podman development environment provisioning",
    add_completion=False,
)

# Console for rich output
console = Console()

CONFIG_HELP = "Configuration file"


def _config_option() -> Any:
    return typer.Option(
        DEFAULT_CONFIG_PATH, "--config", "-c", envvar="PODPROV_CONFIG", help=CONFIG_HELP
    )


def _run_cli_command(handler: Callable[..., Awaitable[int]], config: Path,
                     log_name: Optional[str] = None, **kwargs: Any):
    """Helper to load the application, run a command and map errors to exit codes."""

    async def _run() -> int:
        provision_app: ProvisionApp = await load_app(config, log_name=log_name)
        try:
            return await handler(provision_app, **kwargs)
        finally:
            await provision_app.close()

    try:
        code = asyncio.run(_run())
    except (PreflightError, ConfigError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(2) from e
    except ProvisionError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    if code:
        raise typer.Exit(code)


@app.command("provision")
def provision_command(
    user: Optional[List[str]] = typer.Option(
        None, "--user", "-u", help="Provision only this user (repeatable)"
    ),
    config: Path = _config_option(),
):
    """Provision all configured users."""
    _run_cli_command(commands.provision, config, log_name="provision", users=user or None)


@app.command("cleanup")
def cleanup_command(
    user: Optional[str] = typer.Option(None, "--user", help="Clean up a specific user"),
    all: bool = typer.Option(False, "--all", help="Clean up all users and system files"),
    remove_home: bool = typer.Option(False, "--remove-home", help="Remove home directories"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be done without doing it"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
    config: Path = _config_option(),
):
    """Remove provisioned users and, with --all, shared state."""
    if user and all:
        console.print("[red]Error:[/red] --user and --all are mutually exclusive")
        raise typer.Exit(1)
    if not user and not all:
        console.print("[red]Error:[/red] Specify --user NAME or --all")
        raise typer.Exit(1)

    confirmed = force or dry_run
    if all and not confirmed:
        confirmed = typer.confirm("Remove all users, prune images and volumes and delete shared state?")
        if not confirmed:
            raise typer.Abort()

    _run_cli_command(
        commands.cleanup,
        config,
        log_name="cleanup",
        user=user,
        all_users=all,
        remove_home=remove_home,
        dry_run=dry_run,
        confirmed=confirmed,
    )


# User subcommands
user_app = typer.Typer(help="User management commands")
app.add_typer(user_app, name="user")


@user_app.command("status")
def user_status_command(
    username: str = typer.Argument(..., help="Username"),
    config: Path = _config_option(),
):
    """Show user status and resource usage."""
    _run_cli_command(commands.user_status, config, username=username)


@user_app.command("create")
def user_create_command(
    username: str = typer.Argument(..., help="Username"),
    config: Path = _config_option(),
):
    """Create and provision a new user."""
    _run_cli_command(commands.user_create, config, log_name="user-manager", username=username)


@user_app.command("reset")
def user_reset_command(
    username: str = typer.Argument(..., help="Username"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
    config: Path = _config_option(),
):
    """Remove and recreate a user's container environment."""
    if not force:
        confirm = typer.confirm(f"Reset user {username}? This removes all their containers and volumes")
        if not confirm:
            raise typer.Abort()
    _run_cli_command(commands.user_reset, config, log_name="user-manager", username=username)


@user_app.command("monitor")
def user_monitor_command(
    username: str = typer.Argument(..., help="Username"),
    config: Path = _config_option(),
):
    """Check resource usage against quotas."""
    _run_cli_command(commands.user_monitor, config, username=username)


@user_app.command("quota")
def user_quota_command(
    username: str = typer.Argument(..., help="Username"),
    resource: str = typer.Argument(..., help="Resource (cpu, memory, disk)"),
    limit: str = typer.Argument(..., help="Limit (e.g. 200, 4Gi, 50G)"),
    config: Path = _config_option(),
):
    """Set a resource quota."""
    _run_cli_command(commands.user_quota, config, username=username, resource=resource, limit=limit)


# Version subcommands
version_app = typer.Typer(help="Version tracking commands")
app.add_typer(version_app, name="version")


@version_app.command("track")
def version_track_command(
    username: Optional[str] = typer.Argument(None, help="User whose toolchain to record"),
    config: Path = _config_option(),
):
    """Record a version snapshot."""
    _run_cli_command(commands.version_track, config, username=username)


@version_app.command("print")
def version_print_command(config: Path = _config_option()):
    """Print the latest version snapshot."""
    _run_cli_command(commands.version_print, config)


@version_app.command("check-updates")
def version_check_updates_command(config: Path = _config_option()):
    """Check configured images for updates."""
    _run_cli_command(commands.version_check_updates, config)


@version_app.command("scan")
def version_scan_command(
    refs: List[str] = typer.Argument(..., help="Image references to scan"),
    config: Path = _config_option(),
):
    """Scan images for security issues."""
    _run_cli_command(commands.version_scan, config, refs=refs)


@version_app.command("diff")
def version_diff_command(config: Path = _config_option()):
    """Show changes since the previous snapshot."""
    _run_cli_command(commands.version_diff, config)


# Diagnostics subcommands
diag_app = typer.Typer(help="Diagnostics commands")
app.add_typer(diag_app, name="diag")


@diag_app.command("collect")
def diag_collect_command(config: Path = _config_option()):
    """Write a diagnostic report."""
    _run_cli_command(commands.diag_collect, config)


@diag_app.command("monitor")
def diag_monitor_command(
    interval: Optional[int] = typer.Argument(None, help="Seconds between checks"),
    config: Path = _config_option(),
):
    """Run the health monitor until interrupted."""
    _run_cli_command(commands.diag_monitor, config, log_name="diagnostics", interval=interval)


@diag_app.command("cleanup")
def diag_cleanup_command(
    max_age_days: Optional[int] = typer.Argument(None, help="Remove reports older than this"),
    config: Path = _config_option(),
):
    """Remove old diagnostic reports."""
    _run_cli_command(commands.diag_cleanup, config, max_age_days=max_age_days)


# Config subcommands
config_app = typer.Typer(help="Configuration commands")
app.add_typer(config_app, name="config")


@config_app.command("validate")
def config_validate_command(config: Path = _config_option()):
    """Validate the configuration file."""
    code = asyncio.run(commands.validate_config(config))
    if code:
        raise typer.Exit(code)


def main():
    """Main entry point for CLI."""
    app()
