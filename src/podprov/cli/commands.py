"""Command implementations for the CLI."""

from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from podprov.models.quota import UsageReport
from podprov.models.results import Outcome, ProvisionReport
from podprov.models.version import UpdateStatus
from podprov.ops.cleanup import CleanupReport
from podprov.provision.config import ConfigManager
from podprov.provision.main import ProvisionApp
from podprov.utils.units import format_size


console = Console()

_OUTCOME_STYLE = {
    Outcome.CHANGED: "green",
    Outcome.UNCHANGED: "dim",
    Outcome.WARNING: "yellow",
    Outcome.FAILED: "red",
    Outcome.SKIPPED: "dim",
}


def _outcome(outcome: Outcome) -> str:
    style = _OUTCOME_STYLE[outcome]
    return f"[{style}]{outcome.value}[/{style}]"


def print_report(report: ProvisionReport):
    """Print a provisioning report."""
    table = Table(title="Provisioning")
    table.add_column("User", style="cyan")
    table.add_column("State")
    table.add_column("Succeeded", justify="right")
    table.add_column("Warnings", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Error", style="red", max_width=60)

    for user in report.users:
        state = "[red]failed[/red]" if user.failed else "[green]provisioned[/green]"
        table.add_row(
            user.username,
            state,
            str(user.count(Outcome.CHANGED, Outcome.UNCHANGED)),
            str(user.count(Outcome.WARNING)),
            str(user.count(Outcome.FAILED)),
            user.error or "",
        )

    console.print(table)

    for user in report.users:
        if user.container is None:
            continue
        for image in user.container.images:
            if image.outcome in (Outcome.WARNING, Outcome.FAILED):
                console.print(f"  {_outcome(image.outcome)} {image.ref}: {image.message}")

    console.print(report.summary())


async def provision(app: ProvisionApp, users: Optional[List[str]] = None) -> int:
    """Provision all or some users."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        task = progress.add_task("Provisioning users...", total=None)
        report = await app.provision(users)
        progress.update(task, completed=True)

    print_report(report)
    return 0 if report.ok else 1


def print_cleanup(report: CleanupReport):
    """Print the actions of a cleanup run."""
    verb = "Would" if report.dry_run else "Did"
    if not report.actions:
        console.print("Nothing to clean up")
    for action in report.actions:
        console.print(f"{verb} {action}")
    for username in report.failed_users:
        console.print(f"[red]✗[/red] Cleanup of {username} failed")


async def cleanup(app: ProvisionApp, user: Optional[str], all_users: bool, remove_home: bool,
                  dry_run: bool, confirmed: bool) -> int:
    """Tear down one user or everything."""
    reconciler = app.cleanup(dry_run=dry_run)
    if all_users:
        report = await reconciler.cleanup_all(remove_home=remove_home, confirmed=confirmed)
    else:
        report = await reconciler.cleanup_user(user, remove_home=remove_home)

    print_cleanup(report)
    return 1 if report.failed_users else 0


def print_usage(report: UsageReport):
    """Print a resource usage report."""
    table = Table(title=f"Resource Usage for {report.username}")
    table.add_column("Resource", style="cyan")
    table.add_column("Usage", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Status")

    for usage in report.resources:
        if usage.kind.value == "cpu":
            value = f"{usage.usage:.1f}%"
        else:
            value = format_size(usage.usage)
        status = "[red]exceeded[/red]" if usage.exceeded else "[green]ok[/green]"
        table.add_row(usage.kind.value, value, usage.limit_display or "unbounded", status)

    console.print(table)


async def user_status(app: ProvisionApp, username: str) -> int:
    """Show account, container and usage state of a user."""
    status = await app.user_status(username)
    if not status["exists"]:
        console.print(f"[yellow]User {username} does not exist[/yellow]")
        return 1

    console.print(f"[bold]User:[/bold] {username} ({status['user']})")
    console.print(f"Containers: {', '.join(status['containers']) or 'none'}")
    console.print(f"Volumes: {', '.join(status['volumes']) or 'none'}")
    print_usage(status["usage"])
    return 0


async def user_create(app: ProvisionApp, username: str) -> int:
    """Create and provision a single user."""
    report = await app.create_user(username)
    print_report(report)
    return 0 if report.ok else 1


async def user_reset(app: ProvisionApp, username: str) -> int:
    """Recreate a user's container environment."""
    result = await app.reset_user(username)
    for step in result.steps:
        console.print(f"{step.name}: {_outcome(step.outcome)} {step.message}")
    for image in result.images:
        console.print(f"{image.ref}: {_outcome(image.outcome)} {image.message}")
    if result.aborted:
        console.print(f"[red]✗[/red] Reset of {username} aborted")
        return 1
    console.print(f"[green]✓[/green] Reset {username}")
    return 0


async def user_monitor(app: ProvisionApp, username: str) -> int:
    """Report resource usage against quotas."""
    report = await app.quotas.check_usage(username)
    print_usage(report)
    return 0


async def user_quota(app: ProvisionApp, username: str, resource: str, limit: str) -> int:
    """Set a resource quota."""
    record = await app.quotas.set_quota(username, resource, limit)
    console.print(f"[green]✓[/green] Set {resource} quota for {username} to {limit}")
    for field, value in record.model_dump(exclude_none=True).items():
        console.print(f"  {field}: {value}")
    return 0


async def version_track(app: ProvisionApp, username: Optional[str] = None) -> int:
    """Record a version snapshot."""
    snapshot = await app.versions.track(username)
    console.print(f"[green]✓[/green] Recorded snapshot at {snapshot.system.timestamp.isoformat()}")
    return 0


async def version_print(app: ProvisionApp) -> int:
    """Print the latest version snapshot."""
    system, images = await app.versions.print_versions()
    if system is None and images is None:
        console.print("[yellow]No version snapshot recorded[/yellow]")
        return 1

    if system:
        table = Table(title="System Versions")
        table.add_column("Component", style="cyan")
        table.add_column("Version")
        table.add_row("timestamp", system.timestamp.isoformat())
        table.add_row("runtime", system.runtime_version)
        table.add_row("kernel", system.kernel_version)
        table.add_row("distro", system.distro)
        for name, version in system.toolchains.items():
            table.add_row(name, version)
        console.print(table)

    if images:
        table = Table(title="Container Versions")
        table.add_column("Image", style="cyan")
        table.add_column("Id", style="dim")
        for ref, image_id in images.images.items():
            table.add_row(ref, image_id)
        console.print(table)
    return 0


async def version_check_updates(app: ProvisionApp) -> int:
    """Check configured images for updates."""
    checks = await app.versions.check_updates()
    updates = [c for c in checks if c.status == UpdateStatus.UPDATE_AVAILABLE]
    for check in checks:
        if check.status == UpdateStatus.UPDATE_AVAILABLE:
            console.print(f"📦 Update available for {check.ref}")
        elif check.status == UpdateStatus.NOT_FOUND:
            console.print(f"[yellow]⚠[/yellow] {check.ref} not found")
    if not updates:
        console.print("[green]✓[/green] All containers are up to date")
    return 0


async def version_scan(app: ProvisionApp, refs: List[str]) -> int:
    """Scan images for risky defaults."""
    for ref in refs:
        report = await app.versions.scan_security(ref)
        for warning in report.warnings:
            console.print(f"[yellow]⚠[/yellow] {warning}")
        console.print(f"[green]✓[/green] Security scan complete for {ref}")
    return 0


async def version_diff(app: ProvisionApp) -> int:
    """Show changes between the two latest snapshots."""
    diff = await app.versions.diff()
    if diff.previous is None:
        console.print("[yellow]At least two snapshots are needed for a diff[/yellow]")
        return 0
    if diff.empty:
        console.print("No changes since the previous snapshot")
        return 0

    table = Table(title=f"Changes {diff.previous.isoformat()} → {diff.current.isoformat()}")
    table.add_column("Field", style="cyan")
    table.add_column("Previous")
    table.add_column("Current")
    for key, (old, new) in diff.changes.items():
        table.add_row(key, old or "-", new or "-")
    console.print(table)
    return 0


async def diag_collect(app: ProvisionApp) -> int:
    """Write a diagnostic report."""
    path = await app.diagnostics.collect()
    console.print(f"[green]✓[/green] Diagnostic report generated: {path}")
    return 0


async def diag_monitor(app: ProvisionApp, interval: Optional[int] = None) -> int:
    """Run the health monitor until interrupted."""
    await app.run_monitor(interval)
    return 0


async def diag_cleanup(app: ProvisionApp, max_age_days: Optional[int] = None) -> int:
    """Prune old diagnostic reports."""
    removed = await app.diagnostics.cleanup(max_age_days)
    console.print(f"[green]✓[/green] Removed {len(removed)} old report(s)")
    return 0


async def validate_config(config_path: Path) -> int:
    """Validate a configuration file."""
    result = await ConfigManager(config_path).validate()
    if not result["valid"]:
        console.print(f"[red]✗[/red] Configuration is invalid: {result['error']}")
        return 1

    console.print(f"[green]✓[/green] Configuration is valid: {result['path']}")
    console.print(f"Users: {', '.join(result['users']) or 'none'}")
    for group, count in result["groups"].items():
        console.print(f"  {group}: {count} image(s)")
    console.print(f"Services: {', '.join(result['services'])}")
    return 0
