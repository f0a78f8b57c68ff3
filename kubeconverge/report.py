"""Rich rendering of plans and pass reports."""

from rich.console import Console
from rich.table import Table

from kubeconverge.models.actions import ActionOutcome, HealthState, PassReport, PassStatus

OUTCOME_STYLES = {
    ActionOutcome.PLANNED: "cyan",
    ActionOutcome.APPLIED: "green",
    ActionOutcome.NOOP: "dim",
    ActionOutcome.REDUNDANT: "yellow",
    ActionOutcome.FAILED: "red",
    ActionOutcome.SKIPPED: "dim",
    ActionOutcome.CANCELLED: "yellow",
}

HEALTH_STYLES = {
    HealthState.CONVERGED: "green",
    HealthState.TIMED_OUT: "yellow",
    HealthState.DEGRADED: "red",
    HealthState.FAILED: "red",
    HealthState.CANCELLED: "yellow",
}

STATUS_MESSAGES = {
    PassStatus.CONVERGED: "[green]✓ Converged[/green]",
    PassStatus.PLANNED: "[cyan]Dry run: no changes made[/cyan]",
    PassStatus.INVALID: "[red]✗ Manifest invalid[/red]",
    PassStatus.TIMED_OUT: "[yellow]⚠ Timed out waiting for rollout[/yellow]",
    PassStatus.DEGRADED: "[red]✗ Degraded after partial convergence[/red]",
    PassStatus.FAILED: "[red]✗ Pass failed[/red]",
    PassStatus.CANCELLED: "[yellow]Pass cancelled[/yellow]",
}


def actions_table(report: PassReport) -> Table:
    title = "Planned Actions" if report.dry_run else "Actions"
    table = Table(title=title)
    table.add_column("Tier", style="magenta")
    table.add_column("Action", style="cyan")
    table.add_column("Subject")
    table.add_column("Detail", style="blue")
    table.add_column("Outcome")
    if not report.dry_run:
        table.add_column("Attempts", justify="right")
        table.add_column("Error", style="red")

    for action in report.actions:
        style = OUTCOME_STYLES[action.outcome]
        row = [
            action.tier.name.lower(),
            action.kind.value,
            action.subject,
            action.detail,
            f"[{style}]{action.outcome.value}[/{style}]",
        ]
        if not report.dry_run:
            row.extend([str(action.attempts), action.error or ""])
        table.add_row(*row)
    return table


def health_table(report: PassReport) -> Table:
    table = Table(title="Rollout Health")
    table.add_column("Workload", style="cyan")
    table.add_column("State")
    table.add_column("Ready", justify="right")
    table.add_column("Message")
    for health in report.health:
        style = HEALTH_STYLES[health.state]
        table.add_row(
            health.workload,
            f"[{style}]{health.state.value}[/{style}]",
            f"{health.ready}/{health.desired}",
            health.message,
        )
    return table


def render_report(report: PassReport, console: Console) -> None:
    """Print the per-action outcomes, rollout health and overall status."""
    if report.actions:
        console.print(actions_table(report))
    else:
        console.print("[green]No actions needed: live state matches the manifest[/green]")

    if report.health:
        console.print(health_table(report))

    if report.error:
        console.print(f"\n[red]Error:[/red] {report.error}")

    console.print(f"\n[bold]Topology:[/bold] {report.topology}")
    if not report.dry_run and report.actions:
        applied = report.count(ActionOutcome.APPLIED)
        redundant = report.count(ActionOutcome.REDUNDANT)
        noop = report.count(ActionOutcome.NOOP)
        console.print(
            f"[bold]Applied:[/bold] {applied}  [bold]No-op:[/bold] {noop}  "
            f"[bold]Redundant:[/bold] {redundant}"
        )
    console.print(STATUS_MESSAGES[report.status])
