"""Main CLI entry point for kubeconverge."""

import threading
from pathlib import Path

import typer
from pydantic import ValidationError as PydanticValidationError
from rich.console import Console
from rich.table import Table

from kubeconverge.config import LEASE_POLICIES, ReconcilerSettings
from kubeconverge.exceptions import ConfigurationError, ConvergeError, LeaseError, ValidationError
from kubeconverge.executors import build_executors
from kubeconverge.lease import build_leases
from kubeconverge.logging_config import get_logger, setup_logging
from kubeconverge.manifest import TargetGraph, load_manifest
from kubeconverge.models.actions import PassReport, PassStatus
from kubeconverge.reconciler import Controller, Reconciler
from kubeconverge.report import render_report

app = typer.Typer(
    name="kubeconverge",
    help="Declarative reconciliation of Kubernetes clusters, images and workloads",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)

EXIT_FAILED = PassStatus.FAILED.exit_code
EXIT_INVALID = PassStatus.INVALID.exit_code
EXIT_INTERRUPTED = PassStatus.CANCELLED.exit_code


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Global options for all commands."""
    log_path = Path(log_file) if log_file else None
    setup_logging(verbose=verbose, log_file=log_path)
    logger.debug("Logging initialized")


def _print_error(label: str, error: ConvergeError) -> None:
    console.print(f"[red]{label}:[/red] {error.message}")
    if error.details:
        console.print(f"\n{error.details}")


def _load_settings(settings_file: str | None, **overrides) -> ReconcilerSettings:
    """Read settings (if a file is given) and apply command-line overrides.

    Raises:
        typer.Exit: With the validation exit code when settings are invalid
    """
    try:
        settings = ReconcilerSettings.load(settings_file) if settings_file else ReconcilerSettings()
        return settings.with_overrides(**overrides)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e.message}")
        _print_error("Configuration Error", e)
    except PydanticValidationError as e:
        logger.error(f"Invalid option: {e}")
        console.print("[red]Configuration Error:[/red]")
        for error in e.errors():
            field = ".".join(str(x) for x in error["loc"])
            console.print(f"  - {field}: {error['msg']}")
    raise typer.Exit(code=EXIT_INVALID)


def _load_graph(manifest: str) -> TargetGraph:
    """Load the manifest set, exiting with the validation exit code on failure."""
    try:
        return load_manifest(manifest)
    except ValidationError as e:
        _print_error("Validation Error", e)
        raise typer.Exit(code=EXIT_INVALID)


def _run_pass(graph: TargetGraph, settings: ReconcilerSettings, dry_run: bool) -> PassReport:
    executors = build_executors(settings)
    reconciler = Reconciler(executors, settings, leases=build_leases(settings, executors.cluster))
    try:
        return reconciler.run(graph, dry_run=dry_run)
    except LeaseError as e:
        _print_error("Lease Error", e)
        raise typer.Exit(code=EXIT_FAILED)
    except KeyboardInterrupt:
        console.print("\n[yellow]Reconciliation interrupted by user[/yellow]")
        raise typer.Exit(code=EXIT_INTERRUPTED)


@app.command()
def version() -> None:
    """Show version information."""
    from kubeconverge import __version__

    typer.echo(f"kubeconverge version {__version__}")


@app.command()
def validate(
    manifest: str = typer.Option(
        ..., "--manifest", "-m", help="Manifest file or directory of manifest files"
    ),
) -> None:
    """
    Validate a manifest set without contacting the cluster.

    Checks document shapes, that every node selector references a label
    declared in the topology, image references, and service port conflicts.
    """
    graph = _load_graph(manifest)

    table = Table(title=f"Topology '{graph.name}'")
    table.add_column("Node", style="cyan")
    table.add_column("Role", style="magenta")
    table.add_column("Labels", style="green")
    table.add_column("Taints", style="yellow")
    for node in graph.topology.nodes:
        role = node.role + (" (bootstrap)" if node.name == graph.topology.bootstrap.node else "")
        table.add_row(
            node.name,
            role,
            ", ".join(f"{k}={v}" for k, v in node.labels.items()),
            ", ".join(str(t) for t in node.taints),
        )
    console.print(table)

    if graph.workloads:
        workloads = Table(title="Workloads")
        workloads.add_column("Workload", style="cyan")
        workloads.add_column("Image", style="magenta")
        workloads.add_column("Replicas", justify="right")
        workloads.add_column("Exposure", style="green")
        for workload in graph.workloads:
            exposure = "-"
            if workload.exposure is not None:
                ports = ", ".join(
                    f"{p.port}" + (f":{p.node_port}" if p.node_port else "")
                    for p in workload.exposure.ports
                )
                exposure = f"{workload.exposure.type} {ports}"
            workloads.add_row(workload.key, workload.image, str(workload.replicas), exposure)
        console.print(workloads)

    console.print(
        f"\n[green]✓[/green] Manifest valid: {len(graph.topology.nodes)} nodes, "
        f"{len(graph.images)} images, {len(graph.workloads)} workloads"
    )


@app.command()
def plan(
    manifest: str = typer.Option(
        ..., "--manifest", "-m", help="Manifest file or directory of manifest files"
    ),
    settings_file: str | None = typer.Option(
        None, "--settings", "-s", envvar="KUBECONVERGE_SETTINGS", help="Path to settings YAML"
    ),
) -> None:
    """
    Show the actions a reconciliation pass would take.

    Equivalent to 'reconcile --dry-run'.
    """
    settings = _load_settings(settings_file)
    graph = _load_graph(manifest)
    report = _run_pass(graph, settings, dry_run=True)
    render_report(report, console)
    raise typer.Exit(code=report.exit_code)


@app.command()
def reconcile(
    manifest: str = typer.Option(
        ..., "--manifest", "-m", help="Manifest file or directory of manifest files"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Plan only; make no changes and skip verification"
    ),
    timeout: str | None = typer.Option(
        None, "--timeout", "-t", help="Rollout verification timeout (e.g. '90s', '5m')"
    ),
    settings_file: str | None = typer.Option(
        None, "--settings", "-s", envvar="KUBECONVERGE_SETTINGS", help="Path to settings YAML"
    ),
    max_workers: int | None = typer.Option(
        None, "--max-workers", "-w", help="Concurrent workloads per tier"
    ),
    lease_policy: str | None = typer.Option(
        None,
        "--lease-policy",
        help=f"What to do if a pass is already running: {', '.join(LEASE_POLICIES)}",
    ),
) -> None:
    """
    Converge the cluster onto the manifest set.

    Observes the cluster and registry, applies the missing changes tier by
    tier (membership, node labels and taints, images, workloads, services),
    then waits for rollouts to become ready.

    Exit codes: 0 converged, 1 validation error, 2 timed out,
    3 degraded after partial convergence, 4 pass failed.

    Examples:
        # Converge and wait up to 5 minutes for rollouts
        kubeconverge reconcile --manifest deploy/ --timeout 5m

        # Show what would change
        kubeconverge reconcile --manifest deploy/ --dry-run
    """
    settings = _load_settings(
        settings_file,
        verify_timeout=timeout,
        max_workers=max_workers,
        lease_policy=lease_policy,
    )
    graph = _load_graph(manifest)

    if dry_run:
        console.print("[yellow]Mode: dry run (no changes will be made)[/yellow]")
    report = _run_pass(graph, settings, dry_run=dry_run)
    render_report(report, console)
    raise typer.Exit(code=report.exit_code)


@app.command()
def watch(
    manifest: str = typer.Option(
        ..., "--manifest", "-m", help="Manifest file or directory of manifest files"
    ),
    interval: str = typer.Option("10s", "--interval", "-i", help="Manifest poll interval"),
    settings_file: str | None = typer.Option(
        None, "--settings", "-s", envvar="KUBECONVERGE_SETTINGS", help="Path to settings YAML"
    ),
    lease_policy: str | None = typer.Option(
        None,
        "--lease-policy",
        help=f"What a change does to a running pass: {', '.join(LEASE_POLICIES)}",
    ),
) -> None:
    """
    Reconcile whenever the manifest set changes.

    With '--lease-policy cancel' a change supersedes the running pass;
    with 'queue' the new pass waits for it to finish.
    """
    from kubeconverge.config import parse_duration
    from kubeconverge.watch import ManifestWatcher

    settings = _load_settings(settings_file, lease_policy=lease_policy)
    try:
        poll_interval = parse_duration(interval)
    except ConfigurationError as e:
        _print_error("Configuration Error", e)
        raise typer.Exit(code=EXIT_INVALID)

    executors = build_executors(settings)
    leases = build_leases(settings, executors.cluster)
    controller = Controller(Reconciler(executors, settings, leases=leases))
    watcher = ManifestWatcher(
        manifest,
        controller,
        interval=poll_interval,
        on_report=lambda report: render_report(report, console),
        on_invalid=lambda error: _print_error("Validation Error", error),
    )

    stop = threading.Event()
    console.print(f"[bold cyan]Watching {manifest}[/bold cyan] (Ctrl+C to stop)")
    try:
        watcher.run(stop)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping watch; cancelling running pass[/yellow]")
        stop.set()
    finally:
        controller.shutdown(cancel_running=True)


if __name__ == "__main__":
    app()
