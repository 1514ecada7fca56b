"""
healthcheck-manager - CLI Interface

Runs the controller manager against a management cluster, or against YAML
manifests for local evaluation.
"""

import logging
import signal
import time
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config import LOG_LEVEL, ManagerConfig, ReportMode
from .manager import create_manager
from .models import EntryState, HealthPolicy


console = Console()

STATE_STYLES = {
    EntryState.NOT_YET_EVALUATED: "dim",
    EntryState.EVALUATED: "green",
}


def _build_config(
    shard_key: Optional[str],
    worker_number: Optional[int],
    concurrent_reconciles: Optional[int],
    report_mode: Optional[int],
    resync_seconds: Optional[int],
    kubeconfig: Optional[str],
) -> ManagerConfig:
    config = ManagerConfig.from_env()
    if shard_key is not None:
        config.shard_key = shard_key
    if worker_number is not None:
        config.workers = worker_number
    if concurrent_reconciles is not None:
        config.concurrent_reconciles = concurrent_reconciles
    if report_mode is not None:
        config.report_mode = ReportMode(report_mode)
    if resync_seconds is not None:
        config.resync_seconds = resync_seconds
    if kubeconfig:
        config.kubeconfig = kubeconfig
    return config


def _policy_table(policy: HealthPolicy) -> Table:
    table = Table(title=f"ClusterHealthCheck {policy.name}", show_lines=False)
    table.add_column("Cluster", style="cyan")
    table.add_column("State")
    table.add_column("Passing")
    table.add_column("Conditions")
    table.add_column("Notifications")

    for entry in policy.status.cluster_conditions:
        state = entry.state
        conditions = ", ".join(f"{c.type}={c.status.value}" for c in entry.conditions) or "-"
        summaries = ", ".join(
            f"{s.name}={s.status.value}" for s in entry.notification_summaries
        ) or "-"
        passing = "[green]yes[/green]" if entry.passing else "[red]no[/red]"
        table.add_row(
            f"{entry.cluster_ref.namespace}/{entry.cluster_ref.name}",
            f"[{STATE_STYLES.get(state, 'white')}]{state.value}[/]",
            passing if entry.evaluated else "-",
            conditions,
            summaries,
        )
    return table


@click.group()
@click.version_option(version=__version__)
def cli():
    """healthcheck-manager - evaluates ClusterHealthChecks across managed clusters."""
    pass


@cli.command()
@click.option("--shard-key", help="Shard owned by this replica")
@click.option("--worker-number", type=int, help="Number of health evaluation workers")
@click.option("--concurrent-reconciles", type=int, help="Maximum parallel policy reconciles")
@click.option("--report-mode", type=click.IntRange(0, 1), help="0: collect reports, 1: agents send reports")
@click.option("--resync-seconds", type=int, help="Interval of the periodic re-evaluation")
@click.option("--kubeconfig", type=click.Path(dir_okay=False), help="Kubeconfig of the management cluster")
@click.option("--manifests", "-f", multiple=True, type=click.Path(exists=True),
              help="Run from YAML manifests instead of a management cluster")
def run(
    shard_key: Optional[str],
    worker_number: Optional[int],
    concurrent_reconciles: Optional[int],
    report_mode: Optional[int],
    resync_seconds: Optional[int],
    kubeconfig: Optional[str],
    manifests: Tuple[str, ...],
):
    """Run the controller manager until interrupted."""
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = _build_config(
        shard_key, worker_number, concurrent_reconciles, report_mode, resync_seconds, kubeconfig,
    )

    console.print(Panel.fit(
        "[bold blue]healthcheck-manager[/bold blue]\n"
        f"Source: [green]{', '.join(manifests) if manifests else 'management cluster'}[/green]\n"
        f"Shard: [cyan]{config.shard_key or '-'}[/cyan]  "
        f"Workers: [cyan]{config.workers}[/cyan]  "
        f"Resync: [cyan]{config.resync_seconds}s[/cyan]",
        title="Starting"
    ))

    try:
        manager = create_manager(config, list(manifests) or None)
    except Exception as e:
        console.print(f"[red]Failed to initialize manager: {e}[/red]")
        raise SystemExit(1)

    def handle_signal(signum, frame):
        console.print(f"\n[dim]Received signal {signum}, shutting down...[/dim]")
        manager.stop()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    manager.start()
    if not manifests:
        manager.store.start_watches()

    while manager.is_running:
        time.sleep(1)
    if not manifests:
        manager.store.stop()

    if manager.capability_watcher is not None and manager.capability_watcher.restart_requested:
        # The process is expected to be restarted by its supervisor
        raise SystemExit(1)


@cli.command()
@click.option("--kubeconfig", type=click.Path(dir_okay=False), help="Kubeconfig of the management cluster")
@click.option("--manifests", "-f", multiple=True, type=click.Path(exists=True),
              help="Evaluate YAML manifests instead of reading a management cluster")
@click.option("--settle", default=3.0, show_default=True,
              help="Seconds to let manifest evaluation run before printing")
def status(kubeconfig: Optional[str], manifests: Tuple[str, ...], settle: float):
    """Show the status of every ClusterHealthCheck."""
    config = _build_config(None, None, None, None, None, kubeconfig)

    try:
        manager = create_manager(config, list(manifests) or None)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise SystemExit(1)

    if manifests:
        with console.status("[bold green]Evaluating manifests...[/bold green]"):
            manager.start()
            time.sleep(settle)
            manager.stop()

    try:
        policies = manager.store.list_policies()
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise SystemExit(1)
    finally:
        if not manifests:
            manager.deployer.shutdown()

    if not policies:
        console.print("[dim]No ClusterHealthChecks found.[/dim]")
        return

    for policy in policies:
        console.print(_policy_table(policy))
        if policy.status.failure_message:
            console.print(f"[red]{policy.status.failure_message}[/red]")
        console.print()


if __name__ == "__main__":
    cli()
