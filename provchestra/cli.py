"""
CLI interface for provchestra.

Provides commands to validate a deployment configuration, run the two-phase
deployment (for real or against the simulated backend), resume failed runs,
and inspect stored run reports.
"""

import json
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import click
import yaml
from rich.table import Table

from provchestra import __version__
from provchestra.config import DeploymentConfig, get_provchestra_home, load_config
from provchestra.errors import ConfigurationError, CyclicDependencyError
from provchestra.graph_builder import build_graph
from provchestra.orchestrator import DeploymentOrchestrator
from provchestra.run_store import FileRunStore
from provchestra.schemas import RunReport
from provchestra.utils import (
    console,
    format_duration,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
)


SAMPLE_CONFIG = {
    "deployment": {
        "name": "demo-deployment",
        "resource_group": "rg-demo",
    },
    "parameters": {
        "location": "eastus",
        "baseName": "demo",
        "adminObjectId": "00000000-0000-0000-0000-000000000000",
        "adminLogin": "admin@contoso.com",
        "deployGenAI": True,
        "deploySearch": False,
    },
    "post_deploy": {
        "openai_deployment_name": "chat",
        "allow_azure_services": True,
        "database_roles": ["db_datareader", "db_datawriter"],
    },
    "retry": {
        "max_attempts": 3,
        "backoff_seconds": 2,
        "backoff_multiplier": 2.0,
        "max_backoff_seconds": 30,
    },
    "readiness": {
        "max_wait_seconds": 600,
        "poll_interval_seconds": 10,
        "backoff_multiplier": 1.5,
        "max_interval_seconds": 60,
    },
    "logging": {
        "level": "INFO",
        "format": "pretty",
        "console": True,
        "output": "logs/provchestra-{date}.log",
    },
}


@click.group()
@click.version_option(version=__version__, prog_name="provchestra")
def main():
    """
    provchestra - Two-phase infrastructure deployment orchestrator.

    Provisions a resource graph in one atomic deployment, then runs
    idempotent post-deployment configuration steps.
    """
    pass


def _load(config_path: str) -> DeploymentConfig:
    try:
        return load_config(Path(config_path))
    except ConfigurationError as e:
        print_error(f"Invalid configuration: {e}")
        raise SystemExit(1)


def _open_store(store_dir: Optional[str], config: Optional[DeploymentConfig] = None) -> FileRunStore:
    if store_dir:
        return FileRunStore(Path(store_dir))
    if config is not None:
        return FileRunStore(config.get_run_store_path())
    return FileRunStore(get_provchestra_home())


def _setup_logging(config: DeploymentConfig, verbose: bool) -> None:
    log_level = "DEBUG" if verbose else config.get_log_level()
    setup_logging(
        config.get_log_file_path(),
        log_level,
        config.get_log_format(),
        config.should_log_to_console(),
    )


@contextmanager
def _cancel_on_interrupt():
    """Turn Ctrl-C into a cooperative cancellation of the running deployment."""
    cancel = threading.Event()
    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return

    def handler(signum, frame):
        print_warning("Cancellation requested; stopping after the current operation...")
        cancel.set()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


def _orchestrator(config: DeploymentConfig, store: FileRunStore, dry_run: bool) -> DeploymentOrchestrator:
    if dry_run:
        return DeploymentOrchestrator.simulated(store)
    return DeploymentOrchestrator.for_azure(config, store)


def _print_report(report: RunReport) -> None:
    table = Table(title=f"Run {report.run_id}")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Note")
    for result in report.step_results:
        note = ""
        if result.carried_over:
            note = "carried over"
        elif result.skipped:
            note = f"missing: {', '.join(result.missing_inputs)}"
        elif result.failed and result.error:
            note = result.error.get("message", "")
        table.add_row(result.step_name, result.status.value, str(result.attempts), note)
    if report.step_results:
        console.print(table)

    duration = f" in {format_duration(report.duration_ms / 1000)}" if report.duration_ms is not None else ""
    if report.success:
        print_success(f"{report.deployment_name}: {report.status.value}{duration}")
        return

    where = f" at step {report.failed_step}" if report.failed_step else ""
    print_error(f"{report.deployment_name}: {report.status.value}{where}{duration}")
    if report.error and report.error.get("message"):
        print_error(report.error["message"])
    for diagnostic in (report.error or {}).get("diagnostics", []):
        print_error(f"  {diagnostic.get('resource', '-')}: {diagnostic.get('code')}: {diagnostic.get('message')}")
    print_info(f"Resume with: provchestra resume {report.run_id} --config <config>")


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Write a sample deployment configuration into the provchestra home."""
    home = get_provchestra_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    cfg_path.write_text(yaml.safe_dump(SAMPLE_CONFIG, sort_keys=False))
    (home / "runs").mkdir(exist_ok=True)

    click.echo(f"Initialized provchestra config at {cfg_path}")
    click.echo("Edit the parameters, then run `provchestra validate` on it.")


@main.command("validate")
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
def validate(config_path: str):
    """
    Validate a configuration and show the resource graph it produces.

    Nothing is deployed.
    """
    config = _load(config_path)
    try:
        config.validate()
        graph = build_graph(config)
    except (ConfigurationError, CyclicDependencyError) as e:
        print_error(str(e))
        raise SystemExit(1)

    table = Table(title=f"Resource graph: {config.name}")
    table.add_column("Id")
    table.add_column("Kind")
    table.add_column("Name")
    table.add_column("Module")
    table.add_column("Depends on")
    for node_id in graph.topological_order():
        node = graph[node_id]
        table.add_row(
            node_id,
            node.kind,
            node.name,
            node.module or "core",
            ", ".join(sorted(graph.edges(node_id))),
        )
    console.print(table)

    print_info(f"Included modules: {', '.join(sorted(graph.included_modules)) or 'none'}")
    if graph.excluded_modules:
        print_info(f"Excluded modules: {', '.join(sorted(graph.excluded_modules))}")
    for node_id, absent in sorted(graph.absent_dependencies.items()):
        print_info(f"{node_id}: optional dependencies absent: {', '.join(sorted(absent))}")
    print_success(f"{config_path} is valid ({len(graph)} resources)")


@main.command("deploy")
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--dry-run", is_flag=True, help="Use the simulated backend and in-memory clients")
@click.option("--store", "store_dir", type=click.Path(file_okay=False), help="Run store directory")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def deploy(config_path: str, dry_run: bool, store_dir: Optional[str], verbose: bool):
    """
    Run a deployment: provision resources, then configure them.

    Examples:

        provchestra deploy config.yaml --dry-run

        provchestra deploy config.yaml
    """
    config = _load(config_path)
    _setup_logging(config, verbose)
    store = _open_store(store_dir, config)

    if dry_run:
        print_banner("DRY RUN (simulated backend)")

    try:
        orchestrator = _orchestrator(config, store, dry_run)
        with _cancel_on_interrupt() as cancel:
            report = orchestrator.run(config, cancel)
    except (ConfigurationError, CyclicDependencyError) as e:
        print_error(str(e))
        raise SystemExit(1)

    _print_report(report)
    raise SystemExit(0 if report.success else 1)


@main.command("resume")
@click.argument("run_id")
@click.option("--config", "config_path", required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--dry-run", is_flag=True, help="Use the simulated backend and in-memory clients")
@click.option("--store", "store_dir", type=click.Path(file_okay=False), help="Run store directory")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def resume(run_id: str, config_path: str, dry_run: bool, store_dir: Optional[str], verbose: bool):
    """Resume a failed run from its first step that did not succeed."""
    config = _load(config_path)
    _setup_logging(config, verbose)
    store = _open_store(store_dir, config)

    try:
        orchestrator = _orchestrator(config, store, dry_run)
        with _cancel_on_interrupt() as cancel:
            report = orchestrator.resume(run_id, config, cancel)
    except (ConfigurationError, CyclicDependencyError) as e:
        print_error(str(e))
        raise SystemExit(1)

    _print_report(report)
    raise SystemExit(0 if report.success else 1)


@main.command("show")
@click.argument("run_id")
@click.option("--store", "store_dir", type=click.Path(file_okay=False), help="Run store directory")
def show(run_id: str, store_dir: Optional[str]):
    """Print a stored run report as JSON."""
    report = _open_store(store_dir).get(run_id)
    if report is None:
        click.echo(f"✗ Unknown run: {run_id}", err=True)
        raise SystemExit(1)
    click.echo(json.dumps(report.to_dict(), indent=2))


@main.command("runs")
@click.option("--store", "store_dir", type=click.Path(file_okay=False), help="Run store directory")
def list_runs(store_dir: Optional[str]):
    """List stored runs."""
    reports = _open_store(store_dir).list_runs()
    if not reports:
        click.echo("No runs found.")
        return

    table = Table(title="Runs")
    table.add_column("Run id")
    table.add_column("Deployment")
    table.add_column("Status")
    table.add_column("Failed step")
    table.add_column("Started")
    for report in reports:
        table.add_row(
            report.run_id,
            report.deployment_name,
            report.status.value,
            report.failed_step or "",
            report.started_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


if __name__ == "__main__":
    main()
