"""
CLI interface for health-gated rolling restarts of CrateDB clusters.
"""

import asyncio
import json
import signal
import sys
from io import StringIO
from typing import Any, Dict, List, Optional

import click
import yaml
from click.core import ParameterSource
from loguru import logger
from rich.console import Console
from rich.table import Table

from .config import create_sample_config, load_config
from .errors import ConfigurationError
from .health import TRANSIENT_ERRORS, HealthMonitor
from .kube import CrateDBKubeClient, KubeHealthSource, PodRestartAction
from .models import ClusterPlan, MultiClusterRestartResult, PollPolicy, RestartOptions
from .orchestrator import RestartOrchestrator, discover_plans
from .resolver import WorkloadResolver
from .sequencer import DryRunRestartAction, RestartSequencer
from .temporal_client import TemporalClient
from .worker import DEFAULT_TASK_QUEUE, DEFAULT_TEMPORAL_ADDRESS, run_worker

console = Console()

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def setup_logging(log_level: str) -> str:
    """
    Set up logging configuration.

    Args:
        log_level: Log level to use

    Returns:
        The log level that was set
    """
    logger.remove()

    if log_level == "DEBUG":
        format_string = (
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
        )
    else:
        format_string = "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>"

    logger.add(
        sys.stderr,
        level=log_level,
        format=format_string,
        backtrace=log_level == "DEBUG",
        diagnose=log_level == "DEBUG",
    )
    return log_level


def _isoformat(value) -> Optional[str]:
    return value.isoformat() if value else None


def report_data(result: MultiClusterRestartResult) -> Dict[str, Any]:
    """Summary of a run as plain data for the JSON and YAML reports."""
    return {
        "summary": {
            "total_clusters": result.total_clusters,
            "successful_clusters": result.successful_clusters,
            "failed_clusters": result.failed_clusters,
            "total_duration": result.total_duration,
            "dry_run": result.dry_run,
            "started_at": _isoformat(result.started_at),
            "completed_at": _isoformat(result.completed_at),
        },
        "clusters": [
            {
                "name": r.cluster.name,
                "namespace": r.cluster.namespace,
                "state": r.state.value,
                "workloads": r.workloads,
                "duration": r.duration,
                "restarted_pods": r.restarted_pods,
                "total_members": r.total_members,
                "health_checks": r.health_checks,
                "error": r.error,
                "error_kind": r.error_kind,
                "members": [
                    {
                        "pod": o.member.pod_name,
                        "state": o.state.value,
                        "failed_in": o.failed_in.value if o.failed_in else None,
                        "error": o.error,
                    }
                    for o in r.members
                ],
                "started_at": _isoformat(r.started_at),
                "completed_at": _isoformat(r.completed_at),
            }
            for r in result.results
        ],
    }


def _render(*renderables) -> str:
    temp_console = Console(file=StringIO(), width=120)
    for renderable in renderables:
        temp_console.print(renderable)
    return temp_console.file.getvalue()


def generate_report(result: MultiClusterRestartResult, output_format: str = "text") -> str:
    """
    Generate a report of restart results.

    Args:
        result: MultiClusterRestartResult object
        output_format: Output format (text, json, yaml)

    Returns:
        Report string
    """
    if output_format == "json":
        return json.dumps(report_data(result), indent=2)
    if output_format == "yaml":
        return yaml.dump(report_data(result), default_flow_style=False, sort_keys=False)

    title = "Restart Summary" + (" [DRY RUN]" if result.dry_run else "")
    summary_table = Table(title=title, show_header=True, header_style="bold magenta")
    summary_table.add_column("Metric", style="cyan")
    summary_table.add_column("Value", style="green")
    summary_table.add_row("Total Clusters", str(result.total_clusters))
    summary_table.add_row("Completed", str(result.successful_clusters))
    summary_table.add_row("Abandoned", str(result.failed_clusters))
    summary_table.add_row("Total Duration", f"{result.total_duration:.2f}s")
    if result.started_at and result.completed_at:
        summary_table.add_row("Started At", result.started_at.strftime("%Y-%m-%d %H:%M:%S"))
        summary_table.add_row("Completed At", result.completed_at.strftime("%Y-%m-%d %H:%M:%S"))

    details_table = Table(title="Cluster Details", show_header=True, header_style="bold magenta")
    details_table.add_column("Cluster", style="cyan")
    details_table.add_column("Namespace", style="blue")
    details_table.add_column("State", style="green")
    details_table.add_column("Duration (s)", style="yellow")
    details_table.add_column("Pods Restarted", style="green")
    details_table.add_column("Health Checks", style="yellow")
    details_table.add_column("Error", style="red")

    for r in result.results:
        state = "[green]DONE[/green]" if r.success else "[red]FAILED[/red]"
        error = f"{r.error_kind}: {r.error}" if r.error else ""
        details_table.add_row(
            r.cluster.name,
            r.cluster.namespace,
            state,
            f"{r.duration:.2f}",
            f"{len(r.restarted_pods)}/{r.total_members}",
            str(r.health_checks),
            error,
        )

    return _render(summary_table, "", details_table)


def render_plans(plans: List[ClusterPlan]) -> str:
    """Inventory table of discovered clusters and their workloads."""
    table = Table(title="CrateDB Clusters", show_header=True, header_style="bold magenta")
    table.add_column("Namespace", style="blue")
    table.add_column("Name", style="cyan")
    table.add_column("Cluster Name", style="cyan")
    table.add_column("Health")
    table.add_column("Workloads", style="green")
    table.add_column("Error", style="red")

    health_styles = {"GREEN": "green", "YELLOW": "yellow", "RED": "red"}
    for entry in plans:
        style = health_styles.get(entry.health.value, "dim")
        workloads = ", ".join(f"{p.workload} ({len(p)})" for p in entry.plans)
        table.add_row(
            entry.cluster.namespace,
            entry.cluster.name,
            entry.cluster_name,
            f"[{style}]{entry.health.value}[/{style}]",
            workloads or "-",
            entry.error or "",
        )
    return _render(table)


async def run_local(options: RestartOptions) -> MultiClusterRestartResult:
    """
    Restart clusters from this process.

    SIGINT and SIGTERM cancel the run; the summary is still returned.

    Raises:
        ConfigurationError: Kubernetes credentials cannot be loaded
    """
    kube = CrateDBKubeClient.from_kubeconfig(options.kubeconfig, options.context)
    monitor = HealthMonitor(KubeHealthSource(kube))
    if options.dry_run:
        action = DryRunRestartAction()
    else:
        action = PodRestartAction(kube, recreate_timeout=options.recreate_timeout)
    orchestrator = RestartOrchestrator.from_options(RestartSequencer(monitor, action), options)

    loop = asyncio.get_running_loop()
    signals = (signal.SIGINT, signal.SIGTERM)
    for signum in signals:
        loop.add_signal_handler(signum, orchestrator.cancel, f"received {signal.Signals(signum).name}")
    try:
        return await orchestrator.run(kube, options.cluster_names, options.skip_clusters)
    finally:
        for signum in signals:
            loop.remove_signal_handler(signum)


def build_options(ctx: click.Context, config_path: Optional[str], **values) -> RestartOptions:
    """
    Combine command line values, the config file and built-in defaults.

    Values given on the command line (or through the environment) win over the
    config file, which wins over the built-in defaults.
    """
    timeout = values.pop("timeout")
    options = RestartOptions(
        policy=PollPolicy(
            interval=values.pop("poll_interval"),
            timeout=timeout or None,
            max_retries=values.pop("max_retries"),
        ),
        **values,
    )
    if not config_path:
        return options

    explicit = {
        name: True
        for name in ("poll_interval", "timeout", "max_retries", "max_parallel", "run_timeout", "dry_run")
        if ctx.get_parameter_source(name) in (ParameterSource.COMMANDLINE, ParameterSource.ENVIRONMENT)
    }
    return load_config(config_path).apply(options, explicit)


def _exit_on_configuration_error(error: ConfigurationError, log_level: str) -> None:
    logger.error(f"Configuration error: {error}")
    if log_level == "DEBUG":
        logger.exception("Detailed traceback:")
    sys.exit(1)


def _exit_on_api_error(error: BaseException, log_level: str) -> None:
    logger.error(f"Kubernetes API error: {error}")
    if log_level == "DEBUG":
        logger.exception("Detailed traceback:")
    sys.exit(1)


@click.group()
def cli():
    """Health-gated rolling restarts of CrateDB clusters on Kubernetes."""
    pass


def kube_options(func):
    func = click.option("--kubeconfig", help="Path to kubeconfig file", default=None)(func)
    func = click.option(
        "--context",
        help="Kubernetes context to use (default: current-context)",
        default=None,
        envvar="K8S_CONTEXT",
    )(func)
    func = click.option("--log-level", type=click.Choice(LOG_LEVELS), default="INFO", help="Log level")(func)
    return func


def temporal_options(func):
    func = click.option(
        "--temporal-address",
        default=DEFAULT_TEMPORAL_ADDRESS,
        help="Temporal server address",
        envvar="TEMPORAL_ADDRESS",
    )(func)
    func = click.option(
        "--task-queue",
        default=DEFAULT_TASK_QUEUE,
        help="Temporal task queue name",
        envvar="TEMPORAL_TASK_QUEUE",
    )(func)
    return func


@cli.command("list")
@click.argument("cluster_names", nargs=-1)
@kube_options
@click.option("--owner-label", default="crate-cluster", help="Workload label naming the owning cluster")
def list_clusters(cluster_names, kubeconfig, context, log_level, owner_label):
    """List CrateDB clusters with their health and restartable workloads."""
    setup_logging(log_level)

    async def discover():
        kube = CrateDBKubeClient.from_kubeconfig(kubeconfig, context)
        return await discover_plans(kube, WorkloadResolver(owner_label=owner_label), list(cluster_names) or None)

    try:
        plans = asyncio.run(discover())
    except ConfigurationError as e:
        _exit_on_configuration_error(e, log_level)
    except TRANSIENT_ERRORS as e:
        _exit_on_api_error(e, log_level)

    if not plans:
        console.print("No CrateDB clusters found.")
        return
    click.echo(render_plans(plans))


@cli.command()
@click.argument("cluster_names", nargs=-1)
@kube_options
@click.option("--poll-interval", type=click.FloatRange(min=0, min_open=True), default=10.0, show_default=True,
              help="Seconds between health checks")
@click.option("--timeout", type=click.FloatRange(min=0), default=0, show_default=True,
              help="Max seconds per health gate, 0 waits forever")
@click.option("--max-retries", type=click.IntRange(min=0), default=3, show_default=True,
              help="Consecutive failed health queries tolerated")
@click.option("--max-parallel", type=click.IntRange(min=1), default=1, show_default=True,
              help="Clusters restarted at the same time")
@click.option("--run-timeout", type=click.FloatRange(min=0, min_open=True), default=None,
              help="Cancel the whole run after this many seconds")
@click.option("--dry-run", is_flag=True, help="Run the health gates but do not delete any pod")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Restart configuration file (TOML)")
@click.option("--output-format", type=click.Choice(["text", "json", "yaml"]), default="text",
              help="Output format for the report")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation when restarting all clusters")
@click.option("--temporal", "use_temporal", is_flag=True, help="Run as a Temporal workflow")
@click.option("--async", "async_execution", is_flag=True, help="With --temporal: start the workflow and return")
@temporal_options
@click.pass_context
def restart(ctx, cluster_names, kubeconfig, context, log_level, poll_interval, timeout, max_retries,
            max_parallel, run_timeout, dry_run, config_path, output_format, yes, use_temporal,
            async_execution, temporal_address, task_queue):
    """Restart CrateDB clusters one member at a time, gated on cluster health.

    CLUSTER_NAMES: CrateDB clusters to restart, all clusters when omitted.

    Examples:
      rollgate restart --context prod cluster1 cluster2     # Restart specific clusters
      rollgate restart --context prod --dry-run             # Show what would be done for all clusters
      rollgate restart --context prod --temporal cluster1   # Run as a Temporal workflow
    """
    setup_logging(log_level)

    for name in cluster_names:
        if name.startswith("-"):
            logger.error(f"Found '{name}' in cluster names - this looks like a misplaced option!")
            sys.exit(1)

    try:
        options = build_options(
            ctx,
            config_path,
            kubeconfig=kubeconfig,
            context=context,
            cluster_names=list(cluster_names) or None,
            dry_run=dry_run,
            poll_interval=poll_interval,
            timeout=timeout,
            max_retries=max_retries,
            max_parallel=max_parallel,
            run_timeout=run_timeout,
            output_format=output_format,
            log_level=log_level,
        )
    except ConfigurationError as e:
        _exit_on_configuration_error(e, log_level)

    if options.cluster_names is None and not options.dry_run and not yes:
        console.print("[yellow]WARNING: You are about to restart ALL CrateDB clusters.[/yellow]")
        if not click.confirm("Are you sure you want to proceed?", default=False):
            logger.info("Operation cancelled by user")
            sys.exit(0)

    if use_temporal:
        try:
            result = asyncio.run(_restart_temporal(options, temporal_address, task_queue, async_execution))
        except Exception as e:
            logger.error(f"Temporal error: {e}")
            if log_level == "DEBUG":
                logger.exception("Detailed traceback:")
            sys.exit(1)
        if result is None:
            sys.exit(0)
    else:
        try:
            result = asyncio.run(run_local(options))
        except ConfigurationError as e:
            _exit_on_configuration_error(e, log_level)
        except TRANSIENT_ERRORS as e:
            _exit_on_api_error(e, log_level)

    click.echo(generate_report(result, output_format))
    if result.failed_clusters > 0:
        logger.warning(f"{result.failed_clusters} cluster(s) failed to restart")
        sys.exit(1)
    logger.success(f"Successfully restarted {result.successful_clusters} cluster(s)")


async def _restart_temporal(
    options: RestartOptions, temporal_address: str, task_queue: str, async_execution: bool
) -> Optional[MultiClusterRestartResult]:
    async with TemporalClient(temporal_address, task_queue) as temporal_client:
        if not async_execution:
            return await temporal_client.restart_clusters(options, wait_for_completion=True)
        handle = await temporal_client.restart_clusters(options, wait_for_completion=False)
        console.print("[green]Workflow started successfully![/green]")
        console.print(f"Workflow ID: {handle.id}")
        console.print(f"You can check the status using: rollgate status {handle.id}")
        return None


@cli.command()
@temporal_options
@click.option("--log-level", type=click.Choice(LOG_LEVELS), default="INFO", help="Log level")
def worker(temporal_address, task_queue, log_level):
    """Run a Temporal worker for rolling restart workflows."""
    setup_logging(log_level)
    try:
        asyncio.run(run_worker(temporal_address, task_queue))
    except Exception as e:
        logger.error(f"Worker error: {e}")
        sys.exit(1)


@cli.command()
@click.argument("workflow_id")
@temporal_options
def status(workflow_id, temporal_address, task_queue):
    """Check the status of a rolling restart workflow."""

    async def check_status():
        async with TemporalClient(temporal_address, task_queue) as temporal_client:
            return await temporal_client.get_workflow_status(workflow_id)

    try:
        status_info = asyncio.run(check_status())
    except Exception as e:
        console.print(f"[red]Error checking workflow status: {e}[/red]")
        sys.exit(1)

    table = Table(title=f"Workflow Status: {workflow_id}", show_header=True, header_style="bold magenta")
    table.add_column("Attribute", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Workflow ID", status_info["workflow_id"])
    table.add_row("Status", status_info["status"])
    table.add_row("Run ID", status_info["run_id"])
    table.add_row("Workflow Type", str(status_info["workflow_type"]))
    table.add_row("Task Queue", status_info["task_queue"])
    table.add_row("Start Time", str(status_info["start_time"]))
    table.add_row("Close Time", str(status_info["close_time"]) if status_info["close_time"] else "Running")
    console.print(table)
    if status_info["plans"]:
        click.echo(render_plans(status_info["plans"]))


@cli.command()
@click.argument("workflow_id")
@click.option("--reason", default="Operator cancel via CLI", help="Reason for cancelling the run")
@temporal_options
def cancel(workflow_id, reason, temporal_address, task_queue):
    """Cancel a running rolling restart; the active health gate exits and a summary is produced."""

    async def cancel_wf():
        async with TemporalClient(temporal_address, task_queue) as temporal_client:
            await temporal_client.cancel_workflow(workflow_id, reason)

    try:
        asyncio.run(cancel_wf())
    except Exception as e:
        console.print(f"[red]Error cancelling workflow: {e}[/red]")
        sys.exit(1)
    console.print(f"[green]Cancel signal sent to workflow {workflow_id}[/green]")


@cli.command()
@click.option("--output", "-o", default="rollgate.toml", type=click.Path(), help="Output file path")
def create_config(output):
    """Create a sample restart configuration file."""
    try:
        create_sample_config(output)
    except OSError as e:
        console.print(f"[red]Error creating configuration: {e}[/red]")
        sys.exit(1)
    console.print(f"[green]Sample restart configuration created: {output}[/green]")
    console.print("Use it with: rollgate restart --config " + output)


if __name__ == "__main__":
    cli()
