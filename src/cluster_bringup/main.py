"""Main entry point for the cluster bring-up CLI."""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from cluster_bringup import __version__
from cluster_bringup.config import Settings, get_settings
from cluster_bringup.core.artifacts import ReportLog
from cluster_bringup.core.executor import StageExecutor
from cluster_bringup.core.graph import PipelineController
from cluster_bringup.core.state import PipelineReport, PipelineStatus, StageStatus
from cluster_bringup.definitions import PipelineDefinition, build_stages, load_definition
from cluster_bringup.exceptions import BringupError, DefinitionError, PipelineConfigError
from cluster_bringup.kube.kubectl import KubectlClient
from cluster_bringup.operator import AutoAcknowledgeOperator, ConsoleOperator

console = Console()
logger = logging.getLogger(__name__)

STATUS_STYLES = {
    StageStatus.SUCCEEDED: "green",
    StageStatus.FAILED: "red",
    StageStatus.SKIPPED: "yellow",
    StageStatus.CANCELLED: "magenta",
    StageStatus.PENDING: "dim",
}

EXIT_PARTIALLY_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_ABORTED = 130


def configure_logging(level: str) -> None:
    """Route logging through rich."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        handler = RichHandler(console=console, rich_tracebacks=True, show_path=False)
        handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
        root.addHandler(handler)


def print_banner(settings: Settings) -> None:
    """Print the application banner."""
    banner = Text()
    banner.append("Cluster Bring-up", style="bold blue")
    banner.append(f" v{__version__}\n", style="dim")
    banner.append("Staged Kubernetes provisioning with remediation and resumption", style="italic")

    console.print(Panel(banner, title=f"[bold]{settings.project_name}[/bold]", border_style="blue"))


def _load(pipeline: Optional[str], settings: Settings) -> PipelineDefinition:
    path = Path(pipeline) if pipeline else settings.pipeline_path
    try:
        return load_definition(path)
    except DefinitionError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(EXIT_CONFIG_ERROR) from e


def render_report(report: PipelineReport) -> None:
    """Print a report as a table followed by the failure summary."""
    table = Table(title=f"Run {report.run_id} ({report.pipeline})")
    table.add_column("Stage", style="cyan")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Notes")

    for run in report.stages:
        style = STATUS_STYLES.get(run.status, "")
        status = run.status.value
        if run.degraded:
            status += " (degraded)"
            style = "yellow"
        if run.stage_id in report.reused_stage_ids:
            status += " (reused)"
        notes = run.note or run.error or ""
        table.add_row(
            run.stage_id,
            f"[{style}]{status}[/{style}]" if style else status,
            str(run.attempts),
            f"{run.duration_seconds:.0f}s",
            notes[:120],
        )
    console.print(table)

    color = {
        PipelineStatus.COMPLETED: "green",
        PipelineStatus.PARTIALLY_FAILED: "red",
        PipelineStatus.ABORTED: "magenta",
    }.get(report.status, "white")
    console.print(f"[bold]Pipeline:[/bold] [{color}]{report.status.value}[/{color}]")
    if report.resumed_from:
        console.print(f"[dim]Resumed from run {report.resumed_from}[/dim]")

    failures = report.failure_summary()
    if failures:
        console.print(Panel.fit("\n".join(failures), title="Failures", border_style="red"))


def exit_code_for(report: PipelineReport) -> int:
    if report.status == PipelineStatus.COMPLETED:
        return 0
    if report.status == PipelineStatus.ABORTED:
        return EXIT_ABORTED
    return EXIT_PARTIALLY_FAILED


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Cluster bring-up - provision a Kubernetes cluster stage by stage."""
    pass


@cli.command()
@click.option("--pipeline", "-p", type=click.Path(dir_okay=False), help="Pipeline definition YAML")
@click.option("--resume", is_flag=True, help="Resume the latest (or --run-id) report")
@click.option("--run-id", help="Report to resume instead of the latest")
@click.option("--resume-from", help="Re-enter at this stage and replay its unfinished descendants")
@click.option("--yes", "-y", is_flag=True, help="Auto-acknowledge manual steps")
def run(
    pipeline: Optional[str],
    resume: bool,
    run_id: Optional[str],
    resume_from: Optional[str],
    yes: bool,
) -> None:
    """Run the bring-up pipeline."""
    settings = get_settings()
    configure_logging(settings.log_level)
    definition = _load(pipeline, settings)
    reports = ReportLog(settings.report_path)
    print_banner(settings)

    prior: Optional[PipelineReport] = None
    if resume or run_id or resume_from:
        prior_id = run_id or reports.latest_run_id()
        if prior_id is None:
            console.print("[red]Error:[/red] no previous run to resume")
            raise SystemExit(EXIT_CONFIG_ERROR)
        try:
            prior = reports.load(prior_id)
        except BringupError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise SystemExit(EXIT_CONFIG_ERROR) from e
        if prior.pipeline != definition.name:
            console.print(
                f"[red]Error:[/red] run {prior_id} belongs to pipeline {prior.pipeline}, not {definition.name}"
            )
            raise SystemExit(EXIT_CONFIG_ERROR)

    console.print(f"\n[green]Environment:[/green] {settings.environment.value.upper()}")
    console.print(f"[green]Pipeline:[/green] {definition.name} ({len(definition.stages)} stages)")
    if prior is not None:
        console.print(f"[green]Resuming:[/green] {prior.run_id}" + (f" from {resume_from}" if resume_from else ""))
    console.print()

    async def run_pipeline() -> PipelineReport:
        cancel = asyncio.Event()
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, cancel.set)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handlers unavailable; Ctrl-C will interrupt without cleanup")

        client = KubectlClient(settings)
        operator = AutoAcknowledgeOperator(console) if yes else ConsoleOperator(console)
        stages = build_stages(definition, client, operator, settings, cancel)
        controller = PipelineController(
            StageExecutor(client),
            max_concurrency=settings.max_concurrency,
            name=definition.name,
            on_stage_complete=reports.append_stage,
        )
        try:
            return await controller.execute(stages, prior=prior, resume_from=resume_from, cancel=cancel)
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass

    try:
        report = asyncio.run(run_pipeline())
    except PipelineConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(EXIT_CONFIG_ERROR) from e

    reports.append_pipeline(report)
    summary = reports.save_summary(report)
    console.print()
    render_report(report)
    console.print(f"[dim]Report: {reports.log_path(report.run_id)} (summary {summary})[/dim]")
    raise SystemExit(exit_code_for(report))


@cli.command()
@click.option("--pipeline", "-p", type=click.Path(dir_okay=False), help="Pipeline definition YAML")
def validate(pipeline: Optional[str]) -> None:
    """Validate a pipeline definition and its stage graph."""
    settings = get_settings()
    definition = _load(pipeline, settings)
    console.print(
        f"[green]Pipeline {definition.name} is valid:[/green] "
        f"{len(definition.stages)} stages, order {' -> '.join(definition.order())}"
    )


@cli.command()
@click.option("--pipeline", "-p", type=click.Path(dir_okay=False), help="Pipeline definition YAML")
def graph(pipeline: Optional[str]) -> None:
    """Print the stage graph as a Mermaid diagram."""
    settings = get_settings()
    definition = _load(pipeline, settings)
    console.print("\n[bold]Pipeline Graph:[/bold]")
    console.print(f"```mermaid\n{definition.to_mermaid()}\n```", markup=False)
    console.print("\n[bold]Execution order:[/bold]")
    for number, stage_id in enumerate(definition.order(), start=1):
        console.print(f"  {number}. {stage_id}")


@cli.command()
@click.option("--run-id", help="Run to show instead of the latest")
def report(run_id: Optional[str]) -> None:
    """Show a persisted run report."""
    settings = get_settings()
    reports = ReportLog(settings.report_path)
    run_id = run_id or reports.latest_run_id()
    if run_id is None:
        console.print(f"[yellow]No runs recorded in {reports.report_dir}[/yellow]")
        return
    try:
        loaded = reports.load(run_id)
    except BringupError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(EXIT_CONFIG_ERROR) from e
    render_report(loaded)


@cli.command()
def status() -> None:
    """Show the effective configuration."""
    settings = get_settings()
    mirrors = ", ".join(f"{k} -> {v}" for k, v in settings.registry_mirror_map.items()) or "none"

    console.print(Panel.fit(
        f"""[bold]Environment:[/bold] {settings.environment.value.upper()}
[bold]Pipeline:[/bold] {settings.pipeline_path}
[bold]Kubeconfig:[/bold] {settings.kubeconfig or '(kubectl default)'}
[bold]Reports:[/bold] {settings.report_path}
[bold]Concurrency:[/bold] {settings.max_concurrency}
[bold]Stage defaults:[/bold] timeout {settings.default_stage_timeout_seconds:.0f}s, \
{settings.default_max_attempts} attempts, poll {settings.poll_interval_seconds:.0f}s
[bold]Registry mirrors:[/bold] {mirrors}
""",
        title="Bring-up Status",
        border_style="green",
    ))


if __name__ == "__main__":
    cli()
