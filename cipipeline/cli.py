"""Command-line interface for cipipeline."""

import click
import logging
import logging.handlers
import sys
import json
import yaml
from pathlib import Path
from typing import Optional, Tuple
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TimeElapsedColumn
from rich.table import Table
from rich.panel import Panel

from . import __version__
from .adapters import load_trivy_report
from .config.manager import ConfigManager
from .config.schema import LoggingConfig, PipelineConfig, ValidationError
from .core.errors import GateFailure, PipelineError
from .core.gates import GateEvaluator, GatePolicy
from .core.interfaces import PipelineStatus, Severity, StageResult, StageStatus
from .core.run import PipelineRun
from .core.run_log import RunLog


# Initialize rich console for better output formatting
console = Console()

EXIT_FAILED = 1
EXIT_CANCELLED = 130

STATUS_STYLES = {
    "succeeded": "green",
    "success": "green",
    "failed": "red",
    "failure": "red",
    "cancelled": "yellow",
    "skipped": "yellow",
    "running": "blue",
    "pending": "dim",
}


def _parse_size(value: str) -> int:
    units = {"KB": 1024, "MB": 1024 ** 2, "GB": 1024 ** 3}
    value = value.strip().upper()
    for suffix, factor in units.items():
        if value.endswith(suffix):
            return int(float(value[:-len(suffix)]) * factor)
    return int(value)


def setup_logging(verbose: bool = False, log_file: Optional[str] = None,
                  logging_config: Optional[LoggingConfig] = None):
    """Setup logging configuration."""
    logging_config = logging_config or LoggingConfig()
    level = logging.DEBUG if verbose else getattr(logging, logging_config.level)

    # Configure root logger
    logging.basicConfig(
        level=level,
        format=logging_config.format,
        handlers=[
            logging.StreamHandler(sys.stderr)
        ],
        force=True
    )

    # Add file handler if specified
    log_file = log_file or logging_config.file_path
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=_parse_size(logging_config.max_file_size),
            backupCount=logging_config.backup_count
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(logging_config.format))
        logging.getLogger().addHandler(file_handler)


@click.group(invoke_without_command=True)
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.option('--log-file', type=click.Path(), help='Log file path')
@click.option('--version', is_flag=True, help='Show version and exit')
@click.pass_context
def cli(ctx, verbose: bool, log_file: Optional[str], version: bool):
    """cipipeline - DAG-based CI/CD pipeline orchestration."""
    if version:
        console.print(f"cipipeline version {__version__}")
        sys.exit(0)

    # If no command is provided, show help
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        return

    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    ctx.obj['log_file'] = log_file

    setup_logging(verbose, log_file)


@cli.command()
@click.option('--config', '-c', required=True, type=click.Path(exists=True),
              help='Path to pipeline configuration file')
@click.option('--run-id', type=str, help='Custom run ID')
@click.option('--max-workers', type=int, help='Override the executor worker count')
@click.option('--dry-run', is_flag=True, help='Validate and show the execution plan without running')
@click.pass_context
def run(ctx, config: str, run_id: Optional[str], max_workers: Optional[int], dry_run: bool):
    """Run a pipeline from a configuration file."""
    ctx.ensure_object(dict)
    verbose = ctx.obj.get('verbose', False)

    try:
        with console.status("[bold green]Loading configuration..."):
            config_manager = ConfigManager()
            pipeline_config = config_manager.load_config(config)
            graph = config_manager.build_graph(pipeline_config)

        setup_logging(verbose, ctx.obj.get('log_file'), pipeline_config.logging)
        console.print(f"[green]✓[/green] Configuration loaded: {pipeline_config.pipeline.name}")

        if dry_run:
            console.print("[yellow]Dry run mode - no stage will be executed[/yellow]")
            _display_execution_plan(graph.execution_levels())
            return

        executor = config_manager.build_executor(pipeline_config, max_workers=max_workers)
        settings = config_manager.build_settings(pipeline_config)

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TimeElapsedColumn(),
            console=console
        ) as progress:

            task = progress.add_task(f"Running {pipeline_config.pipeline.name}...", total=len(graph))

            def on_stage_complete(stage_id: str, result: StageResult):
                progress.advance(task)
                progress.console.print(f"  {_stage_line(stage_id, result)}")

            try:
                pipeline_run = executor.run(
                    graph,
                    pipeline_name=pipeline_config.pipeline.name,
                    run_id=run_id,
                    settings=settings,
                    on_stage_complete=on_stage_complete,
                )
            except KeyboardInterrupt:
                console.print("[yellow]Pipeline cancelled[/yellow]")
                sys.exit(EXIT_CANCELLED)

        _display_run(pipeline_run)

        if pipeline_run.status is PipelineStatus.CANCELLED:
            sys.exit(EXIT_CANCELLED)
        if pipeline_run.status is not PipelineStatus.SUCCEEDED:
            sys.exit(EXIT_FAILED)

    except (PipelineError, ValidationError, ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        if verbose:
            console.print_exception()
        sys.exit(EXIT_FAILED)


@cli.command()
@click.option('--config', '-c', required=True, type=click.Path(exists=True),
              help='Path to pipeline configuration file to validate')
def validate(config: str):
    """Validate a pipeline configuration file."""

    try:
        with console.status("[bold green]Validating configuration..."):
            config_manager = ConfigManager()
            validation_result = config_manager.validate_schema(
                config_manager.resolve_variables(config_manager._load_raw_config(Path(config)) or {})
            )

        if not validation_result.valid:
            console.print(f"[red]✗[/red] Configuration is invalid: {config}")
            console.print("\n[red]Errors:[/red]")
            for error in validation_result.errors:
                console.print(f"  [red]•[/red] {error}")
            sys.exit(EXIT_FAILED)

        graph = config_manager.build_graph(validation_result.config)
        console.print(f"[green]✓[/green] Configuration is valid: {config}")

        if validation_result.warnings:
            console.print("\n[yellow]Warnings:[/yellow]")
            for warning in validation_result.warnings:
                console.print(f"  [yellow]•[/yellow] {warning}")

        _display_config_summary(validation_result.config)
        _display_execution_plan(graph.execution_levels())

    except (PipelineError, ValidationError, ValueError) as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        sys.exit(EXIT_FAILED)


@cli.command()
@click.option('--output', '-o', type=click.Path(), default='./pipeline.yaml',
              help='Output path for configuration template')
@click.option('--format', type=click.Choice(['yaml', 'json']), default='yaml',
              help='Output format')
def init(output: str, format: str):
    """Initialize a new pipeline configuration template."""

    try:
        config_manager = ConfigManager()
        default_config = config_manager.get_default_config()

        output_path = Path(output)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w') as f:
            if format == 'yaml':
                yaml.dump(default_config, f, default_flow_style=False, indent=2, sort_keys=False)
            else:
                json.dump(default_config, f, indent=2)

        console.print(f"[green]✓[/green] Configuration template created: {output_path}")

        panel = Panel(
            f"""[bold]Next Steps:[/bold]

1. Edit the configuration file: {output_path}
2. Export the credentials it references (SONAR_TOKEN, DOCKERHUB_TOKEN, ...)
3. Validate it: cipipeline validate --config {output_path}
4. Run it: cipipeline run --config {output_path}

[dim]For more help, run: cipipeline --help[/dim]""",
            title="Getting Started",
            border_style="green"
        )
        console.print(panel)

    except OSError as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        sys.exit(EXIT_FAILED)


@cli.command()
@click.option('--runs-dir', type=click.Path(), default='.cipipeline/runs', help='Run log directory')
@click.option('--limit', type=int, default=10, help='Limit number of results')
@click.option('--status', type=click.Choice([s.value for s in PipelineStatus]),
              help='Filter by status')
@click.option('--format', type=click.Choice(['table', 'json']), default='table',
              help='Output format')
def history(runs_dir: str, limit: int, status: Optional[str], format: str):
    """List recorded pipeline runs, newest first."""

    runs = RunLog(runs_dir).list_runs(limit=limit, status=status)

    if format == 'json':
        click.echo(json.dumps(runs, indent=2))
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Run ID", style="cyan")
    table.add_column("Pipeline", style="green")
    table.add_column("Status")
    table.add_column("Stages", style="dim")
    table.add_column("Duration", style="blue")

    for entry in runs:
        run_status = entry.get('status', 'unknown')
        style = STATUS_STYLES.get(run_status, "white")
        stages = ", ".join(f"{count} {name}" for name, count in entry.get('stages', {}).items() if count)
        duration = "N/A"
        if entry.get('started_at') and entry.get('finished_at'):
            duration = f"{entry['finished_at'] - entry['started_at']:.1f}s"
        table.add_row(entry['run_id'], entry.get('pipeline_name', ''),
                      f"[{style}]{run_status}[/{style}]", stages, duration)

    console.print(table)
    console.print(f"\n[dim]Showing {len(runs)} runs[/dim]")


@cli.command()
@click.argument('run_id')
@click.option('--runs-dir', type=click.Path(), default='.cipipeline/runs', help='Run log directory')
@click.option('--format', type=click.Choice(['table', 'json']), default='table',
              help='Output format')
def show(run_id: str, runs_dir: str, format: str):
    """Show the stages, findings and artifacts of one run."""

    pipeline_run = RunLog(runs_dir).load(run_id)
    if pipeline_run is None:
        console.print(f"[red]Error:[/red] Run not found: {run_id}")
        sys.exit(EXIT_FAILED)

    if format == 'json':
        click.echo(json.dumps(pipeline_run.to_dict(), indent=2, default=str))
        return

    _display_run(pipeline_run)


@cli.command('check-report')
@click.argument('report', type=click.Path(exists=True))
@click.option('--fail-on', type=click.Choice([s.value for s in Severity], case_sensitive=False),
              help='Fail when any finding is at or above this severity')
@click.option('--max-critical', type=int, help='Maximum tolerated CRITICAL findings')
@click.option('--max-high', type=int, help='Maximum tolerated HIGH findings')
@click.option('--category', 'categories', multiple=True,
              help='Only consider these finding categories (repeatable)')
def check_report(report: str, fail_on: Optional[str], max_critical: Optional[int],
                 max_high: Optional[int], categories: Tuple[str, ...]):
    """Judge an existing Trivy JSON report against a gate policy."""

    max_counts = {}
    if max_critical is not None:
        max_counts[Severity.CRITICAL] = max_critical
    if max_high is not None:
        max_counts[Severity.HIGH] = max_high

    policy = GatePolicy(name="check-report", fail_on=fail_on, max_counts=max_counts,
                        categories=list(categories))

    try:
        findings = load_trivy_report(report)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error:[/red] Could not read report {report}: {e}")
        sys.exit(EXIT_FAILED)

    _display_findings(findings)
    console.print(f"[blue]Policy:[/blue] {policy.describe()}")

    outcome = GateEvaluator().evaluate(StageResult.success(findings=findings), policy)
    try:
        outcome.raise_for_failure()
    except GateFailure as e:
        console.print(f"[red]✗[/red] {e.message}")
        sys.exit(EXIT_FAILED)

    console.print("[green]✓[/green] Report passes the gate")


def _stage_line(stage_id: str, result: StageResult) -> str:
    style = STATUS_STYLES.get(result.status.value, "white")
    line = f"[{style}]{result.status.value:<8}[/{style}] {stage_id}"
    if result.reason:
        line += f" [dim]({result.reason.value})[/dim]"
    if result.status is StageStatus.FAILURE and not result.blocking:
        line += " [dim]non-blocking[/dim]"
    return line


def _display_execution_plan(levels):
    """Display the stages grouped by parallel execution level."""
    console.print("\n[bold]Execution Plan:[/bold]")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Level", style="cyan")
    table.add_column("Stages", style="green")

    for index, stage_ids in enumerate(levels):
        table.add_row(str(index), ", ".join(stage_ids))

    console.print(table)


def _display_config_summary(config: PipelineConfig):
    """Display configuration summary."""
    console.print("\n[bold]Configuration Summary:[/bold]")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Pipeline Name", config.pipeline.name)
    table.add_row("Stages", str(len(config.stages)))
    table.add_row("Max Workers", str(config.executor.max_workers))
    table.add_row("Default Timeout",
                  f"{config.executor.default_timeout}s" if config.executor.default_timeout else "none")
    table.add_row("Gated Stages", ", ".join(s.id for s in config.stages if s.gate) or "none")
    table.add_row("Notification Channels",
                  ", ".join(c.name or c.type for c in config.notifications.channels) or "log")

    console.print(table)


def _display_findings(findings):
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Category", style="cyan")
    table.add_column("Severity")
    table.add_column("Count", style="blue")

    for finding in findings:
        table.add_row(finding.category, finding.severity.value, str(finding.count))

    console.print(table)


def _display_run(pipeline_run: PipelineRun):
    """Display a finished run."""
    style = STATUS_STYLES.get(pipeline_run.status.value, "white")
    console.print(f"\n[bold]Run {pipeline_run.run_id}[/bold] ({pipeline_run.pipeline_name}): "
                  f"[{style}]{pipeline_run.status.value}[/{style}]")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Stage", style="cyan")
    table.add_column("Status")
    table.add_column("Reason", style="dim")
    table.add_column("Findings", style="blue")
    table.add_column("Duration", style="blue")
    table.add_column("Message")

    for stage_id in pipeline_run.stage_order:
        result = pipeline_run.result(stage_id)
        if result is None:
            table.add_row(stage_id, pipeline_run.stage_status(stage_id).value, "", "", "", "")
            continue
        stage_style = STATUS_STYLES.get(result.status.value, "white")
        counts = result.severity_counts()
        findings = ", ".join(f"{count} {severity.value}" for severity, count in counts.items() if count)
        table.add_row(
            stage_id,
            f"[{stage_style}]{result.status.value}[/{stage_style}]",
            result.reason.value if result.reason else "",
            findings,
            f"{result.duration:.1f}s" if result.duration is not None else "",
            (result.message or "")[:80],
        )

    console.print(table)

    if pipeline_run.artifacts:
        artifacts = Table(show_header=True, header_style="bold magenta")
        artifacts.add_column("Artifact", style="cyan")
        artifacts.add_column("Value", style="green")
        for key, ref in pipeline_run.artifacts.items():
            artifacts.add_row(key, str(ref.get("value", "")))
        console.print(artifacts)


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
