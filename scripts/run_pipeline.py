#!/usr/bin/env python3
"""
Image Pipeline CLI

Builds the renderer, renders an image, converts it, and removes the intermediate
file, stopping at the first stage that fails.

Commands:
    run     - Execute a pipeline definition
    show    - Print the stages of a pipeline definition without running them
    history - Show recent run events from the event log

Examples:\n

    run_pipeline.py run                               # Built-in pipeline (or $PIPELINE_CONFIG)

    run_pipeline.py run configs/update_image.yaml     # Pipeline from YAML

    run_pipeline.py show configs/update_image.yaml    # Print the commands

    run_pipeline.py history -n 20                     # Last 20 events
"""

import json
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from typing_extensions import Annotated

from imagepipe.contexts.orchestration import execute_pipeline, load_pipeline_config
from imagepipe.contexts.orchestration.config import PipelineConfig, config_path_from_env
from imagepipe.contexts.orchestration.defaults import default_pipeline
from imagepipe.contexts.orchestration.exceptions import PipelineConfigError
from imagepipe.utils.event_logging import get_recent_events
from imagepipe.utils.timestamp import format_timestamp

load_dotenv()


app = typer.Typer(
    help="Run a fail-fast build/render/convert pipeline with cleanup on success",
    add_completion=False,
    invoke_without_command=True,
)


def resolve_config(config_file: Optional[Path]) -> PipelineConfig:
    """Explicit file, else $PIPELINE_CONFIG, else the built-in pipeline."""
    if config_file is None:
        config_file = config_path_from_env()
    if config_file is None:
        return default_pipeline()
    return load_pipeline_config(config_file)


@app.callback()
def main(ctx: typer.Context):
    """Show help by default when no command is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command("run")
def run_command(
    config_file: Annotated[
        Optional[Path],
        typer.Argument(help="Pipeline YAML (default: $PIPELINE_CONFIG or built-in pipeline)"),
    ] = None,
    log_dir: Annotated[
        Optional[Path],
        typer.Option(
            "--log-dir",
            "-l",
            help="Directory for pipeline.log (default: $LOGS_PATH/<run id>)",
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show debug output on the console"),
    ] = False,
):
    """
    Execute a pipeline.

    Stages run in order; the first failing stage stops the run and its exit code
    becomes this command's exit code. The cleanup stage runs only when every
    other stage succeeded.

    Examples:\n

        $ run_pipeline.py run                              # Built-in pipeline

        $ run_pipeline.py run configs/update_image.yaml    # Pipeline from YAML

        $ run_pipeline.py run -v -l outs/logs/debug        # Verbose, fixed log dir
    """
    try:
        config = resolve_config(config_file)
    except PipelineConfigError as e:
        typer.secho(f"Error: {e}\n", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    result = execute_pipeline(config, log_dir=log_dir, verbose=verbose)

    typer.echo("")
    if result.success:
        typer.secho("✓ Pipeline succeeded", fg=typer.colors.GREEN, bold=True)
    elif result.failed_stage is not None:
        typer.secho(
            f"✗ Stage '{result.failed_stage.name}' failed with exit code {result.exit_code}",
            fg=typer.colors.RED,
            bold=True,
        )
    else:
        typer.secho(
            f"✗ Cleanup failed with exit code {result.exit_code}",
            fg=typer.colors.RED,
            bold=True,
        )

    typer.echo(f"  Stages run: {', '.join(result.executed) or '(none)'}")
    if result.log_dir:
        typer.echo(f"  Log: {result.log_dir / 'pipeline.log'}")
    typer.echo("")

    raise typer.Exit(code=result.exit_code)


@app.command("show")
def show_command(
    config_file: Annotated[
        Optional[Path],
        typer.Argument(help="Pipeline YAML (default: $PIPELINE_CONFIG or built-in pipeline)"),
    ] = None,
):
    """
    Print the commands a pipeline would run, in order, without running them.

    Examples:\n

        $ run_pipeline.py show

        $ run_pipeline.py show configs/update_image.yaml
    """
    try:
        config = resolve_config(config_file)
    except PipelineConfigError as e:
        typer.secho(f"Error: {e}\n", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    source = config.source_path or "built-in pipeline"
    typer.secho(f"\nPipeline: {source}", fg=typer.colors.BLUE, bold=True)
    typer.echo(f"Working directory: {config.working_dir or Path.cwd()}")
    typer.echo("")

    for index, stage in enumerate(config.stages, 1):
        typer.echo(f"  {index}. {stage.name}: {stage.display()}")
    if config.cleanup is not None:
        typer.echo(f"  cleanup. {config.cleanup.name}: {config.cleanup.display()}")
    else:
        typer.echo("  (no cleanup stage)")
    typer.echo("")


@app.command("history")
def history_command(
    n: int = typer.Option(10, "--num", "-n", help="Number of recent events to show"),
    run_id: Optional[str] = typer.Option(
        None, "--run", "-r", help="Filter to events for this run"
    ),
    event_type: Optional[str] = typer.Option(
        None, "--event-type", "-e", help="Filter to events of this type"
    ),
    compact: bool = typer.Option(
        False, "--compact", "-c", help="Print one event per line (no pretty formatting)"
    ),
    events_file: Optional[Path] = typer.Option(
        None, "--events-file", help="Event log (default: $PIPELINE_EVENTS_FILE)"
    ),
):
    """
    Show the last n events from the run event log.

    Examples:\n

        $ run_pipeline.py history                     # Last 10 events

        $ run_pipeline.py history -e stage_failed     # Last 10 stage failures

        $ run_pipeline.py history -r run_20251114_123456_3f9a1c
    """
    events = get_recent_events(n, run_id=run_id, event_type=event_type, events_file=events_file)

    if not events:
        typer.echo("No events found.")
        raise typer.Exit()

    for event in events:
        if compact:
            typer.echo(json.dumps(event))
            continue

        timestamp = format_timestamp(event.get("timestamp", ""))
        header = f"{timestamp}  {event.get('event_type')}  {event.get('run_id')}"
        typer.secho(header, fg=typer.colors.BLUE, bold=True)
        for key, value in event.items():
            if key in ("timestamp", "event_type", "run_id"):
                continue
            typer.echo(f"    {key}: {value}")


if __name__ == "__main__":
    app()
