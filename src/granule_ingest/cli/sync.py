"""
granule-ingest sync - Run the sync task on a workflow message.
"""

import json
from pathlib import Path

import typer

from granule_ingest.config import IngestSettings, load_config
from granule_ingest.exceptions import GranuleIngestError
from granule_ingest.task import handler
from granule_ingest.utils.logging import get_logger, setup_logging

logger = get_logger("granule_ingest.cli.sync")

app = typer.Typer(name="sync", help="Stage the granules of a workflow message", invoke_without_command=True)


def read_json(path: Path) -> dict:
    """Read a JSON document from a file, or stdin when path is '-'."""
    try:
        text = typer.get_text_stream("stdin").read() if str(path) == "-" else path.read_text()
        return json.loads(text)
    except (OSError, json.JSONDecodeError) as e:
        typer.echo(f"Error: cannot read {path}: {e}", err=True)
        raise typer.Exit(1) from e


@app.callback()
def sync(
    ctx: typer.Context,
    event_file: Path = typer.Argument(..., help="Workflow message JSON ('-' for stdin)"),
    config_path: Path | None = typer.Option(None, "--config", "-c", help="Config file (default: ./granule-ingest.yaml)"),
    env: str | None = typer.Option(None, help="Environment overlay (dev, staging, prod)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """
    Stage every granule in EVENT_FILE and print the outgoing message.
    """
    if ctx.invoked_subcommand is not None:
        return

    try:
        config = load_config(config_path, env=env)
        settings = IngestSettings.from_config(config)
    except (GranuleIngestError, FileNotFoundError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e

    setup_logging(
        level="DEBUG" if verbose else settings.log_level,
        log_file=settings.log_file,
        json_format=settings.log_json,
    )

    event = read_json(event_file)
    try:
        result = handler(event, settings=settings)
    except GranuleIngestError as e:
        typer.echo(f"Error: {type(e).__name__}: {e}", err=True)
        if e.details:
            typer.echo(json.dumps(e.details, indent=2, default=str), err=True)
        raise typer.Exit(1) from e

    typer.echo(json.dumps(result, indent=2))
