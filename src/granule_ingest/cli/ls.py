"""
granule-ingest ls - List files on a provider.
"""

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from granule_ingest.cli.sync import read_json
from granule_ingest.exceptions import GranuleIngestError
from granule_ingest.models import Provider
from granule_ingest.sync import list_provider_files
from granule_ingest.utils.logging import setup_logging

app = typer.Typer(name="ls", help="List files on a provider", invoke_without_command=True)

console = Console()


@app.callback()
def ls(
    ctx: typer.Context,
    provider_file: Path = typer.Argument(..., help="Provider JSON ('-' for stdin)"),
    path: str = typer.Argument("", help="Directory on the provider, relative to its path prefix"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """
    List the files directly under PATH on the provider described by PROVIDER_FILE.
    """
    if ctx.invoked_subcommand is not None:
        return

    setup_logging(level="DEBUG" if verbose else "WARNING")
    try:
        provider = Provider.from_dict(read_json(provider_file))
        files = asyncio.run(list_provider_files(provider, path))
    except GranuleIngestError as e:
        typer.echo(f"Error: {type(e).__name__}: {e}", err=True)
        raise typer.Exit(1) from e

    table = Table(title=f"{provider.protocol.value}://{provider.host}{provider.remote_path(path, '')}", show_header=True)
    table.add_column("Name", style="cyan")
    table.add_column("Size", style="green", justify="right")
    for remote in files:
        table.add_row(remote.name, str(remote.size) if remote.size is not None else "-")
    console.print(table)
    console.print(f"[dim]{len(files)} files[/dim]")
