"""
Main CLI entry point.
"""

import typer

from granule_ingest import __version__
from granule_ingest.cli import ls, sync


def version_callback(value: bool):
    """Callback to display version and exit."""
    if value:
        typer.echo(f"granule-ingest version {__version__}")
        raise typer.Exit()


app = typer.Typer(
    name="granule-ingest",
    help="Granule ingest - stage science data files from remote providers",
    add_completion=True,
)

app.add_typer(sync.app, name="sync")
app.add_typer(ls.app, name="ls")


@app.callback(invoke_without_command=True)
def entrypoint(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=version_callback,
        help="Show version and exit.",
    ),
):
    """
    Granule ingest - stage science data files from remote providers.

    Run 'granule-ingest <command> --help' for help on a specific command.
    """
    if ctx.invoked_subcommand is None and not version:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def main():
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    main()
