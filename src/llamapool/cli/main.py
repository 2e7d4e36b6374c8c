"""llamapool CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from llamapool.cli.ask import ask_cmd, embed_cmd
from llamapool.cli.logs import configure_logging


def _installed_version() -> str:
    try:
        return importlib.metadata.version("llamapool")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"llamapool {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="llamapool",
    help=(
        "llamapool: shared local LLMs with retrieval.\n\n"
        "  llamapool ask     Answer a prompt, optionally grounded in documents.\n"
        "  llamapool embed   Print the embedding of a text."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log debug output to stderr."),
    ] = False,
) -> None:
    """llamapool: shared local LLMs with retrieval."""
    configure_logging(verbose)


app.command("ask")(ask_cmd)
app.command("embed")(embed_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed llamapool version."""
    typer.echo(f"llamapool {_installed_version()}")


if __name__ == "__main__":
    app()
