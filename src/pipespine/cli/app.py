"""
Root Typer application for the pipespine CLI.

Usage::

    pipespine run --config pipeline.yaml            # bring the stack up
    pipespine run --config pipeline.yaml --dry-run  # validate and plan only
    pipespine plan --config pipeline.yaml           # print bring-up stages
    pipespine down --config pipeline.yaml           # stop the stack
"""

from __future__ import annotations

import typer
from typer import Typer

from pipespine import __version__
from pipespine.cli.deploy import down, plan, run

app = Typer(
    name="pipespine",
    help="pipespine: dependency-aware bring-up for CDC pipeline stacks.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"pipespine {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """pipespine CLI: start services in order, wait for health, register connectors."""


app.command("run")(run)
app.command("plan")(plan)
app.command("down")(down)
