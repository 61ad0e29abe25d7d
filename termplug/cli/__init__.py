"""
termplug - Command Line Interface

Inspect and exercise plugins from the terminal. Built with Typer, output
with Rich.

Usage:
    $ termplug --help
    $ termplug validate plugins/demo/plugin.toml
    $ termplug info plugins/demo/plugin.toml
    $ termplug run plugins/demo/plugin.toml --event command --name demo:greet
    $ termplug presets
"""

from __future__ import annotations

import logging

import typer

from termplug import __version__
from termplug.cli.output import console, err_console

app = typer.Typer(
    name="termplug",
    help="termplug - sandboxed plugin runtime for terminal applications",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"termplug version {__version__}")
        raise typer.Exit()


def verbose_callback(value: bool) -> None:
    """Set verbose mode."""
    if value:
        logging.basicConfig(level=logging.DEBUG)


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        callback=verbose_callback,
        help="Enable debug logging.",
    ),
) -> None:
    """
    termplug - sandboxed plugin runtime for terminal applications

    Validate manifests, inspect sandbox selection and run single events
    through a plugin. Use --help on any command for details.
    """


from termplug.cli import commands  # noqa: E402,F401

__all__ = ["app", "console", "err_console", "__version__"]
