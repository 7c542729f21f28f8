"""Shared CLI helpers."""

from __future__ import annotations

from collections.abc import Callable

import typer
from rich.console import Console

__all__ = ["console", "create_cli", "error_console", "version_callback"]

console = Console()
error_console = Console(stderr=True)


def create_cli(name: str, help_text: str, *, no_args_is_help: bool = False) -> typer.Typer:
    """Create a Typer app with the project's common settings."""
    return typer.Typer(
        name=name,
        help=help_text,
        no_args_is_help=no_args_is_help,
        add_completion=False,
        pretty_exceptions_show_locals=False,
    )


def version_callback(name: str, version: str) -> Callable[[bool | None], None]:
    """Build an eager --version option callback."""

    def callback(value: bool | None) -> None:
        if value:
            console.print(f"{name} {version}")
            raise typer.Exit()

    return callback
