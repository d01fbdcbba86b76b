"""Core CLI app definition and global state."""

import json
import logging
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler

app = typer.Typer(
    name="whif",
    help="Analyze proposals for downstream impact, with metered model usage.",
    no_args_is_help=True,
)

console = Console()

# Global state for JSON mode (set by callback)
_json_mode = False


def get_json_mode() -> bool:
    """Get current JSON mode state."""
    return _json_mode


def print_json(data: Any) -> None:
    """Print machine-readable output (Decimals and datetimes as strings)."""
    console.print_json(json.dumps(data, default=str))


def _version_callback(value: bool) -> None:
    if value:
        from .. import __version__

        print(f"whif {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    json_output: Annotated[
        bool,
        typer.Option(
            "--json",
            help="Output machine-readable JSON instead of human-friendly text",
            is_eager=True,
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show debug logging"),
    ] = False,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            help="Show version and exit",
            callback=_version_callback,
            is_eager=True,
        ),
    ] = False,
):
    """Whif: proposal impact analysis.

    Use --json for machine-readable output suitable for scripting.
    """
    global _json_mode
    _json_mode = json_output

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


# Import commands to register them with the app
from .commands import (  # noqa: E402, F401
    analyze,
    ledger,
    usage,
    config_cmd,
)
