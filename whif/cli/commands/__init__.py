"""CLI commands for Whif."""

from . import (
    analyze,
    ledger,
    usage,
    config_cmd,
)

__all__ = [
    "analyze",
    "ledger",
    "usage",
    "config_cmd",
]
