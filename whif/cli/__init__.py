"""Operator CLI for Whif."""

from .app import app

__all__ = ["app"]
