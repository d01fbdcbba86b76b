"""Whif: proposal impact analysis over a resilient, metered LLM pipeline."""

__version__ = "0.1.0"
