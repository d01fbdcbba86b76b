"""Core infrastructure for Whif.

This package contains the pieces the analysis pipeline is built on:
- errors: typed failure taxonomy
- invocation: retry / fallback / timeout wrapper around model calls
- tracing: optional per-attempt trace sinks
- providers: model provider adapters (OpenAI, Anthropic, Gemini)
- cost: pricing, usage metering and the balance ledger

Note: providers are not eagerly imported to avoid loading SDKs for
pricing or ledger use. Use:
    from whif.core.invocation import call_with_retry
    from whif.core.providers import get_provider_for_model
"""

__all__ = [
    "cost",
    "errors",
    "invocation",
    "providers",
    "tracing",
]
