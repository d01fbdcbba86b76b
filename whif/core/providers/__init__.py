"""LLM Provider registry and factory.

Provides:
- provider_name_for_model(): map a model name to its provider family
- get_provider(): create a provider instance from a provider name
- get_provider_for_model(): cached provider lookup used by the invocation layer

Providers are cached so their async clients can be reused across calls and
closed cleanly before the event loop shuts down.
"""

import importlib

from ..errors import PermanentProviderError
from ...config import get_api_key_for_provider
from .base import LLMProvider, PromptSpec, ProviderResponse, TokenUsage


# =============================================================================
# Provider Registry
# =============================================================================

# Each entry: (module, class_name, default_kwargs)
# Lazy-imported to avoid loading all SDKs at startup.
_BUILTIN_REGISTRY: dict[str, dict] = {
    "openai": {
        "module": ".openai",
        "class": "OpenAIProvider",
    },
    "anthropic": {
        "module": ".anthropic",
        "class": "AnthropicProvider",
    },
    "gemini": {
        "module": ".openai_compat",
        "class": "OpenAICompatProvider",
        "kwargs": {
            "base_url": "https://generativelanguage.googleapis.com/v1beta/openai/",
            "provider_label": "gemini",
        },
    },
}

# Model name prefix -> provider family
_MODEL_PREFIXES: tuple[tuple[str, str], ...] = (
    ("gpt", "openai"),
    ("o1", "openai"),
    ("claude", "anthropic"),
    ("gemini", "gemini"),
)


def provider_name_for_model(model: str) -> str:
    """Resolve the provider family for a model name.

    Raises:
        PermanentProviderError: If no provider serves the model.
    """
    for prefix, provider_name in _MODEL_PREFIXES:
        if model.startswith(prefix):
            return provider_name
    raise PermanentProviderError(f"Unsupported model: {model}", model=model)


def get_provider(provider_name: str) -> LLMProvider:
    """Create a provider instance by name.

    Raises:
        PermanentProviderError: If the provider is unknown or its API key is
            missing. Neither is fixed by retrying.
    """
    if provider_name not in _BUILTIN_REGISTRY:
        raise PermanentProviderError(
            f"Unknown LLM provider: {provider_name!r}. "
            f"Available: {', '.join(sorted(_BUILTIN_REGISTRY))}"
        )

    entry = _BUILTIN_REGISTRY[provider_name]
    module = importlib.import_module(entry["module"], package=__package__)
    cls = getattr(module, entry["class"])

    kwargs = dict(entry.get("kwargs", {}))
    kwargs["api_key"] = get_api_key_for_provider(provider_name)

    try:
        return cls(**kwargs)
    except ValueError as e:
        raise PermanentProviderError(str(e)) from e


# Cached providers, reused across calls for connection reuse
_cached_providers: dict[str, LLMProvider] = {}


def get_provider_for_model(model: str) -> LLMProvider:
    """Get or create the cached provider serving ``model``."""
    provider_name = provider_name_for_model(model)
    if provider_name not in _cached_providers:
        try:
            _cached_providers[provider_name] = get_provider(provider_name)
        except PermanentProviderError as e:
            e.model = model
            raise
    return _cached_providers[provider_name]


async def close_providers() -> None:
    """Close cached providers' async clients.

    Call this before the event loop shuts down to cleanly release
    HTTP connections and avoid 'Event loop is closed' errors.
    """
    for provider in list(_cached_providers.values()):
        await provider.close_async()
    _cached_providers.clear()


def reset_provider_cache() -> None:
    """Reset the provider cache (for testing)."""
    _cached_providers.clear()


__all__ = [
    "LLMProvider",
    "PromptSpec",
    "ProviderResponse",
    "TokenUsage",
    "provider_name_for_model",
    "get_provider",
    "get_provider_for_model",
    "close_providers",
    "reset_provider_cache",
]
