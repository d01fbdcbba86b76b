"""Abstract base class for LLM providers."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from ..errors import (
    PermanentProviderError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitError,
    TransientProviderError,
    is_throttling_message,
)


@dataclass
class TokenUsage:
    """Token usage from a single LLM API call."""

    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class PromptSpec:
    """What to send for one logical model call.

    When ``response_schema`` is set the provider requests structured output
    and ``ProviderResponse.content`` is the parsed dict; otherwise it is
    plain text.
    """

    text: str
    response_schema: dict | None = None
    schema_name: str = "response"
    max_tokens: int = 4096


@dataclass
class ProviderResponse:
    """Result of one successful provider call."""

    content: Any
    usage: TokenUsage | None
    model: str


def parse_retry_after_ms(headers: Any) -> float | None:
    """Read a retry-after hint (``retry-after-ms`` or ``retry-after`` seconds)."""
    if not headers:
        return None
    try:
        value = headers.get("retry-after-ms")
        if value is not None:
            return float(value)
        value = headers.get("retry-after")
        if value is not None:
            return float(value) * 1000
    except (TypeError, ValueError):
        return None
    return None


def translate_api_error(exc: Exception, model: str) -> ProviderError:
    """Map an SDK exception onto the provider error taxonomy.

    Works for both the openai and anthropic SDKs, which share the same
    exception shape (``status_code`` and ``response.headers`` on status
    errors, a distinct timeout class).
    """
    if isinstance(exc, ProviderError):
        return exc

    message = f"{type(exc).__name__}: {exc}"
    if "Timeout" in type(exc).__name__:
        return ProviderTimeoutError(message, model=model)

    status = getattr(exc, "status_code", None)
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)

    if status == 429 or is_throttling_message(str(exc)):
        return RateLimitError(
            message,
            model=model,
            status_code=status,
            retry_after_ms=parse_retry_after_ms(headers),
        )
    if status is not None and 400 <= status < 500 and status != 408:
        return PermanentProviderError(message, model=model, status_code=status)
    return TransientProviderError(message, model=model, status_code=status)


def parse_structured_text(
    raw_text: str | None, model: str, usage: TokenUsage | None = None
) -> dict:
    """Decode a JSON response body; malformed output is worth another attempt.

    ``usage`` rides along on the raised error so the tokens are still billed.
    """
    if not raw_text:
        raise TransientProviderError(
            "Empty response from model", model=model, usage=usage
        )
    try:
        data = json.loads(raw_text)
    except json.JSONDecodeError as e:
        raise TransientProviderError(
            f"Model returned invalid JSON: {e}", model=model, usage=usage
        ) from e
    if not isinstance(data, dict):
        raise TransientProviderError(
            f"Model returned {type(data).__name__}, expected an object",
            model=model,
            usage=usage,
        )
    return data


class LLMProvider(ABC):
    """Abstract base class for LLM providers.

    Providers perform exactly one request per ``invoke``: retries, fallback
    and timeout racing belong to the invocation layer, so SDK clients are
    built with ``max_retries=0``.

    Args:
        api_key: API key for the provider.
    """

    provider_name: str = "unknown"

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key
        self._cached_async_client = None

    async def close_async(self) -> None:
        """Close the cached async client to release connections cleanly.

        Must be called before the event loop shuts down to avoid
        'Event loop is closed' errors from orphaned httpx connections.
        """
        if self._cached_async_client is not None:
            await self._cached_async_client.close()
            self._cached_async_client = None

    @abstractmethod
    async def invoke(
        self,
        prompt: PromptSpec,
        model: str,
        temperature: float = 0.0,
        timeout: float | None = None,
    ) -> ProviderResponse:
        """Send one request.

        Raises:
            ProviderError: Any failure, already classified.
        """
        ...
