"""Failure taxonomy for the analysis engine.

Provider failures are split by what the invocation layer should do with
them:
- TransientProviderError: retry, then fall back to the next model
- PermanentProviderError: escalate immediately, no retry, no fallback

Ledger failures always propagate. Usage-recording failures never do.
"""

from decimal import Decimal

_THROTTLING_MARKERS = ("rate limit", "throttl", "too many requests")


def is_throttling_message(message: str) -> bool:
    """True when an error message reads like a throttling response."""
    lowered = message.lower()
    return any(marker in lowered for marker in _THROTTLING_MARKERS)


class WhifError(Exception):
    """Base class for every error raised by this package."""


# =============================================================================
# Provider errors
# =============================================================================


class ProviderError(WhifError):
    """A model call failed.

    Args:
        message: Human-readable cause.
        model: Model name the attempt was made against (if known).
        status_code: HTTP status returned by the provider (if any).
        usage: Token usage the provider reported before the failure, so
            a response that came back but could not be used is still
            metered.
    """

    def __init__(
        self,
        message: str,
        *,
        model: str = "",
        status_code: int | None = None,
        usage=None,
    ) -> None:
        super().__init__(message)
        self.model = model
        self.status_code = status_code
        self.usage = usage


class TransientProviderError(ProviderError):
    """Retryable failure: timeout, throttling, network blip, 5xx."""


class RateLimitError(TransientProviderError):
    """Provider throttled the request (HTTP 429 or equivalent).

    ``retry_after_ms`` carries the provider's retry-after hint when present.
    """

    def __init__(
        self,
        message: str,
        *,
        model: str = "",
        status_code: int | None = 429,
        retry_after_ms: float | None = None,
    ) -> None:
        super().__init__(message, model=model, status_code=status_code)
        self.retry_after_ms = retry_after_ms


class ProviderTimeoutError(TransientProviderError):
    """The attempt lost the race against its timeout."""


class PermanentProviderError(ProviderError):
    """Non-retryable failure: malformed request, auth, other 4xx."""


class StageOutputError(PermanentProviderError):
    """A model's parsed output violates the contract of a pipeline stage."""


class RetryExhaustedError(TransientProviderError):
    """Every (model, attempt) combination failed.

    Raised once by call_with_retry after the whole budget is spent.
    """

    def __init__(
        self,
        candidates: list[str],
        attempts_per_candidate: int,
        last_error: BaseException | None,
    ) -> None:
        cause = str(last_error) if last_error else "Unknown error"
        super().__init__(
            f"LLM call failed after trying {len(candidates)} models with "
            f"{attempts_per_candidate} attempts each. Last error: {cause}",
            model=candidates[-1] if candidates else "",
            status_code=getattr(last_error, "status_code", None),
        )
        self.candidates = list(candidates)
        self.attempts_per_candidate = attempts_per_candidate
        self.last_error = last_error


# =============================================================================
# Metering / ledger errors
# =============================================================================


class UsageRecordingError(WhifError):
    """A usage record could not be persisted. Logged, never propagated."""


class InsufficientBalanceError(WhifError):
    """Pre-flight balance check failed; the pipeline was not started."""

    def __init__(self, user_id: str, required: Decimal, available: Decimal) -> None:
        super().__init__(
            f"Insufficient balance for user {user_id}: "
            f"required {required}, available {available}"
        )
        self.user_id = user_id
        self.required = required
        self.available = available


class LedgerPersistenceError(WhifError):
    """Balance or transaction storage failed. Always propagated."""


class LedgerConflictError(LedgerPersistenceError):
    """A compare-and-set balance update kept losing to concurrent writers."""
