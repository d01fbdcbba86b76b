"""Resilient model invocation: retry, multi-model fallback, timeout racing.

One logical call walks its candidate models in order ([primary,
*fallbacks]). Each candidate gets ``max_retries + 1`` attempts, each raced
against a timeout that cancels the in-flight request. Rate limits and
timeouts are retried, other 4xx responses escalate at once, anything else
is retried. A candidate that runs out of attempts hands over to the next
one with no extra delay; when all are exhausted a single
RetryExhaustedError is raised.

Every attempt is reported to the usage meter and, if configured, to a
trace sink.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal

from ..config import RetryConfig
from .cost.metering import UsageMeter
from .errors import (
    PermanentProviderError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitError,
    RetryExhaustedError,
    TransientProviderError,
    is_throttling_message,
)
from .providers.base import LLMProvider, PromptSpec, ProviderResponse
from .tracing import TraceEvent, TraceSink, emit

logger = logging.getLogger(__name__)

ErrorKind = Literal["rate_limit", "timeout", "permanent", "transient"]

ProviderFactory = Callable[[str], LLMProvider]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryOptions:
    """Retry budget for one logical call. All durations in milliseconds."""

    max_retries: int = 3
    base_delay_ms: float = 1000
    max_delay_ms: float = 30000
    timeout_ms: float = 60000
    rate_limit_floor_ms: float = 5000

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryOptions":
        return cls(
            max_retries=config.max_retries,
            base_delay_ms=config.base_delay_ms,
            max_delay_ms=config.max_delay_ms,
            timeout_ms=config.timeout_ms,
            rate_limit_floor_ms=config.rate_limit_floor_ms,
        )


@dataclass
class ModelRequest:
    """A prompt plus sampling settings. ``name`` labels logs and traces."""

    prompt: PromptSpec
    temperature: float = 0.0
    name: str = ""


# =============================================================================
# Classification and backoff
# =============================================================================


def classify_error(exc: BaseException) -> ErrorKind:
    """Decide how the retry loop treats a failure."""
    if isinstance(exc, RateLimitError):
        return "rate_limit"
    if isinstance(exc, (ProviderTimeoutError, asyncio.TimeoutError, TimeoutError)):
        return "timeout"
    if isinstance(exc, PermanentProviderError):
        return "permanent"
    if isinstance(exc, TransientProviderError):
        return "transient"

    status = getattr(exc, "status_code", None)
    if status == 429 or is_throttling_message(str(exc)):
        return "rate_limit"
    if isinstance(status, int) and 400 <= status < 500:
        return "permanent"
    return "transient"


def is_retryable(exc: BaseException) -> bool:
    return classify_error(exc) != "permanent"


def compute_backoff_delay(
    attempt: int,
    options: RetryOptions,
    rng: Callable[[], float] = random.random,
) -> float:
    """Exponential backoff with jitter, in milliseconds.

    ``min(base * 2**attempt, max)`` scaled by a factor in [0.5, 1.0].
    ``rng`` must return a float in [0, 1).
    """
    capped = min(options.base_delay_ms * (2**attempt), options.max_delay_ms)
    return capped * (0.5 + 0.5 * rng())


def retry_delay_ms(
    exc: BaseException,
    attempt: int,
    options: RetryOptions,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay before retrying after ``exc`` on 0-based ``attempt``."""
    delay = compute_backoff_delay(attempt, options, rng)
    if classify_error(exc) == "rate_limit":
        hint = getattr(exc, "retry_after_ms", None)
        if hint:
            return max(delay, hint)
        return max(delay, options.rate_limit_floor_ms)
    return delay


# =============================================================================
# call_with_retry
# =============================================================================


def _default_provider_factory(model: str) -> LLMProvider:
    from .providers import get_provider_for_model

    return get_provider_for_model(model)


async def _attempt(
    provider: LLMProvider,
    request: ModelRequest,
    model: str,
    options: RetryOptions,
) -> ProviderResponse:
    timeout_s = options.timeout_ms / 1000
    try:
        return await asyncio.wait_for(
            provider.invoke(
                request.prompt,
                model,
                temperature=request.temperature,
                timeout=timeout_s,
            ),
            timeout=timeout_s,
        )
    except asyncio.TimeoutError as e:
        raise ProviderTimeoutError(
            f"Timeout after {options.timeout_ms:.0f}ms", model=model
        ) from e


async def call_with_retry(
    request: ModelRequest,
    models: list[str],
    options: RetryOptions | None = None,
    *,
    provider_factory: ProviderFactory | None = None,
    meter: UsageMeter | None = None,
    trace_sink: TraceSink | None = None,
    rng: Callable[[], float] = random.random,
    sleep: Sleep = asyncio.sleep,
):
    """Run one logical model call with retry, fallback and timeouts.

    Args:
        request: Prompt and sampling settings.
        models: Candidate models, primary first.
        options: Retry budget (defaults to RetryOptions()).
        provider_factory: Maps a model name to its provider.
        meter: Receives one report per attempt.
        trace_sink: Receives start/end/error events per attempt.
        rng: Jitter source, for deterministic tests.
        sleep: Async sleep taking seconds, for deterministic tests.

    Returns:
        The parsed content of the first successful attempt.

    Raises:
        PermanentProviderError: On the first non-retryable failure.
        RetryExhaustedError: When every (model, attempt) pair failed.
    """
    if not models:
        raise ValueError("call_with_retry needs at least one candidate model")

    options = options or RetryOptions()
    provider_factory = provider_factory or _default_provider_factory
    attempts_per_model = options.max_retries + 1
    label = request.name or request.prompt.schema_name
    analysis_id = meter.analysis_id if meter else ""
    user_id = meter.user_id if meter else ""
    last_error: BaseException | None = None

    for model_index, model in enumerate(models):
        provider = provider_factory(model)

        if model_index > 0:
            logger.warning(f"[retry] {label}: falling back to {model}")

        for attempt in range(attempts_per_model):
            emit(
                trace_sink,
                TraceEvent(
                    kind="start",
                    model=model,
                    attempt=attempt,
                    analysis_id=analysis_id,
                    user_id=user_id,
                    name=label,
                    metadata={"temperature": request.temperature},
                ),
            )
            started = time.monotonic()

            try:
                response = await _attempt(provider, request, model, options)
            except Exception as e:
                elapsed_ms = (time.monotonic() - started) * 1000
                last_error = e
                if meter is not None:
                    meter.record_failure(model, e, getattr(e, "usage", None))
                emit(
                    trace_sink,
                    TraceEvent(
                        kind="error",
                        model=model,
                        attempt=attempt,
                        analysis_id=analysis_id,
                        user_id=user_id,
                        name=label,
                        elapsed_ms=elapsed_ms,
                        error=str(e),
                    ),
                )

                kind = classify_error(e)
                if kind == "permanent":
                    logger.error(
                        f"[retry] {label}: non-retryable error from {model}: {e}"
                    )
                    if isinstance(e, ProviderError):
                        raise
                    raise PermanentProviderError(
                        str(e),
                        model=model,
                        status_code=getattr(e, "status_code", None),
                    ) from e

                if attempt < attempts_per_model - 1:
                    delay_ms = retry_delay_ms(e, attempt, options, rng)
                    logger.warning(
                        f"[retry] {label}: {model} attempt "
                        f"{attempt + 1}/{attempts_per_model} failed ({kind}): {e}. "
                        f"Retrying in {delay_ms / 1000:.1f}s"
                    )
                    await sleep(delay_ms / 1000)
                else:
                    logger.warning(
                        f"[retry] {label}: {model} exhausted "
                        f"{attempts_per_model} attempts ({kind}): {e}"
                    )
                continue

            elapsed_ms = (time.monotonic() - started) * 1000
            if meter is not None:
                meter.record_success(model, response.usage)
            emit(
                trace_sink,
                TraceEvent(
                    kind="end",
                    model=model,
                    attempt=attempt,
                    analysis_id=analysis_id,
                    user_id=user_id,
                    name=label,
                    elapsed_ms=elapsed_ms,
                    metadata={
                        "input_tokens": response.usage.input_tokens
                        if response.usage
                        else None,
                        "output_tokens": response.usage.output_tokens
                        if response.usage
                        else None,
                    },
                ),
            )
            if attempt > 0 or model_index > 0:
                logger.info(
                    f"[retry] {label}: succeeded on {model} "
                    f"(attempt {attempt + 1}, candidate {model_index + 1})"
                )
            return response.content

    error = RetryExhaustedError(models, attempts_per_model, last_error)
    logger.error(f"[retry] {label}: {error}")
    raise error
