"""Model pricing and cost calculation.

Static per-model pricing table (USD per 1K tokens) with exact-name lookup.
An unknown model costs nothing: a warning is logged and 0 is returned, so
billing never fails a model call.
"""

import logging
from decimal import Decimal
from typing import Iterable

from pydantic import BaseModel

from ...storage.schemas import UsageRecord

logger = logging.getLogger(__name__)

_THOUSAND = Decimal(1000)


class ModelPricing(BaseModel, frozen=True):
    """Pricing for a single model (USD per 1K tokens)."""

    model_name: str
    input_per_ktok: Decimal
    output_per_ktok: Decimal
    provider: str


class CostCalculation(BaseModel, frozen=True):
    """Itemized cost of one call."""

    input_tokens: int
    output_tokens: int
    total_tokens: int
    cost: Decimal
    provider: str
    model: str


def _p(model_name: str, inp: str, out: str, provider: str) -> ModelPricing:
    return ModelPricing(
        model_name=model_name,
        input_per_ktok=Decimal(inp),
        output_per_ktok=Decimal(out),
        provider=provider,
    )


PRICING: dict[str, ModelPricing] = {
    p.model_name: p
    for p in (
        # OpenAI
        _p("gpt-4o-mini", "0.00015", "0.0006", "openai"),
        _p("gpt-4o", "0.005", "0.015", "openai"),
        # Anthropic (models routed by default)
        _p("claude-3-5-haiku-latest", "0.0008", "0.004", "anthropic"),
        _p("claude-3-7-sonnet-latest", "0.003", "0.015", "anthropic"),
        _p("claude-sonnet-4-0", "0.003", "0.015", "anthropic"),
        # Google
        _p("gemini-2.0-flash", "0.0001", "0.0004", "gemini"),
        _p("gemini-2.5-pro", "0.00125", "0.01", "gemini"),
    )
}


def get_pricing(model: str) -> ModelPricing | None:
    """Exact-name pricing lookup. Returns None for unknown models."""
    return PRICING.get(model)


def all_pricing() -> list[ModelPricing]:
    return list(PRICING.values())


def calculate_cost_details(
    input_tokens: int, output_tokens: int, model: str
) -> CostCalculation:
    """Cost of one call with its token breakdown.

    Unknown models yield cost 0 and provider "unknown".
    """
    pricing = get_pricing(model)
    if pricing is None:
        logger.warning(f"[cost] No pricing for model {model!r}; recording cost 0")
        cost = Decimal(0)
        provider = "unknown"
    else:
        cost = (
            Decimal(input_tokens) / _THOUSAND * pricing.input_per_ktok
            + Decimal(output_tokens) / _THOUSAND * pricing.output_per_ktok
        )
        provider = pricing.provider

    return CostCalculation(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens,
        cost=cost,
        provider=provider,
        model=model,
    )


def calculate_cost(input_tokens: int, output_tokens: int, model: str) -> Decimal:
    """``(in/1000)*input_price + (out/1000)*output_price``. Never raises."""
    return calculate_cost_details(input_tokens, output_tokens, model).cost


def calculate_total_cost(records: Iterable[UsageRecord]) -> Decimal:
    """Sum of record costs."""
    return sum((r.cost for r in records), Decimal(0))
