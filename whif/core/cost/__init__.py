"""Pricing, usage metering and the balance ledger.

This package provides:
- Pricing: static per-model pricing table and cost calculation
- UsageMeter: per-run hook that prices and records every call attempt
- BalanceLedger: per-user balance with an append-only transaction log
"""

from .pricing import (
    PRICING,
    CostCalculation,
    ModelPricing,
    all_pricing,
    calculate_cost,
    calculate_cost_details,
    calculate_total_cost,
    get_pricing,
)
from .metering import UsageMeter
from .ledger import BalanceLedger, DEFAULT_INITIAL_ALLOWANCE

__all__ = [
    # Pricing
    "PRICING",
    "CostCalculation",
    "ModelPricing",
    "all_pricing",
    "calculate_cost",
    "calculate_cost_details",
    "calculate_total_cost",
    "get_pricing",
    # Metering
    "UsageMeter",
    # Ledger
    "BalanceLedger",
    "DEFAULT_INITIAL_ALLOWANCE",
]
