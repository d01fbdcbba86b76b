"""Pydantic records persisted by the usage and balance repositories."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

# Balances and transaction amounts are stored with 6 decimal places.
MONEY_QUANTUM = Decimal("0.000001")


def to_money(value: Decimal | int | str) -> Decimal:
    """Quantize an amount to ledger precision."""
    return Decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now().astimezone()


class UsageRecord(BaseModel):
    """Token usage and cost of a single model call attempt.

    Immutable once created; failed attempts are recorded with cost 0.
    """

    model_config = ConfigDict(frozen=True)

    analysis_id: str
    user_id: str
    model_name: str
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    cost: Decimal = Field(default=Decimal("0"), ge=0)
    success: bool = True
    error_message: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class ModelUsageSummary(BaseModel):
    """Accumulated usage for a single model within an analysis."""

    model_name: str
    calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost: Decimal = Decimal("0")


class UsageSummary(BaseModel):
    """Aggregate usage totals for one analysis."""

    analysis_id: str
    total_calls: int = 0
    failed_calls: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost: Decimal = Decimal("0")
    by_model: list[ModelUsageSummary] = Field(default_factory=list)

    @classmethod
    def from_records(
        cls, analysis_id: str, records: list[UsageRecord]
    ) -> "UsageSummary":
        by_model: dict[str, ModelUsageSummary] = {}
        for record in records:
            mu = by_model.setdefault(
                record.model_name, ModelUsageSummary(model_name=record.model_name)
            )
            mu.calls += 1
            mu.input_tokens += record.input_tokens
            mu.output_tokens += record.output_tokens
            mu.cost += record.cost

        return cls(
            analysis_id=analysis_id,
            total_calls=len(records),
            failed_calls=sum(1 for r in records if not r.success),
            total_input_tokens=sum(r.input_tokens for r in records),
            total_output_tokens=sum(r.output_tokens for r in records),
            total_cost=sum((r.cost for r in records), Decimal("0")),
            by_model=list(by_model.values()),
        )


class Balance(BaseModel):
    """Spendable balance of one user."""

    user_id: str
    balance: Decimal
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class BalanceTransaction(BaseModel):
    """Append-only balance log entry. ``amount`` is signed."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    transaction_type: TransactionType
    description: str = ""
    reference_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
