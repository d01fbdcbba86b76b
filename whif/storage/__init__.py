"""Usage and balance storage.

Repository contracts, pydantic records, and two implementations:
in-memory (tests, embedding) and SQLite (CLI).
"""

from .schemas import (
    MONEY_QUANTUM,
    Balance,
    BalanceTransaction,
    ModelUsageSummary,
    TransactionType,
    UsageRecord,
    UsageSummary,
    to_money,
)
from .repositories import (
    BalanceRepository,
    BalanceTransactionRepository,
    UsageRepository,
)
from .memory import (
    InMemoryBalanceRepository,
    InMemoryBalanceTransactionRepository,
    InMemoryUsageRepository,
)
from .ledger_db import LedgerDB, open_ledger_db

__all__ = [
    "MONEY_QUANTUM",
    "Balance",
    "BalanceTransaction",
    "ModelUsageSummary",
    "TransactionType",
    "UsageRecord",
    "UsageSummary",
    "to_money",
    "BalanceRepository",
    "BalanceTransactionRepository",
    "UsageRepository",
    "InMemoryBalanceRepository",
    "InMemoryBalanceTransactionRepository",
    "InMemoryUsageRepository",
    "LedgerDB",
    "open_ledger_db",
]
