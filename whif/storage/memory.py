"""In-memory repositories.

Used by tests and by package callers that handle persistence themselves.
Thread-safe: usage records arrive from worker threads.
"""

import threading
from decimal import Decimal

from .schemas import (
    Balance,
    BalanceTransaction,
    UsageRecord,
    UsageSummary,
    utcnow,
)


class InMemoryUsageRepository:
    """Append-only list of usage records."""

    def __init__(self) -> None:
        self._records: list[UsageRecord] = []
        self._lock = threading.Lock()

    def create(self, record: UsageRecord) -> UsageRecord:
        with self._lock:
            self._records.append(record)
        return record

    def list_by_analysis_id(self, analysis_id: str) -> list[UsageRecord]:
        with self._lock:
            return [r for r in self._records if r.analysis_id == analysis_id]

    def get_summary_by_analysis_id(self, analysis_id: str) -> UsageSummary:
        return UsageSummary.from_records(
            analysis_id, self.list_by_analysis_id(analysis_id)
        )

    @property
    def records(self) -> list[UsageRecord]:
        with self._lock:
            return list(self._records)


class InMemoryBalanceRepository:
    """Balance rows keyed by user id."""

    def __init__(self) -> None:
        self._rows: dict[str, Balance] = {}
        self._lock = threading.Lock()

    def get_by_user_id(self, user_id: str) -> Balance | None:
        with self._lock:
            row = self._rows.get(user_id)
            return row.model_copy() if row else None

    def create_with_initial_balance(
        self, user_id: str, initial_balance: Decimal
    ) -> Balance:
        with self._lock:
            if user_id not in self._rows:
                self._rows[user_id] = Balance(user_id=user_id, balance=initial_balance)
            return self._rows[user_id].model_copy()

    def update_balance(self, user_id: str, new_balance: Decimal) -> Balance:
        with self._lock:
            row = self._rows.get(user_id)
            if row is None:
                raise KeyError(f"No balance row for user {user_id}")
            row = row.model_copy(update={"balance": new_balance, "updated_at": utcnow()})
            self._rows[user_id] = row
            return row.model_copy()

    def compare_and_set(
        self, user_id: str, expected: Decimal, new_balance: Decimal
    ) -> bool:
        with self._lock:
            row = self._rows.get(user_id)
            if row is None or row.balance != expected:
                return False
            self._rows[user_id] = row.model_copy(
                update={"balance": new_balance, "updated_at": utcnow()}
            )
            return True


class InMemoryBalanceTransactionRepository:
    """Append-only transaction log."""

    def __init__(self) -> None:
        self._transactions: list[BalanceTransaction] = []
        self._lock = threading.Lock()

    def create(self, transaction: BalanceTransaction) -> BalanceTransaction:
        with self._lock:
            self._transactions.append(transaction)
        return transaction

    def list_by_user_id(self, user_id: str) -> list[BalanceTransaction]:
        with self._lock:
            return [t for t in self._transactions if t.user_id == user_id]
