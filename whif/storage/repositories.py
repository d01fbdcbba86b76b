"""Repository contracts consumed by the metering hook and the ledger.

Implementations are synchronous; async callers dispatch them through
``asyncio.to_thread`` or call them under the ledger's per-user lock.
"""

from decimal import Decimal
from typing import Protocol

from .schemas import Balance, BalanceTransaction, UsageRecord, UsageSummary


class UsageRepository(Protocol):
    def create(self, record: UsageRecord) -> UsageRecord: ...

    def list_by_analysis_id(self, analysis_id: str) -> list[UsageRecord]: ...

    def get_summary_by_analysis_id(self, analysis_id: str) -> UsageSummary: ...


class BalanceRepository(Protocol):
    def get_by_user_id(self, user_id: str) -> Balance | None: ...

    def create_with_initial_balance(
        self, user_id: str, initial_balance: Decimal
    ) -> Balance:
        """Insert the row if absent and return the stored row.

        Must not overwrite an existing balance.
        """
        ...

    def update_balance(self, user_id: str, new_balance: Decimal) -> Balance: ...

    def compare_and_set(
        self, user_id: str, expected: Decimal, new_balance: Decimal
    ) -> bool:
        """Write ``new_balance`` only if the stored balance equals ``expected``."""
        ...


class BalanceTransactionRepository(Protocol):
    def create(self, transaction: BalanceTransaction) -> BalanceTransaction: ...

    def list_by_user_id(self, user_id: str) -> list[BalanceTransaction]:
        """Transactions for a user, oldest first."""
        ...
