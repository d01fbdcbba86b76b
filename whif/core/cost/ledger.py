"""Per-user balance ledger.

A spendable balance per user plus an append-only transaction log. Every
mutation for one user runs under that user's lock, and the balance row
itself is only written through compare-and-set, so concurrent writers in
other processes cannot cause a lost update either.

Invariant: balance == initial allowance + sum of transaction amounts.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Any, Callable

from ..errors import LedgerConflictError, LedgerPersistenceError
from ...storage.repositories import BalanceRepository, BalanceTransactionRepository
from ...storage.schemas import Balance, BalanceTransaction, TransactionType, to_money

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_ALLOWANCE = Decimal("10.00")
MAX_CAS_ATTEMPTS = 5


class BalanceLedger:
    """Balance checks, debits and credits over injected repositories.

    Args:
        balances: Balance row storage.
        transactions: Transaction log storage.
        initial_allowance: Granted once, when a user's row is first created.
        max_cas_attempts: Compare-and-set attempts before LedgerConflictError.
    """

    def __init__(
        self,
        balances: BalanceRepository,
        transactions: BalanceTransactionRepository,
        *,
        initial_allowance: Decimal = DEFAULT_INITIAL_ALLOWANCE,
        max_cas_attempts: int = MAX_CAS_ATTEMPTS,
    ) -> None:
        self.balances = balances
        self.transactions = transactions
        self.initial_allowance = to_money(initial_allowance)
        self.max_cas_attempts = max_cas_attempts
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_loop: asyncio.AbstractEventLoop | None = None

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if loop is not self._locks_loop:
            # asyncio locks cannot be shared across event loops
            self._locks = {}
            self._locks_loop = loop
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except LedgerPersistenceError:
            raise
        except Exception as e:
            raise LedgerPersistenceError(
                f"{getattr(fn, '__name__', 'repository call')} failed: {e}"
            ) from e

    async def _get_or_create(self, user_id: str) -> Balance:
        balance = await self._call(self.balances.get_by_user_id, user_id)
        if balance is None:
            balance = await self._call(
                self.balances.create_with_initial_balance,
                user_id,
                self.initial_allowance,
            )
            logger.info(
                f"[ledger] Opened balance for {user_id} at {balance.balance}"
            )
        return balance

    async def get_balance(self, user_id: str) -> Balance:
        """Return the user's balance, granting the initial allowance on first access."""
        return await self._get_or_create(user_id)

    async def has_sufficient_balance(self, user_id: str, estimated_cost: Decimal) -> bool:
        balance = await self.get_balance(user_id)
        return balance.balance >= to_money(estimated_cost)

    async def deduct_cost(
        self,
        user_id: str,
        cost: Decimal,
        reference_id: str | None = None,
        description: str = "Analysis cost",
    ) -> bool:
        """Debit ``cost`` from the user's balance.

        Returns:
            False (and changes nothing) if the balance does not cover the
            cost; True otherwise. A zero cost is a no-op returning True.

        Raises:
            ValueError: If ``cost`` is negative.
            LedgerConflictError: If compare-and-set keeps failing.
            LedgerPersistenceError: If storage fails.
        """
        if cost < 0:
            raise ValueError(f"Cost must be non-negative, got {cost}")
        amount = to_money(cost)
        if amount == 0:
            return True

        async with self._lock_for(user_id):
            applied = await self._apply(user_id, -amount, require_funds=True)
            if applied is None:
                logger.warning(
                    f"[ledger] Insufficient balance for {user_id}: cost {amount}"
                )
                return False
            before, after = applied
            await self._append(
                user_id,
                amount=-amount,
                before=before,
                after=after,
                transaction_type=TransactionType.DEBIT,
                description=description,
                reference_id=reference_id,
            )
        logger.info(f"[ledger] Debited {amount} from {user_id}: {before} -> {after}")
        return True

    async def add_credit(
        self,
        user_id: str,
        amount: Decimal,
        description: str = "Credit",
        reference_id: str | None = None,
    ) -> Balance:
        """Credit ``amount`` to the user's balance.

        Raises:
            ValueError: If ``amount`` is not positive.
            LedgerConflictError: If compare-and-set keeps failing.
            LedgerPersistenceError: If storage fails.
        """
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive, got {amount}")
        amount = to_money(amount)

        async with self._lock_for(user_id):
            before, after = await self._apply(user_id, amount, require_funds=False)
            await self._append(
                user_id,
                amount=amount,
                before=before,
                after=after,
                transaction_type=TransactionType.CREDIT,
                description=description,
                reference_id=reference_id,
            )
            balance = await self._call(self.balances.get_by_user_id, user_id)
        logger.info(f"[ledger] Credited {amount} to {user_id}: {before} -> {after}")
        return balance

    async def get_transactions(self, user_id: str) -> list[BalanceTransaction]:
        """Transaction log for ``user_id``, oldest first."""
        return await self._call(self.transactions.list_by_user_id, user_id)

    async def _apply(
        self, user_id: str, delta: Decimal, *, require_funds: bool
    ) -> tuple[Decimal, Decimal] | None:
        """Compare-and-set ``balance + delta``; returns (before, after).

        Returns None if ``require_funds`` and the balance would go negative.
        """
        for attempt in range(1, self.max_cas_attempts + 1):
            current = await self._get_or_create(user_id)
            before = to_money(current.balance)
            after = to_money(before + delta)
            if require_funds and after < 0:
                return None
            if await self._call(self.balances.compare_and_set, user_id, before, after):
                return before, after
            logger.warning(
                f"[ledger] Balance for {user_id} changed concurrently "
                f"(attempt {attempt}/{self.max_cas_attempts}), re-reading"
            )
        raise LedgerConflictError(
            f"Balance update for {user_id} lost {self.max_cas_attempts} "
            f"compare-and-set races"
        )

    async def _append(
        self,
        user_id: str,
        *,
        amount: Decimal,
        before: Decimal,
        after: Decimal,
        transaction_type: TransactionType,
        description: str,
        reference_id: str | None,
    ) -> None:
        transaction = BalanceTransaction(
            user_id=user_id,
            amount=amount,
            balance_before=before,
            balance_after=after,
            transaction_type=transaction_type,
            description=description,
            reference_id=reference_id,
        )
        try:
            await self._call(self.transactions.create, transaction)
        except LedgerPersistenceError:
            # Undo the balance write.
            restored = False
            try:
                restored = await self._call(
                    self.balances.compare_and_set, user_id, after, before
                )
            except LedgerPersistenceError as rollback_error:
                logger.error(f"[ledger] Rollback for {user_id} failed: {rollback_error}")
            if not restored:
                logger.error(
                    f"[ledger] Balance for {user_id} left at {after} without "
                    f"a matching transaction"
                )
            raise
