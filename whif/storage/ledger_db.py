"""SQLite-backed usage and balance storage.

One database file holds three tables:
- token_usage: append-only usage records, one per call attempt
- user_balances: one spendable balance row per user
- balance_transactions: append-only balance log

Amounts are stored as fixed-precision decimal strings so that reads
return exactly what was written and compare-and-set can match on the
stored text.
"""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime
from decimal import Decimal
from pathlib import Path

from .schemas import (
    Balance,
    BalanceTransaction,
    TransactionType,
    UsageRecord,
    UsageSummary,
    ModelUsageSummary,
    to_money,
    utcnow,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS token_usage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    analysis_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    model_name TEXT NOT NULL,
    input_tokens INTEGER NOT NULL,
    output_tokens INTEGER NOT NULL,
    cost TEXT NOT NULL,
    success INTEGER NOT NULL DEFAULT 1,
    error_message TEXT,
    timestamp TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_token_usage_analysis_id ON token_usage(analysis_id);
CREATE INDEX IF NOT EXISTS idx_token_usage_user_id ON token_usage(user_id);

CREATE TABLE IF NOT EXISTS user_balances (
    user_id TEXT PRIMARY KEY,
    balance TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS balance_transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    amount TEXT NOT NULL,
    balance_before TEXT NOT NULL,
    balance_after TEXT NOT NULL,
    transaction_type TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    reference_id TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_balance_transactions_user_id ON balance_transactions(user_id);
CREATE INDEX IF NOT EXISTS idx_balance_transactions_reference_id ON balance_transactions(reference_id);
"""


def _money_text(value: Decimal) -> str:
    return str(to_money(value))


class LedgerDB:
    """SQLite connection shared by the three repositories.

    The connection is used from worker threads (usage records are written
    via ``asyncio.to_thread``), so every statement runs under a lock.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        if str(path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.lock = threading.RLock()
        self._set_pragmas()
        self.init_schema()

        self.usage = SQLiteUsageRepository(self)
        self.balances = SQLiteBalanceRepository(self)
        self.transactions = SQLiteBalanceTransactionRepository(self)

    def _set_pragmas(self) -> None:
        cursor = self.conn.cursor()
        cursor.execute("PRAGMA journal_mode = WAL")
        cursor.execute("PRAGMA synchronous = NORMAL")
        self.conn.commit()

    def init_schema(self) -> None:
        with self.lock:
            self.conn.executescript(_SCHEMA)
            self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "LedgerDB":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False


class SQLiteUsageRepository:
    def __init__(self, db: LedgerDB) -> None:
        self._db = db

    def create(self, record: UsageRecord) -> UsageRecord:
        with self._db.lock:
            self._db.conn.execute(
                """
                INSERT INTO token_usage
                    (analysis_id, user_id, model_name, input_tokens, output_tokens,
                     cost, success, error_message, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.analysis_id,
                    record.user_id,
                    record.model_name,
                    record.input_tokens,
                    record.output_tokens,
                    str(record.cost),
                    1 if record.success else 0,
                    record.error_message,
                    record.timestamp.isoformat(),
                ),
            )
            self._db.conn.commit()
        return record

    def list_by_analysis_id(self, analysis_id: str) -> list[UsageRecord]:
        with self._db.lock:
            rows = self._db.conn.execute(
                """
                SELECT * FROM token_usage
                WHERE analysis_id = ?
                ORDER BY id ASC
                """,
                (analysis_id,),
            ).fetchall()

        return [
            UsageRecord(
                analysis_id=row["analysis_id"],
                user_id=row["user_id"],
                model_name=row["model_name"],
                input_tokens=row["input_tokens"],
                output_tokens=row["output_tokens"],
                cost=Decimal(row["cost"]),
                success=bool(row["success"]),
                error_message=row["error_message"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
            )
            for row in rows
        ]

    def get_summary_by_analysis_id(self, analysis_id: str) -> UsageSummary:
        # Costs are decimal text; sum in Python to keep them exact.
        with self._db.lock:
            rows = self._db.conn.execute(
                """
                SELECT model_name, input_tokens, output_tokens, cost, success
                FROM token_usage
                WHERE analysis_id = ?
                ORDER BY id ASC
                """,
                (analysis_id,),
            ).fetchall()

        summary = UsageSummary(analysis_id=analysis_id)
        by_model: dict[str, ModelUsageSummary] = {}
        for row in rows:
            cost = Decimal(row["cost"])
            summary.total_calls += 1
            summary.failed_calls += 0 if row["success"] else 1
            summary.total_input_tokens += row["input_tokens"]
            summary.total_output_tokens += row["output_tokens"]
            summary.total_cost += cost

            mu = by_model.setdefault(
                row["model_name"], ModelUsageSummary(model_name=row["model_name"])
            )
            mu.calls += 1
            mu.input_tokens += row["input_tokens"]
            mu.output_tokens += row["output_tokens"]
            mu.cost += cost

        summary.by_model = list(by_model.values())
        return summary


class SQLiteBalanceRepository:
    def __init__(self, db: LedgerDB) -> None:
        self._db = db

    @staticmethod
    def _row_to_balance(row: sqlite3.Row) -> Balance:
        return Balance(
            user_id=row["user_id"],
            balance=Decimal(row["balance"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def get_by_user_id(self, user_id: str) -> Balance | None:
        with self._db.lock:
            row = self._db.conn.execute(
                "SELECT * FROM user_balances WHERE user_id = ?", (user_id,)
            ).fetchone()
        return self._row_to_balance(row) if row else None

    def create_with_initial_balance(
        self, user_id: str, initial_balance: Decimal
    ) -> Balance:
        now = utcnow().isoformat()
        with self._db.lock:
            self._db.conn.execute(
                """
                INSERT OR IGNORE INTO user_balances (user_id, balance, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (user_id, _money_text(initial_balance), now, now),
            )
            self._db.conn.commit()
            row = self._db.conn.execute(
                "SELECT * FROM user_balances WHERE user_id = ?", (user_id,)
            ).fetchone()
        return self._row_to_balance(row)

    def update_balance(self, user_id: str, new_balance: Decimal) -> Balance:
        with self._db.lock:
            cursor = self._db.conn.execute(
                "UPDATE user_balances SET balance = ?, updated_at = ? WHERE user_id = ?",
                (_money_text(new_balance), utcnow().isoformat(), user_id),
            )
            self._db.conn.commit()
            if cursor.rowcount == 0:
                raise KeyError(f"No balance row for user {user_id}")
            row = self._db.conn.execute(
                "SELECT * FROM user_balances WHERE user_id = ?", (user_id,)
            ).fetchone()
        return self._row_to_balance(row)

    def compare_and_set(
        self, user_id: str, expected: Decimal, new_balance: Decimal
    ) -> bool:
        with self._db.lock:
            cursor = self._db.conn.execute(
                """
                UPDATE user_balances
                SET balance = ?, updated_at = ?
                WHERE user_id = ? AND balance = ?
                """,
                (
                    _money_text(new_balance),
                    utcnow().isoformat(),
                    user_id,
                    _money_text(expected),
                ),
            )
            self._db.conn.commit()
            return cursor.rowcount == 1


class SQLiteBalanceTransactionRepository:
    def __init__(self, db: LedgerDB) -> None:
        self._db = db

    def create(self, transaction: BalanceTransaction) -> BalanceTransaction:
        with self._db.lock:
            self._db.conn.execute(
                """
                INSERT INTO balance_transactions
                    (user_id, amount, balance_before, balance_after,
                     transaction_type, description, reference_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    transaction.user_id,
                    _money_text(transaction.amount),
                    _money_text(transaction.balance_before),
                    _money_text(transaction.balance_after),
                    transaction.transaction_type.value,
                    transaction.description,
                    transaction.reference_id,
                    transaction.created_at.isoformat(),
                ),
            )
            self._db.conn.commit()
        return transaction

    def list_by_user_id(self, user_id: str) -> list[BalanceTransaction]:
        with self._db.lock:
            rows = self._db.conn.execute(
                """
                SELECT * FROM balance_transactions
                WHERE user_id = ?
                ORDER BY id ASC
                """,
                (user_id,),
            ).fetchall()

        return [
            BalanceTransaction(
                user_id=row["user_id"],
                amount=Decimal(row["amount"]),
                balance_before=Decimal(row["balance_before"]),
                balance_after=Decimal(row["balance_after"]),
                transaction_type=TransactionType(row["transaction_type"]),
                description=row["description"],
                reference_id=row["reference_id"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]


def open_ledger_db(path: Path | str) -> LedgerDB:
    """Open the ledger database and ensure its schema exists."""
    return LedgerDB(path)
