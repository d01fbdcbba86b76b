"""Tests for the SQLite usage/balance store."""

from decimal import Decimal

import pytest

from whif.storage import LedgerDB, open_ledger_db
from whif.storage.schemas import BalanceTransaction, TransactionType, UsageRecord


@pytest.fixture
def db(tmp_path):
    db = open_ledger_db(tmp_path / "nested" / "whif.db")
    yield db
    db.close()


def _usage(model="gpt-4o-mini", cost="0.75", success=True, analysis_id="a1"):
    return UsageRecord(
        analysis_id=analysis_id,
        user_id="u1",
        model_name=model,
        input_tokens=1000,
        output_tokens=1000,
        cost=Decimal(cost),
        success=success,
        error_message=None if success else "boom",
    )


class TestSchema:
    def test_creates_tables_and_parent_dir(self, tmp_path):
        path = tmp_path / "a" / "b" / "whif.db"
        with open_ledger_db(path) as db:
            tables = {
                row["name"]
                for row in db.conn.execute(
                    "SELECT name FROM sqlite_master WHERE type = 'table'"
                )
            }
        assert path.exists()
        assert {"token_usage", "user_balances", "balance_transactions"} <= tables

    def test_reopen_keeps_data(self, tmp_path):
        path = tmp_path / "whif.db"
        with LedgerDB(path) as db:
            db.balances.create_with_initial_balance("u1", Decimal("10"))
        with LedgerDB(path) as db:
            assert db.balances.get_by_user_id("u1").balance == Decimal("10")

    def test_in_memory_database(self):
        with LedgerDB(":memory:") as db:
            assert db.balances.get_by_user_id("nobody") is None


class TestUsageRepository:
    def test_create_and_list(self, db):
        db.usage.create(_usage())
        db.usage.create(_usage(analysis_id="other"))

        [record] = db.usage.list_by_analysis_id("a1")
        assert record.model_name == "gpt-4o-mini"
        assert record.cost == Decimal("0.75")
        assert record.success is True

    def test_summary(self, db):
        db.usage.create(_usage(cost="0.75"))
        db.usage.create(_usage(model="claude-3-5-haiku-latest", cost="0.0048"))
        db.usage.create(_usage(cost="0", success=False))

        summary = db.usage.get_summary_by_analysis_id("a1")

        assert summary.total_calls == 3
        assert summary.failed_calls == 1
        assert summary.total_input_tokens == 3000
        assert summary.total_cost == Decimal("0.7548")
        by_model = {m.model_name: m for m in summary.by_model}
        assert by_model["gpt-4o-mini"].calls == 2
        assert by_model["claude-3-5-haiku-latest"].cost == Decimal("0.0048")

    def test_summary_of_unknown_analysis_is_empty(self, db):
        summary = db.usage.get_summary_by_analysis_id("missing")
        assert summary.total_calls == 0
        assert summary.total_cost == 0
        assert summary.by_model == []


class TestBalanceRepository:
    def test_insert_if_absent(self, db):
        db.balances.create_with_initial_balance("u1", Decimal("10"))
        db.balances.update_balance("u1", Decimal("4"))
        row = db.balances.create_with_initial_balance("u1", Decimal("10"))
        assert row.balance == Decimal("4")

    def test_compare_and_set(self, db):
        db.balances.create_with_initial_balance("u1", Decimal("10.00"))

        assert db.balances.compare_and_set("u1", Decimal("10"), Decimal("8.5"))
        assert not db.balances.compare_and_set("u1", Decimal("10"), Decimal("7"))
        assert db.balances.get_by_user_id("u1").balance == Decimal("8.5")

    def test_compare_and_set_missing_user(self, db):
        assert not db.balances.compare_and_set("ghost", Decimal("0"), Decimal("1"))

    def test_update_missing_user_raises(self, db):
        with pytest.raises(KeyError):
            db.balances.update_balance("ghost", Decimal("1"))

    def test_amounts_round_trip_exactly(self, db):
        db.balances.create_with_initial_balance("u1", Decimal("9.876543"))
        assert str(db.balances.get_by_user_id("u1").balance) == "9.876543"


class TestTransactionRepository:
    def test_list_oldest_first(self, db):
        for i, amount in enumerate(["5", "-2", "-1.5"]):
            value = Decimal(amount)
            db.transactions.create(
                BalanceTransaction(
                    user_id="u1",
                    amount=value,
                    balance_before=Decimal(10),
                    balance_after=Decimal(10) + value,
                    transaction_type=(
                        TransactionType.CREDIT if value > 0 else TransactionType.DEBIT
                    ),
                    description=f"tx {i}",
                )
            )

        transactions = db.transactions.list_by_user_id("u1")
        assert [t.description for t in transactions] == ["tx 0", "tx 1", "tx 2"]
        assert transactions[2].amount == Decimal("-1.5")
        assert transactions[0].transaction_type == TransactionType.CREDIT
        assert db.transactions.list_by_user_id("u2") == []
