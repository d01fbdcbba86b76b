"""Balance commands: balance, credit, transactions."""

import asyncio
from decimal import Decimal, InvalidOperation

import typer
from rich.table import Table

from ..app import app, console, get_json_mode, print_json
from ...config import get_config
from ...core.cost.ledger import BalanceLedger
from ...core.errors import LedgerPersistenceError
from ...storage.ledger_db import LedgerDB, open_ledger_db


def _ledger(db: LedgerDB) -> BalanceLedger:
    config = get_config()
    return BalanceLedger(
        db.balances,
        db.transactions,
        initial_allowance=config.ledger.initial_allowance_amount,
    )


@app.command("balance")
def balance_command(
    user: str = typer.Argument(..., help="User ID"),
):
    """Show a user's spendable balance."""
    with open_ledger_db(get_config().db_path_resolved) as db:
        try:
            balance = asyncio.run(_ledger(db).get_balance(user))
        except LedgerPersistenceError as e:
            console.print(f"[red]✗[/red] {e}")
            raise typer.Exit(1)

    if get_json_mode():
        print_json(balance.model_dump(mode="json"))
        return
    console.print(f"{user}: [bold]{balance.balance}[/bold]")


@app.command("credit")
def credit_command(
    user: str = typer.Argument(..., help="User ID"),
    amount: str = typer.Argument(..., help="Amount to credit, e.g. 5.00"),
    description: str = typer.Option("Credit", "--description", "-d"),
    reference_id: str | None = typer.Option(None, "--reference-id"),
):
    """Add credit to a user's balance."""
    try:
        value = Decimal(amount)
    except InvalidOperation:
        console.print(f"[red]✗[/red] Invalid amount: {amount}")
        raise typer.Exit(1)

    with open_ledger_db(get_config().db_path_resolved) as db:
        try:
            balance = asyncio.run(
                _ledger(db).add_credit(user, value, description, reference_id)
            )
        except (ValueError, LedgerPersistenceError) as e:
            console.print(f"[red]✗[/red] {e}")
            raise typer.Exit(1)

    if get_json_mode():
        print_json(balance.model_dump(mode="json"))
        return
    console.print(
        f"[green]✓[/green] Credited {value} to {user}; "
        f"balance now [bold]{balance.balance}[/bold]"
    )


@app.command("transactions")
def transactions_command(
    user: str = typer.Argument(..., help="User ID"),
):
    """List a user's balance transactions, oldest first."""
    with open_ledger_db(get_config().db_path_resolved) as db:
        try:
            transactions = asyncio.run(_ledger(db).get_transactions(user))
        except LedgerPersistenceError as e:
            console.print(f"[red]✗[/red] {e}")
            raise typer.Exit(1)

    if get_json_mode():
        print_json([t.model_dump(mode="json") for t in transactions])
        return

    if not transactions:
        console.print(f"[dim]No transactions for {user}[/dim]")
        return

    table = Table(title=f"Transactions for {user}")
    table.add_column("When")
    table.add_column("Type")
    table.add_column("Amount", justify="right")
    table.add_column("Before", justify="right")
    table.add_column("After", justify="right")
    table.add_column("Description")
    table.add_column("Reference")
    for t in transactions:
        table.add_row(
            t.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            t.transaction_type.value,
            str(t.amount),
            str(t.balance_before),
            str(t.balance_after),
            t.description,
            t.reference_id or "",
        )
    console.print(table)
