"""Usage command: token and cost totals for one analysis."""

import typer
from rich.table import Table

from ..app import app, console, get_json_mode, print_json
from ...config import get_config
from ...storage.ledger_db import open_ledger_db


@app.command("usage")
def usage_command(
    analysis_id: str = typer.Argument(..., help="Analysis ID"),
):
    """Show token usage and cost for an analysis."""
    with open_ledger_db(get_config().db_path_resolved) as db:
        summary = db.usage.get_summary_by_analysis_id(analysis_id)

    if get_json_mode():
        print_json(summary.model_dump(mode="json"))
        return

    if summary.total_calls == 0:
        console.print(f"[dim]No usage recorded for {analysis_id}[/dim]")
        return

    table = Table(title=f"Usage for {analysis_id}")
    table.add_column("Model")
    table.add_column("Calls", justify="right")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Cost", justify="right")
    for mu in summary.by_model:
        table.add_row(
            mu.model_name,
            str(mu.calls),
            f"{mu.input_tokens:,}",
            f"{mu.output_tokens:,}",
            str(mu.cost),
        )
    table.add_row(
        "[bold]Total[/bold]",
        str(summary.total_calls),
        f"{summary.total_input_tokens:,}",
        f"{summary.total_output_tokens:,}",
        f"[bold]{summary.total_cost}[/bold]",
    )
    console.print(table)
    if summary.failed_calls:
        console.print(f"[yellow]{summary.failed_calls} failed attempts[/yellow]")
