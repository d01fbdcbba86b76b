"""Analyze command: run the full pipeline for one proposal."""

import asyncio
import uuid

import typer
from rich.markdown import Markdown
from rich.table import Table

from ..app import app, console, get_json_mode, print_json
from ...analysis import run_analysis
from ...config import get_config
from ...core.errors import InsufficientBalanceError, LedgerPersistenceError, ProviderError
from ...storage.ledger_db import open_ledger_db


@app.command("analyze")
def analyze_command(
    proposal: str = typer.Argument(..., help="Proposal text to analyze"),
    user: str = typer.Option(..., "--user", "-u", help="User ID to bill"),
    analysis_id: str | None = typer.Option(
        None, "--analysis-id", help="Analysis ID (generated if omitted)"
    ),
):
    """Run an impact analysis and bill its model usage to a user.

    Example:
        whif analyze "Build free public transit" --user alice
    """
    config = get_config()
    analysis_id = analysis_id or str(uuid.uuid4())

    try:
        with console.status("[cyan]Analyzing proposal...[/cyan]"):
            state = asyncio.run(
                run_analysis(proposal, user, analysis_id, config=config)
            )
    except InsufficientBalanceError as e:
        console.print(
            f"[red]✗[/red] Insufficient balance: need {e.required}, "
            f"have {e.available}"
        )
        raise typer.Exit(1)
    except ProviderError as e:
        console.print(f"[red]✗[/red] Analysis failed: {e}")
        raise typer.Exit(1)
    except LedgerPersistenceError as e:
        console.print(f"[red]✗[/red] Ledger error: {e}")
        raise typer.Exit(1)

    with open_ledger_db(config.db_path_resolved) as db:
        summary = db.usage.get_summary_by_analysis_id(analysis_id)

    if get_json_mode():
        print_json(
            {
                "state": state.model_dump(mode="json"),
                "usage": summary.model_dump(mode="json"),
            }
        )
        return

    console.print()
    console.print(Markdown(state.final_summary))
    console.print()

    table = Table(title="Category scores")
    table.add_column("Category")
    table.add_column("Impacts", justify="right")
    table.add_column("Score", justify="right")
    for category, score in state.evaluated_scores.items():
        color = "green" if score > 0 else "red" if score < 0 else "white"
        table.add_row(
            category,
            str(len(state.grouped_categories.get(category, []))),
            f"[{color}]{score:+.2f}[/{color}]",
        )
    console.print(table)

    console.print(
        f"[dim]Analysis {analysis_id}: {summary.total_calls} calls "
        f"({summary.failed_calls} failed), "
        f"{summary.total_input_tokens + summary.total_output_tokens:,} tokens, "
        f"cost {summary.total_cost}[/dim]"
    )
