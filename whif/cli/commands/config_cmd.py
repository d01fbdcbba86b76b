"""Config command for viewing whif configuration."""

import typer

from ..app import app, console, get_json_mode, print_json
from ...config import CONFIG_FILE, get_api_key_for_provider, get_config


@app.command("config")
def config_command(
    action: str = typer.Argument("show", help="Action: show"),
):
    """Show the resolved configuration (file + env vars + defaults)."""
    if action != "show":
        console.print(f"[red]Unknown action:[/red] {action}")
        console.print("Valid actions: show")
        raise typer.Exit(1)

    config = get_config()
    if get_json_mode():
        print_json(config.to_dict())
        return

    console.print()
    console.print("[bold]Whif Configuration[/bold]")
    console.print("─" * 40)

    console.print()
    console.print("[bold cyan]Models[/bold cyan] (primary -> fallbacks, temperature)")
    for stage, route in config.to_dict()["models"].items():
        chain = " -> ".join([route["model"], *route["fallbacks"]])
        console.print(f"  {stage:<11} = {chain} (t={route['temperature']})")

    console.print()
    console.print("[bold cyan]Retry[/bold cyan]")
    console.print(f"  max_retries   = {config.retry.max_retries}")
    console.print(f"  base_delay_ms = {config.retry.base_delay_ms}")
    console.print(f"  max_delay_ms  = {config.retry.max_delay_ms}")
    console.print(f"  timeout_ms    = {config.retry.timeout_ms}")

    console.print()
    console.print("[bold cyan]Ledger[/bold cyan]")
    console.print(f"  initial_allowance = {config.ledger.initial_allowance}")
    console.print(f"  estimated_cost    = {config.ledger.estimated_cost}")
    console.print(f"  db_path           = {config.db_path}")

    console.print()
    console.print("[bold cyan]API Keys[/bold cyan] (from env vars)")
    _show_key_status("openai", "OPENAI_API_KEY")
    _show_key_status("anthropic", "ANTHROPIC_API_KEY")
    _show_key_status("gemini", "GEMINI_API_KEY")

    console.print()
    if CONFIG_FILE.exists():
        console.print(f"Config file: {CONFIG_FILE}")
    else:
        console.print(f"Config file: [dim]not created yet[/dim] ({CONFIG_FILE})")
    console.print()


def _show_key_status(provider: str, env_var_label: str):
    """Show whether an API key is configured."""
    key = get_api_key_for_provider(provider)
    if key:
        masked = key[:8] + "..." + key[-4:] if len(key) > 16 else "***"
        console.print(f"  {env_var_label}: [green]{masked}[/green]")
    else:
        console.print(f"  {env_var_label}: [dim]not set[/dim]")
