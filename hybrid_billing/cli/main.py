"""
CLI interface for hybrid billing.

Provides command-line access to profiles, purchases and consumption.
"""

import dataclasses
import sys
from datetime import datetime
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from hybrid_billing.config.loader import DatabaseConfig, EngineConfig, load_engine_config
from hybrid_billing.config.logging import setup_logging
from hybrid_billing.core.errors import ConsumptionError
from hybrid_billing.core.service import HybridBillingService
from hybrid_billing.storage.models import ByokProviderConfig, PreferenceUpdate
from hybrid_billing.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

# Errors reported to the user instead of a traceback
_USER_ERRORS = (ConsumptionError, ValueError, FileNotFoundError, yaml.YAMLError)


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {escape(message)}")
    sys.exit(EXIT_CODE_FAIL)


def _split_csv(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    return [part.strip() for part in value.split(",") if part.strip()]


def _config(ctx: typer.Context) -> EngineConfig:
    return ctx.obj["config"]


def _service(ctx: typer.Context) -> HybridBillingService:
    return HybridBillingService.from_config(_config(ctx))


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database path"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="YAML engine config file"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level")
):
    """Hybrid billing CLI."""
    try:
        engine_config = load_engine_config(config) if config else EngineConfig()
        if db:
            engine_config = dataclasses.replace(
                engine_config,
                database=DatabaseConfig(path=db, busy_timeout=engine_config.database.busy_timeout)
            )
        if log_level:
            engine_config = dataclasses.replace(engine_config, log_level=log_level.upper())
    except _USER_ERRORS as e:
        _fail(f"Invalid configuration: {e}")

    setup_logging(engine_config.log_level)
    ctx.obj = {"config": engine_config}

    if ctx.invoked_subcommand is None:
        console.print("Hybrid billing - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the billing database."""
    try:
        initialize_schema(_config(ctx).database.path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {escape(str(e))}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("ensure-profile")
def ensure_profile(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User identifier"),
    email: Optional[str] = typer.Option(None, "--email", help="Contact email")
):
    """Create a profile with default preferences if it does not exist."""
    try:
        profile = _service(ctx).get_or_create_profile(user_id, email)
    except _USER_ERRORS as e:
        _fail(str(e))

    order = ", ".join(source.value for source in profile.consumption_order)
    console.print(f"[green]✓[/] Profile ready for {escape(profile.user_id)}")
    console.print(f"Consumption order: {order}")
    console.print(f"Token low threshold: {profile.notify_token_low_threshold:,}")
    sys.exit(EXIT_CODE_PASS)


@app.command("add-tokens")
def add_tokens(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User identifier"),
    balance_type: str = typer.Argument(..., help="subscription or one_time"),
    tokens: int = typer.Argument(..., help="Tokens purchased, before the platform fee"),
    source: str = typer.Option(..., "--source", "-s", help="Purchase source label"),
    priority: Optional[int] = typer.Option(None, "--priority", "-p", help="Consumption priority, lower first"),
    expiry: Optional[datetime] = typer.Option(None, "--expiry", formats=["%Y-%m-%d"], help="Expiry date")
):
    """Record a token purchase as a new balance."""
    try:
        balance_id = _service(ctx).add_tokens(user_id, balance_type, tokens, source, priority, expiry)
    except _USER_ERRORS as e:
        _fail(str(e))

    console.print(f"[green]✓[/] Added balance {balance_id}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def balances(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User identifier")
):
    """Show active balances in consumption order."""
    try:
        data = _service(ctx).get_balances(user_id)
    except _USER_ERRORS as e:
        _fail(str(e))

    table = Table(title=f"Balances for {escape(user_id)}")
    table.add_column("Type")
    table.add_column("Source")
    table.add_column("Priority", justify="right")
    table.add_column("Balance", justify="right")
    table.add_column("Used", justify="right")
    for balance in data["balances"]:
        table.add_row(
            balance.balance_type.value,
            escape(balance.purchase_source or "-"),
            str(balance.consumption_priority),
            f"{balance.virtual_token_balance:,}",
            f"{balance.total_tokens_used:,}"
        )
    console.print(table)

    summary = data["summary"]
    console.print(f"Subscription tokens: {summary.total_subscription_tokens:,}")
    console.print(f"One-time tokens: {summary.total_one_time_tokens:,}")
    console.print(f"[bold]Total tokens:[/bold] {summary.total_tokens:,}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def plan(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User identifier"),
    tokens: int = typer.Argument(..., help="Tokens the request needs"),
    api_key_present: bool = typer.Option(False, "--api-key-present", help="Caller holds a BYOK key")
):
    """Preview how a request would be funded. Nothing is debited."""
    try:
        consumption_plan = _service(ctx).preview_plan(user_id, tokens, api_key_present)
    except _USER_ERRORS as e:
        _fail(str(e))

    console.print(f"\n[bold]Consumption plan for {tokens:,} tokens[/bold]")
    console.print("-" * 40)
    for step in consumption_plan.steps:
        console.print(f"{step.type.value}: {step.tokens_to_consume:,} ({escape(step.reason)})")
    if not consumption_plan.steps:
        console.print("[dim]No funding steps[/]")
    _print_notifications(consumption_plan.notification_messages())
    console.print(f"Viable: {'yes' if consumption_plan.is_viable else 'no'}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def consume(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User identifier"),
    tokens: int = typer.Argument(..., help="Tokens to debit"),
    provider: str = typer.Option(..., "--provider", help="AI provider serving the request"),
    model: Optional[str] = typer.Option(None, "--model", help="Model serving the request"),
    request_id: Optional[str] = typer.Option(None, "--request-id", help="Request id for the ledger"),
    api_key_present: bool = typer.Option(False, "--api-key-present", help="Caller holds a BYOK key")
):
    """Debit tokens for a request. Exits 1 when it cannot be funded."""
    try:
        result = _service(ctx).execute_consumption(
            user_id, tokens, provider, model=model, request_id=request_id, api_key_present=api_key_present
        )
    except _USER_ERRORS as e:
        _fail(str(e))

    _print_notifications(result.notifications)
    if not result.success:
        console.print(f"[red]✗[/] Request for {tokens:,} tokens could not be funded")
        sys.exit(EXIT_CODE_FAIL)

    for applied in result.actual_consumption:
        line = f"{applied.type.value}: {applied.tokens_consumed:,}"
        if applied.new_balance is not None:
            line += f" (remaining {applied.new_balance:,})"
        console.print(line)
    via = "your API key" if result.fallback_used else "managed balances"
    console.print(f"[green]✓[/] Consumed {result.tokens_consumed:,} tokens via {via}")
    console.print(f"Log entry: {result.usage_log_id}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def history(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User identifier"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum entries to show")
):
    """Show consumption history, most recent first."""
    try:
        entries = _service(ctx).get_consumption_history(user_id, limit)
    except _USER_ERRORS as e:
        _fail(str(e))

    if not entries:
        console.print("\n[bold yellow]No consumption history found[/]\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Consumption history for {escape(user_id)}")
    table.add_column("Time")
    table.add_column("Tokens", justify="right")
    table.add_column("Sources")
    for entry in entries:
        sources = ", ".join(
            f"{applied['type']}:{applied['tokens_consumed']}" for applied in entry.actual_consumption
        )
        table.add_row(
            entry.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            f"{entry.total_tokens_needed:,}",
            sources
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("set-preferences")
def set_preferences(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User identifier"),
    order: Optional[str] = typer.Option(None, "--order", help="Comma-separated consumption order"),
    byok: Optional[bool] = typer.Option(None, "--byok/--no-byok", help="Allow BYOK fallback"),
    threshold: Optional[int] = typer.Option(None, "--threshold", help="Token low notification threshold"),
    notify_fallback: Optional[bool] = typer.Option(
        None, "--notify-fallback/--no-notify-fallback", help="Notify on BYOK fallback"
    ),
    notify_one_time: Optional[bool] = typer.Option(
        None, "--notify-one-time/--no-notify-one-time", help="Notify when one-time tokens are used"
    )
):
    """Update consumption preferences. Omitted options are unchanged."""
    try:
        update = PreferenceUpdate(
            consumption_order=_split_csv(order),
            byok_enabled=byok,
            notify_token_low_threshold=threshold,
            notify_fallback_to_byok=notify_fallback,
            notify_one_time_consumed=notify_one_time
        )
        if update.is_empty():
            _fail("No preferences given")
        _service(ctx).update_preferences(user_id, update)
    except _USER_ERRORS as e:
        _fail(str(e))

    console.print(f"[green]✓[/] Preferences updated for {escape(user_id)}")
    sys.exit(EXIT_CODE_PASS)


@app.command("configure-byok")
def configure_byok(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User identifier"),
    providers: str = typer.Option(..., "--providers", help="Comma-separated provider names"),
    enabled: bool = typer.Option(True, "--enable/--disable", help="Enable BYOK fallback")
):
    """Configure the providers a user brings their own key for."""
    try:
        names = _split_csv(providers)
        configured = _service(ctx).configure_byok(
            user_id, {name: ByokProviderConfig(enabled=True) for name in names}, enabled
        )
    except _USER_ERRORS as e:
        _fail(str(e))

    console.print(f"[green]✓[/] BYOK configured for: {', '.join(configured)}")
    sys.exit(EXIT_CODE_PASS)


def _print_notifications(messages: List[str]) -> None:
    for message in messages:
        console.print(f"[yellow]![/] {escape(message)}")


if __name__ == "__main__":
    app()
