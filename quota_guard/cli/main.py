"""
CLI interface for Quota Guard.

Operator access to usage checks, consumption, credit grants and the ledgers.
"""

import logging
import sys
from datetime import datetime
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from quota_guard.config.loader import PlanCatalogConfig, load_plan_catalog
from quota_guard.core.credits import (
    CreditOperation,
    apply_top_up_credits_from_checkout,
    grant_recurring_credits_for_agency,
    topup_credits,
)
from quota_guard.core.decision import UsageDecision
from quota_guard.core.engine import check_usage, consume_usage, usage_summary
from quota_guard.core.period import UsagePeriod, get_window_with_offset
from quota_guard.core.scope import Scope
from quota_guard.storage import credit_repository, usage_repository
from quota_guard.storage.db import DEFAULT_DB_PATH, LedgerStore, utc_now

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1  # Business rejection or error

DB_OPTION = typer.Option(DEFAULT_DB_PATH, "--db", envvar="QUOTA_GUARD_DB", help="SQLite database path")
CATALOG_OPTION = typer.Option(
    "plans.yaml", "--catalog", "-c", envvar="QUOTA_GUARD_CATALOG", help="Plan catalog YAML"
)
AGENCY_OPTION = typer.Option(..., "--agency", "-a", help="Agency id")
SUB_ACCOUNT_OPTION = typer.Option(None, "--sub-account", "-s", help="Sub-account id")


def _scope(agency: str, sub_account: Optional[str]) -> Scope:
    if sub_account:
        return Scope.sub_account(agency, sub_account)
    return Scope.agency(agency)


def _store(db: str) -> LedgerStore:
    store = LedgerStore(db)
    store.initialize()
    return store


def _catalog(path: str) -> PlanCatalogConfig:
    try:
        return load_plan_catalog(path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error loading catalog:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """Quota Guard CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    if ctx.invoked_subcommand is None:
        console.print("Quota Guard - Use --help to see available commands")


@app.command()
def init(db: str = DB_OPTION):
    """Initialize the ledger database."""
    try:
        LedgerStore(db).initialize()
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def check(
    feature: str = typer.Argument(..., help="Feature key"),
    quantity: str = typer.Argument("1", help="Requested quantity"),
    agency: str = AGENCY_OPTION,
    sub_account: Optional[str] = SUB_ACCOUNT_OPTION,
    db: str = DB_OPTION,
    catalog: str = CATALOG_OPTION,
):
    """
    Dry-run a usage request.

    Read-only: reports whether the request would be admitted without
    recording anything.
    """
    plans = _catalog(catalog)
    decision = check_usage(_store(db), plans, _scope(agency, sub_account), feature, quantity)
    _display_decision(decision, "Usage Check")
    sys.exit(EXIT_CODE_PASS if decision.allowed else EXIT_CODE_FAIL)


@app.command()
def consume(
    feature: str = typer.Argument(..., help="Feature key"),
    quantity: str = typer.Argument("1", help="Quantity to record"),
    idempotency_key: str = typer.Option(..., "--key", "-k", help="Idempotency key"),
    action: Optional[str] = typer.Option(None, "--action", help="Action label"),
    agency: str = AGENCY_OPTION,
    sub_account: Optional[str] = SUB_ACCOUNT_OPTION,
    db: str = DB_OPTION,
    catalog: str = CATALOG_OPTION,
):
    """Record usage exactly once for the given idempotency key."""
    plans = _catalog(catalog)
    try:
        decision = consume_usage(
            _store(db),
            plans,
            _scope(agency, sub_account),
            feature,
            quantity,
            idempotency_key,
            action_key=action,
        )
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    _display_decision(decision, "Usage Consumption")
    sys.exit(EXIT_CODE_PASS if decision.allowed else EXIT_CODE_FAIL)


@app.command("grant-recurring")
def grant_recurring(
    agency: str = AGENCY_OPTION,
    plan: Optional[str] = typer.Option(None, "--plan", "-p", help="Plan id (defaults to the agency's plan)"),
    db: str = DB_OPTION,
    catalog: str = CATALOG_OPTION,
):
    """Grant this period's recurring credits for an agency."""
    plans = _catalog(catalog)
    plan_id = plan or plans.plan_for(agency)
    if plan_id is None:
        console.print(f"[red]Error:[/] agency {agency} has no plan")
        sys.exit(EXIT_CODE_FAIL)

    granted = grant_recurring_credits_for_agency(_store(db), plans, agency, plan_id)
    if granted:
        console.print(f"[green]✓[/] Granted recurring credits to {granted} wallet(s)")
    else:
        console.print("[yellow]No new grants[/] (already granted this period)")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def topup(
    feature: str = typer.Argument(..., help="Feature key"),
    credits: str = typer.Argument(..., help="Credits to add"),
    idempotency_key: Optional[str] = typer.Option(None, "--key", "-k", help="Idempotency key"),
    session: Optional[str] = typer.Option(None, "--session", help="Payment session id"),
    reason: Optional[str] = typer.Option(None, "--reason", help="Ledger reason"),
    agency: str = AGENCY_OPTION,
    sub_account: Optional[str] = SUB_ACCOUNT_OPTION,
    db: str = DB_OPTION,
    catalog: str = CATALOG_OPTION,
):
    """Add credits manually (--key) or for a completed payment (--session)."""
    if bool(idempotency_key) == bool(session):
        console.print("[red]Error:[/] pass exactly one of --key or --session")
        sys.exit(EXIT_CODE_FAIL)

    plans = _catalog(catalog)
    scope = _scope(agency, sub_account)
    try:
        if session:
            result = apply_top_up_credits_from_checkout(
                _store(db), plans, scope, feature, credits, session
            )
        else:
            result = topup_credits(
                _store(db), plans, scope, feature, credits, idempotency_key, reason=reason
            )
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    _display_credit_operation(result)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def balances(
    feature: Optional[str] = typer.Option(None, "--feature", "-f", help="Filter by feature"),
    agency: str = AGENCY_OPTION,
    sub_account: Optional[str] = SUB_ACCOUNT_OPTION,
    db: str = DB_OPTION,
):
    """List non-expired credit balances of a scope."""
    store = _store(db)
    with store.read() as conn:
        rows = credit_repository.list_balances(
            conn, _scope(agency, sub_account), utc_now(), feature_key=feature
        )

    table = Table(title="Credit Balances")
    table.add_column("Feature")
    table.add_column("Balance", justify="right")
    table.add_column("Expires")
    for row in rows:
        table.add_row(row.key.feature_key, str(row.balance), _format_time(row.expires_at))
    console.print(table)


@app.command()
def events(
    feature: Optional[str] = typer.Option(None, "--feature", "-f", help="Filter by feature"),
    period: str = typer.Option("monthly", "--period", help="daily|weekly|monthly|yearly"),
    periods_back: int = typer.Option(0, "--periods-back", min=0, help="0 = current period"),
    limit: int = typer.Option(250, "--limit", help="Maximum events"),
    agency: str = AGENCY_OPTION,
    sub_account: Optional[str] = SUB_ACCOUNT_OPTION,
    db: str = DB_OPTION,
):
    """List usage events recorded in a period window."""
    try:
        usage_period = UsagePeriod.parse(period)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    scope = _scope(agency, sub_account)
    window = get_window_with_offset(usage_period, periods_back)
    store = _store(db)
    with store.read() as conn:
        rows = usage_repository.list_events(
            conn, scope.key(feature) if feature else scope, window, limit=limit
        )

    table = Table(
        title=f"Usage Events {_format_time(window.period_start)} - {_format_time(window.period_end)}"
    )
    table.add_column("Occurred")
    table.add_column("Feature")
    table.add_column("Quantity", justify="right")
    table.add_column("Credits", justify="right")
    table.add_column("Action")
    table.add_column("Key")
    for row in rows:
        table.add_row(
            _format_time(row.occurred_at),
            row.key.feature_key,
            str(row.quantity),
            str(row.credits_consumed),
            row.action_key or "",
            row.idempotency_key,
        )
    console.print(table)


@app.command()
def usage(
    feature: Optional[str] = typer.Option(None, "--feature", "-f", help="Filter by feature"),
    period: str = typer.Option("monthly", "--period", help="daily|weekly|monthly|yearly"),
    periods_back: int = typer.Option(0, "--periods-back", min=0, help="0 = current period"),
    agency: str = AGENCY_OPTION,
    sub_account: Optional[str] = SUB_ACCOUNT_OPTION,
    db: str = DB_OPTION,
    catalog: str = CATALOG_OPTION,
):
    """Summarise usage per feature against the plan limits."""
    try:
        usage_period = UsagePeriod.parse(period)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    plans = _catalog(catalog)
    try:
        summary = usage_summary(
            _store(db),
            plans,
            _scope(agency, sub_account),
            usage_period,
            periods_back=periods_back,
            feature_key=feature,
        )
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    window = summary.window
    table = Table(
        title=f"Usage Summary {_format_time(window.period_start)} - {_format_time(window.period_end)}"
    )
    table.add_column("Feature")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    for row in summary.features:
        if row.is_unlimited:
            limit = "unlimited"
        else:
            limit = str(row.max_allowed) if row.max_allowed is not None else "-"
        table.add_row(row.feature_key, str(row.current_usage), limit)
    console.print(table)


@app.command()
def ledger(
    feature: str = typer.Argument(..., help="Feature key"),
    limit: int = typer.Option(100, "--limit", help="Maximum entries"),
    agency: str = AGENCY_OPTION,
    sub_account: Optional[str] = SUB_ACCOUNT_OPTION,
    db: str = DB_OPTION,
):
    """Show the credit ledger of one feature wallet."""
    key = _scope(agency, sub_account).key(feature)
    store = _store(db)
    with store.read() as conn:
        entries = credit_repository.list_entries(conn, key, limit=limit)
        total = credit_repository.ledger_total(conn, key)

    table = Table(title=f"Credit Ledger: {feature}")
    table.add_column("Occurred")
    table.add_column("Type")
    table.add_column("Delta", justify="right")
    table.add_column("Reason")
    table.add_column("Key")
    for entry in entries:
        table.add_row(
            _format_time(entry.occurred_at),
            entry.entry_type.value,
            str(entry.delta),
            entry.reason or "",
            entry.idempotency_key,
        )
    console.print(table)
    console.print(f"Ledger total: {total}")


def _format_time(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M UTC")


def _display_decision(decision: UsageDecision, title: str):
    """Display a usage decision."""
    console.print(f"\n[bold]{title}[/bold]")
    console.print("-" * 40)

    if decision.allowed:
        verdict = "[green]ALLOWED[/]"
        if decision.replayed:
            verdict += " [dim](replayed)[/]"
    else:
        verdict = f"[red]REJECTED[/] ({decision.reason.value})"
    console.print(f"Verdict: {verdict}")
    if decision.message:
        console.print(decision.message)

    console.print(f"Usage: {decision.current_usage} -> {decision.next_usage}")
    if decision.max_allowed is not None:
        console.print(f"Limit: {decision.max_allowed}")
    if decision.period_start is not None:
        console.print(
            f"Window: {_format_time(decision.period_start)} - {_format_time(decision.period_end)}"
        )
    if decision.credits_required:
        console.print(
            f"Credits required: {decision.credits_required} "
            f"(available {decision.credits_available})"
        )
    if decision.credits_consumed:
        console.print(f"Credits consumed: {decision.credits_consumed}")


def _display_credit_operation(result: CreditOperation):
    if result.applied:
        console.print(f"[green]✓[/] Added {result.amount} credits to {result.key}")
    else:
        console.print("[yellow]Already applied[/] (idempotency key seen before)")
    console.print(f"Balance: {result.balance}")


if __name__ == "__main__":
    app()
