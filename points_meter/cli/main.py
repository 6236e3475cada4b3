"""
CLI interface for points-meter.

Provides command-line access to billing, balances, history and the
operator-owned configuration (prices, exchange rate, margin).
"""

import sys
from decimal import Decimal, InvalidOperation
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from points_meter.config.loader import AppConfig, load_config
from points_meter.config.service import ConfigService
from points_meter.core.conversion import cost_to_points_ceiling, points_to_cost
from points_meter.core.errors import BillingError
from points_meter.core.pipeline import create_pipeline
from points_meter.core.pricing import ServiceKind
from points_meter.core.token_counter import UsageReport
from points_meter.logging import setup_logging
from points_meter.storage.ledger import LedgerRecorder
from points_meter.storage.models import BillingStatus
from points_meter.storage.repository import (
    BillingEventRepository,
    PriceCatalog,
    initialize_schema,
)

app = typer.Typer()
prices_app = typer.Typer(help="Manage the model price catalog.")
rate_app = typer.Typer(help="Show or set the points exchange rate.")
app.add_typer(prices_app, name="prices")
app.add_typer(rate_app, name="rate")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _parse_decimal(value: Optional[str], name: str) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(value)
    except InvalidOperation:
        raise typer.BadParameter(f"{name} must be a number, got {value!r}")


def _config(ctx: typer.Context) -> AppConfig:
    return ctx.obj


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    ),
    db_path: Optional[str] = typer.Option(
        None,
        "--db",
        help="Override the database path from the configuration"
    ),
):
    """points-meter CLI."""
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    if db_path:
        config = AppConfig(
            billing=config.billing,
            charge_policy=config.charge_policy,
            db_path=db_path,
            log_level=config.log_level,
        )
    setup_logging(config.log_level)
    ctx.obj = config
    if ctx.invoked_subcommand is None:
        console.print("points-meter - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the points-meter database."""
    try:
        initialize_schema(_config(ctx).db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def charge(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User to charge"),
    model: str = typer.Argument(..., help="Model that produced the usage"),
    input_units: Optional[int] = typer.Option(None, "--input-units", "-i", help="Input (prompt) units"),
    output_units: Optional[int] = typer.Option(None, "--output-units", "-o", help="Output (completion) units"),
    total_units: Optional[int] = typer.Option(None, "--total-units", "-t", help="Total units"),
    total_cost: Optional[str] = typer.Option(None, "--total-cost", help="Provider-reported total cost"),
    input_cost: Optional[str] = typer.Option(None, "--input-cost", help="Provider-reported input cost"),
    output_cost: Optional[str] = typer.Option(None, "--output-cost", help="Provider-reported output cost"),
    currency: Optional[str] = typer.Option(None, "--currency", help="Currency of reported costs"),
    text: Optional[str] = typer.Option(None, "--text", help="Text excerpt for estimation"),
    request_id: Optional[str] = typer.Option(None, "--request-id", help="Upstream request id"),
):
    """Bill one usage report to a user."""
    try:
        report = UsageReport(
            model_name=model,
            input_units=input_units,
            output_units=output_units,
            total_units=total_units,
            reported_total_cost=_parse_decimal(total_cost, "--total-cost"),
            reported_input_cost=_parse_decimal(input_cost, "--input-cost"),
            reported_output_cost=_parse_decimal(output_cost, "--output-cost"),
            currency=currency,
            source_text_excerpt=text,
        )
        outcome = create_pipeline(_config(ctx)).process(user_id, report, request_id=request_id)
    except BillingError as e:
        console.print(f"[red]Charge failed ({e.reason}):[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Charged {outcome.decision.points:,} points to {user_id}")
    console.print(f"Units: {outcome.counts.input_units:,} in / {outcome.counts.output_units:,} out"
                  f"{' (estimated)' if outcome.counts.estimated else ''}")
    console.print(f"Cost: {outcome.cost.total_cost} ({outcome.cost.source.value})")
    if outcome.decision.minimum_applied:
        console.print("[yellow]Minimum charge applied[/]")
    for anomaly in outcome.decision.anomalies:
        console.print(f"[yellow]{anomaly.severity.value.upper()}:[/] {anomaly.message}")
    console.print(f"New balance: {outcome.new_balance:,} points")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def balance(ctx: typer.Context, user_id: str = typer.Argument(..., help="User to look up")):
    """Show a user's balance."""
    config = _config(ctx)
    initialize_schema(config.db_path)
    points = LedgerRecorder(config.db_path).get_balance(user_id)
    value = points_to_cost(points, ConfigService(config).exchange_rate())
    console.print(f"{user_id}: {points:,} points ({value:.2f} {config.billing.currency})")


@app.command()
def topup(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User to credit"),
    points: Optional[int] = typer.Option(None, "--points", "-p", help="Points to add"),
    amount: Optional[str] = typer.Option(None, "--amount", "-a", help="Currency amount to convert to points"),
    description: str = typer.Option("Operator top-up", "--description", "-d", help="Audit description"),
):
    """Add points to a user's balance."""
    config = _config(ctx)
    initialize_schema(config.db_path)

    if (points is None) == (amount is None):
        console.print("[red]Error:[/] give exactly one of --points or --amount")
        sys.exit(EXIT_CODE_FAIL)
    if amount is not None:
        rate = ConfigService(config).exchange_rate()
        points = cost_to_points_ceiling(_parse_decimal(amount, "--amount"), rate)

    try:
        new_balance = LedgerRecorder(config.db_path).credit(user_id, points, description)
    except (ValueError, BillingError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Added {points:,} points to {user_id}, new balance {new_balance:,}")


@app.command()
def history(
    ctx: typer.Context,
    user_id: Optional[str] = typer.Option(None, "--user", "-u", help="Filter by user"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Filter by model"),
    failed: bool = typer.Option(False, "--failed", help="Only failed attempts"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum events to show"),
):
    """Show recent billing events."""
    config = _config(ctx)
    initialize_schema(config.db_path)
    events = BillingEventRepository(config.db_path).fetch_events(
        user_id=user_id,
        model=model,
        status=BillingStatus.FAILED if failed else None,
        limit=limit,
    )
    if not events:
        console.print("\n[dim]No billing events found.[/]")
        return

    table = Table(title="Billing events")
    table.add_column("Time")
    table.add_column("User")
    table.add_column("Model")
    table.add_column("Units", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Points", justify="right")
    table.add_column("Status")
    for event in events:
        status = event.status.value
        if event.status == BillingStatus.FAILED:
            status = f"[red]{status}[/] {event.failure_reason or ''}"
        table.add_row(
            event.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            event.user_id,
            event.model_name,
            f"{event.total_units:,}",
            str(event.total_cost),
            f"{event.points_deducted:,}",
            status,
        )
    console.print(table)


@app.command()
def margin(
    ctx: typer.Context,
    value: Optional[int] = typer.Argument(None, help="New profit margin percentage"),
):
    """Show or set the profit margin."""
    config = _config(ctx)
    initialize_schema(config.db_path)
    service = ConfigService(config)
    if value is None:
        console.print(f"Profit margin: {service.margin_percent()}%")
        return
    try:
        service.set_margin(value)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Profit margin set to {value}%")


@rate_app.command("show")
def rate_show(ctx: typer.Context):
    """Show the exchange rate in force and its history."""
    config = _config(ctx)
    initialize_schema(config.db_path)
    service = ConfigService(config)
    console.print(f"Current rate: {service.exchange_rate()} points per {config.billing.currency}")
    for rate in service.exchange_rate_history():
        console.print(
            f"  {rate.effective_at.strftime('%Y-%m-%d %H:%M:%S')}  "
            f"{rate.points_per_currency_unit}  ({rate.set_by or 'unknown'})"
        )


@rate_app.command("set")
def rate_set(
    ctx: typer.Context,
    value: str = typer.Argument(..., help="Points per currency unit"),
    changed_by: str = typer.Option("operator", "--by", help="Operator making the change"),
):
    """Set a new exchange rate, effective now."""
    config = _config(ctx)
    initialize_schema(config.db_path)
    try:
        rate = ConfigService(config).set_exchange_rate(_parse_decimal(value, "value"), changed_by)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Exchange rate set to {rate.points_per_currency_unit}")


@prices_app.command("list")
def prices_list(ctx: typer.Context):
    """List catalog records."""
    config = _config(ctx)
    initialize_schema(config.db_path)
    records = PriceCatalog(config.db_path).records()
    if not records:
        console.print("\n[dim]Price catalog is empty.[/]")
        return

    table = Table(title=f"Price catalog ({config.billing.currency} per 1K units)")
    table.add_column("Model")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Fixed fee", justify="right")
    table.add_column("Origin")
    table.add_column("Active")
    for record in records:
        table.add_row(
            record.model_name,
            str(record.input_unit_price),
            str(record.output_unit_price),
            str(record.fixed_fee) if record.fixed_fee is not None else "-",
            record.origin.value,
            "yes" if record.is_active else "[dim]no[/]",
        )
    console.print(table)


@prices_app.command("set")
def prices_set(
    ctx: typer.Context,
    model: str = typer.Argument(..., help="Model name"),
    input_price: str = typer.Argument(..., help="Input price per 1K units"),
    output_price: str = typer.Argument(..., help="Output price per 1K units"),
    fixed_fee: Optional[str] = typer.Option(None, "--fixed-fee", help="Bill a fixed fee per call instead"),
    changed_by: str = typer.Option("operator", "--by", help="Operator making the change"),
    reason: Optional[str] = typer.Option(None, "--reason", help="Reason for the change"),
):
    """Create or edit an operator-set price."""
    config = _config(ctx)
    initialize_schema(config.db_path)
    fee = _parse_decimal(fixed_fee, "--fixed-fee")
    try:
        record = PriceCatalog(config.db_path).set_operator_price(
            model,
            _parse_decimal(input_price, "input_price"),
            _parse_decimal(output_price, "output_price"),
            changed_by=changed_by,
            reason=reason,
            service_kind=ServiceKind.FIXED_FEE if fee is not None else ServiceKind.TOKEN_METERED,
            fixed_fee=fee,
        )
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] {record.model_name}: {record.input_unit_price} / {record.output_unit_price}")


@prices_app.command("toggle")
def prices_toggle(
    ctx: typer.Context,
    model: str = typer.Argument(..., help="Model name"),
    active: bool = typer.Option(True, "--active/--inactive", help="Activate or deactivate"),
    changed_by: str = typer.Option("operator", "--by", help="Operator making the change"),
    reason: Optional[str] = typer.Option(None, "--reason", help="Reason for the change"),
):
    """Activate or deactivate a price record."""
    config = _config(ctx)
    initialize_schema(config.db_path)
    try:
        record = PriceCatalog(config.db_path).set_active(model, active, changed_by, reason)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    state = "active" if record.is_active else "inactive"
    console.print(f"[green]✓[/] {record.model_name} is now {state}")


if __name__ == "__main__":
    app()
