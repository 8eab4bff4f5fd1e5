"""
CLI interface for Usage Billing.

Provides command-line access to customers, cost calculation and invoices.
"""

import sqlite3
import sys
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

import structlog
import typer
import yaml
from rich.console import Console
from rich.table import Table

from usage_billing.clients.exchange_rate import ExchangeRateClient
from usage_billing.clients.retell import RetellClient
from usage_billing.clients.twilio import TwilioClient
from usage_billing.config.loader import BillingConfig, load_billing_config
from usage_billing.core.aggregator import CostAggregator, CostBreakdown
from usage_billing.core.currency import CurrencyConverter, format_cad
from usage_billing.core.invoice import build_invoice_record, build_preview
from usage_billing.core.pricing import calculate_combined_sms_cost, calculate_voice_cost
from usage_billing.core.segments import count_segments, detect_encoding
from usage_billing.storage.models import BillingCustomer, InvoiceStatus
from usage_billing.storage.repository import (
    CustomerRepository,
    InvoiceRepository,
    initialize_schema,
)

logger = structlog.get_logger()

app = typer.Typer()
customer_app = typer.Typer(help="Manage billed customers.")
invoice_app = typer.Typer(help="Preview, record and track invoices.")
app.add_typer(customer_app, name="customer")
app.add_typer(invoice_app, name="invoice")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DATE_FORMATS = ["%Y-%m-%d"]


class _State:
    """Per-invocation settings resolved by the root callback."""
    config: BillingConfig = BillingConfig()
    db_path: str = BillingConfig().storage.db_path


state = _State()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to YAML configuration file"
    ),
    db_path: Optional[str] = typer.Option(
        None, "--db", help="Override the SQLite database path"
    ),
):
    """Usage Billing CLI."""
    try:
        state.config = load_billing_config(config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error loading configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    state.db_path = db_path or state.config.storage.db_path

    if ctx.invoked_subcommand is None:
        console.print("Usage Billing - Use --help to see available commands")


def _build_converter(config: BillingConfig, live_rate: bool) -> CurrencyConverter:
    rate_client = ExchangeRateClient(
        url=config.currency.rate_url,
        timeout=config.currency.timeout_seconds,
    )
    converter = CurrencyConverter(
        fetch_rate=rate_client.fetch_usd_to_cad if live_rate else None,
        fallback_rate=config.currency.fallback_rate,
        refresh_interval=timedelta(hours=config.currency.refresh_interval_hours),
    )
    if live_rate:
        # One-shot process: fetch up front instead of in the background
        converter.refresh()
    return converter


def _build_aggregator(config: BillingConfig, live_rate: bool) -> CostAggregator:
    twilio = None
    if config.twilio.enabled:
        twilio = TwilioClient(config.twilio.account_sid, config.twilio.auth_token)
    retell = None
    if config.retell.enabled:
        retell = RetellClient(config.retell.api_key)
    return CostAggregator(
        twilio=twilio,
        retell=retell,
        converter=_build_converter(config, live_rate),
        rates=config.rates,
    )


def _period(start: datetime, end: datetime) -> tuple:
    """Make the end date inclusive of its whole day."""
    return start, end.replace(hour=23, minute=59, second=59, microsecond=999999)


def _money(amount: Decimal) -> str:
    return format_cad(amount)


def _display_breakdown(customer: BillingCustomer, breakdown: CostBreakdown) -> None:
    table = Table(title=f"Costs for {customer.name}")
    table.add_column("Category")
    table.add_column("Usage", justify="right")
    table.add_column("Cost (CAD)", justify="right")

    table.add_row("Twilio SMS", f"{breakdown.total_segments} segments", _money(breakdown.twilio_sms_cost_cad))
    table.add_row("Twilio voice", f"{breakdown.total_minutes} min", _money(breakdown.twilio_voice_cost_cad))
    table.add_row("Retell AI chats", f"{breakdown.chat_count} chats", _money(breakdown.retell_chat_cost_cad))
    table.add_row("Retell AI calls", f"{breakdown.call_count} calls", _money(breakdown.retell_voice_cost_cad))
    table.add_row("Subtotal", "", _money(breakdown.subtotal))
    table.add_row(f"Markup ({breakdown.markup_percentage}%)", "", _money(breakdown.markup_amount))
    table.add_row("[bold]Total[/bold]", "", f"[bold]{_money(breakdown.total)}[/bold]")
    console.print(table)

    for warning in breakdown.warnings:
        console.print(f"[yellow]Warning:[/] {warning}")


@app.command()
def init():
    """Initialize the billing database."""
    try:
        initialize_schema(state.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def segments(text: str = typer.Argument(..., help="SMS body")):
    """Show the encoding and segment count of an SMS body."""
    console.print(f"Encoding: {detect_encoding(text).value}")
    console.print(f"Characters: {len(text)}")
    console.print(f"Segments: {count_segments(text)}")


@app.command("sms-cost")
def sms_cost(
    messages: List[str] = typer.Argument(..., help="Message bodies of one conversation"),
    chat_cost_cents: float = typer.Option(
        0.0, "--chat-cost-cents", help="Retell AI chat cost in cents"
    ),
    live_rate: bool = typer.Option(
        False, "--live-rate/--fallback-rate", help="Fetch the exchange rate before converting"
    ),
):
    """Price the SMS messages of one conversation."""
    converter = _build_converter(state.config, live_rate)
    result = calculate_combined_sms_cost(
        messages,
        chat_cost_cents=chat_cost_cents,
        converter=converter,
        rates=state.config.rates,
        extra_segments=state.config.sms.initial_prompt_segments,
    )
    console.print(f"Messages: {result.sms.message_count}")
    console.print(f"Segments: {result.sms.segment_count}")
    console.print(f"SMS cost: USD {result.sms.cost_usd:.4f} -> CAD {result.sms.cost_cad:.4f}")
    if result.chat_cost_usd:
        console.print(f"AI chat cost: CAD {result.chat_cost_cad:.4f}")
    console.print(f"Total: CAD {result.total_cost_cad:.4f}")


@app.command("voice-cost")
def voice_cost(
    seconds: float = typer.Argument(..., help="Call duration in seconds"),
    live_rate: bool = typer.Option(
        False, "--live-rate/--fallback-rate", help="Fetch the exchange rate before converting"
    ),
):
    """Price an inbound call by duration."""
    converter = _build_converter(state.config, live_rate)
    result = calculate_voice_cost(seconds, converter=converter, rates=state.config.rates)
    console.print(f"Billed minutes: {result.billed_minutes}")
    console.print(f"Cost: USD {result.cost_usd:.4f} -> CAD {result.cost_cad:.4f}")
    console.print(
        f"Rate: USD {result.rate_per_minute_usd:.3f}/min -> CAD {result.rate_per_minute_cad:.3f}/min"
    )


@app.command()
def rate(
    refresh: bool = typer.Option(True, "--refresh/--no-refresh", help="Fetch the live rate"),
):
    """Show the USD to CAD exchange rate in use."""
    converter = _build_converter(state.config, refresh)
    source = "live" if converter.fetched_at is not None else "fallback"
    console.print(f"USD -> CAD: {converter.rate} ({source})")


@app.command()
def costs(
    customer_id: str = typer.Argument(..., help="Customer id"),
    start: datetime = typer.Option(..., "--start", "-s", formats=DATE_FORMATS, help="First day"),
    end: datetime = typer.Option(..., "--end", "-e", formats=DATE_FORMATS, help="Last day"),
    live_rate: bool = typer.Option(
        True, "--live-rate/--fallback-rate", help="Fetch the exchange rate before converting"
    ),
):
    """Calculate a customer's usage costs for a period."""
    try:
        customer = CustomerRepository(state.db_path).get_customer(customer_id)
        aggregator = _build_aggregator(state.config, live_rate)
        breakdown = aggregator.calculate_customer_costs(customer, *_period(start, end))
    except (KeyError, ValueError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    _display_breakdown(customer, breakdown)
    sys.exit(EXIT_CODE_PASS)


@customer_app.command("add")
def customer_add(
    customer_id: str = typer.Argument(..., help="Customer id"),
    name: str = typer.Option(..., "--name", "-n"),
    email: str = typer.Option(..., "--email"),
    markup: float = typer.Option(0.0, "--markup", "-m", help="Markup percentage"),
    agent_ids: List[str] = typer.Option([], "--agent", "-a", help="Retell agent id (repeatable)"),
    phone_number: Optional[str] = typer.Option(None, "--phone", help="Twilio phone number"),
    notes: Optional[str] = typer.Option(None, "--notes"),
):
    """Register a customer."""
    try:
        customer = BillingCustomer(
            id=customer_id,
            name=name,
            email=email,
            markup_percentage=Decimal(str(markup)),
            retell_agent_ids=tuple(agent_ids),
            phone_number=phone_number,
            notes=notes,
        )
        CustomerRepository(state.db_path).add_customer(customer)
    except (ValueError, sqlite3.Error) as e:
        console.print(f"[red]Error adding customer:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Added customer {customer_id}")


@customer_app.command("list")
def customer_list():
    """List registered customers."""
    try:
        customers = CustomerRepository(state.db_path).list_customers()
    except sqlite3.Error as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if not customers:
        console.print("[dim]No customers registered.[/]")
        return

    table = Table(title="Customers")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Markup", justify="right")
    table.add_column("Agents", justify="right")
    table.add_column("Phone")
    for customer in customers:
        table.add_row(
            customer.id,
            customer.name,
            f"{customer.markup_percentage}%",
            str(len(customer.retell_agent_ids)),
            customer.phone_number or "-",
        )
    console.print(table)


@customer_app.command("show")
def customer_show(customer_id: str = typer.Argument(..., help="Customer id")):
    """Show one customer's details."""
    try:
        customer = CustomerRepository(state.db_path).get_customer(customer_id)
    except (KeyError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[bold]{customer.name}[/bold] ({customer.id})")
    console.print(f"Email: {customer.email}")
    console.print(f"Markup: {customer.markup_percentage}%")
    console.print(f"Retell agents: {', '.join(customer.retell_agent_ids) or '-'}")
    console.print(f"Phone: {customer.phone_number or '-'}")
    if customer.notes:
        console.print(f"Notes: {customer.notes}")


@customer_app.command("remove")
def customer_remove(customer_id: str = typer.Argument(..., help="Customer id")):
    """Remove a customer that has no invoices."""
    try:
        CustomerRepository(state.db_path).delete_customer(customer_id)
    except sqlite3.IntegrityError:
        console.print(f"[red]Error:[/] customer {customer_id} still has invoices")
        sys.exit(EXIT_CODE_FAIL)
    except (KeyError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Removed customer {customer_id}")


@invoice_app.command("preview")
def invoice_preview(
    start: datetime = typer.Option(..., "--start", "-s", formats=DATE_FORMATS, help="First day"),
    end: datetime = typer.Option(..., "--end", "-e", formats=DATE_FORMATS, help="Last day"),
    customer_id: Optional[str] = typer.Option(None, "--customer", help="Only this customer"),
    live_rate: bool = typer.Option(
        True, "--live-rate/--fallback-rate", help="Fetch the exchange rate before converting"
    ),
):
    """Preview invoices for one or all customers."""
    try:
        repository = CustomerRepository(state.db_path)
        customers = [repository.get_customer(customer_id)] if customer_id else repository.list_customers()
        aggregator = _build_aggregator(state.config, live_rate)
        period = aggregator.calculate_period_costs(customers, *_period(start, end))
    except (KeyError, ValueError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if not customers:
        console.print("[dim]No customers registered.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Invoice preview")
    table.add_column("Customer")
    table.add_column("Subtotal", justify="right")
    table.add_column("Markup", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Warnings", justify="right")
    for customer in customers:
        breakdown = period.breakdowns[customer.id]
        table.add_row(
            customer.name,
            _money(breakdown.subtotal),
            _money(breakdown.markup_amount),
            _money(breakdown.total),
            str(len(breakdown.warnings)),
        )
    console.print(table)
    console.print(f"Total revenue: {_money(period.total_revenue)}")
    sys.exit(EXIT_CODE_PASS)


@invoice_app.command("create")
def invoice_create(
    customer_id: str = typer.Argument(..., help="Customer id"),
    start: datetime = typer.Option(..., "--start", "-s", formats=DATE_FORMATS, help="First day"),
    end: datetime = typer.Option(..., "--end", "-e", formats=DATE_FORMATS, help="Last day"),
    due_in_days: int = typer.Option(30, "--due-in-days", help="Days until payment is due"),
    sent: bool = typer.Option(False, "--sent", help="Record the invoice as already sent"),
    live_rate: bool = typer.Option(
        True, "--live-rate/--fallback-rate", help="Fetch the exchange rate before converting"
    ),
):
    """Calculate costs and record an invoice for a customer."""
    try:
        customer = CustomerRepository(state.db_path).get_customer(customer_id)
        aggregator = _build_aggregator(state.config, live_rate)
        period_start, period_end = _period(start, end)
        breakdown = aggregator.calculate_customer_costs(customer, period_start, period_end)
        preview = build_preview(customer, breakdown, period_start, period_end)
        record = build_invoice_record(
            preview,
            due_in_days=due_in_days,
            status=InvoiceStatus.SENT if sent else InvoiceStatus.DRAFT,
        )
        invoice_id = InvoiceRepository(state.db_path).insert_invoice(record)
        logger.info(
            "invoice_recorded",
            invoice_id=invoice_id,
            customer_id=customer.id,
            total=str(record.total_cad),
            status=record.status.value,
        )
    except (KeyError, ValueError, sqlite3.Error) as e:
        console.print(f"[red]Error creating invoice:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    for item in preview.line_items:
        console.print(f"{item.description.splitlines()[0]}: {_money(Decimal(item.amount_cents) / 100)}")
    for warning in breakdown.warnings:
        console.print(f"[yellow]Warning:[/] {warning}")
    console.print(
        f"[green]✓[/] Recorded invoice {invoice_id} ({record.status.value}) "
        f"for {customer.name}: {_money(record.total_cad)}"
    )
    sys.exit(EXIT_CODE_PASS)


@invoice_app.command("list")
def invoice_list(
    customer_id: Optional[str] = typer.Option(None, "--customer", help="Only this customer"),
    status: Optional[str] = typer.Option(None, "--status", help="Only this status"),
):
    """List recorded invoices, newest first."""
    try:
        status_filter = InvoiceStatus(status) if status else None
        invoices = InvoiceRepository(state.db_path).list_invoices(customer_id, status_filter)
    except (ValueError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if not invoices:
        console.print("[dim]No invoices recorded.[/]")
        return

    table = Table(title="Invoices")
    table.add_column("ID", justify="right")
    table.add_column("Customer")
    table.add_column("Period")
    table.add_column("Total", justify="right")
    table.add_column("Status")
    table.add_column("Due")
    for invoice in invoices:
        table.add_row(
            str(invoice.id),
            invoice.customer_id,
            f"{invoice.period_start} - {invoice.period_end}",
            _money(invoice.total_cad),
            invoice.status.value,
            str(invoice.due_date or "-"),
        )
    console.print(table)


@invoice_app.command("status")
def invoice_status(
    invoice_id: int = typer.Argument(..., help="Invoice id"),
    new_status: str = typer.Argument(..., help="sent, paid, overdue or cancelled"),
):
    """Move an invoice to a new status."""
    try:
        invoice = InvoiceRepository(state.db_path).update_status(invoice_id, InvoiceStatus(new_status))
    except (KeyError, ValueError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Invoice {invoice.id} is now {invoice.status.value}")


if __name__ == "__main__":
    app()
