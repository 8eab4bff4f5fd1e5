"""
Invoice construction from cost breakdowns.

Turns a CostBreakdown into cent-denominated CAD line items and a ledger
record. Sending the invoice to a payment platform is left to the operator.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Union

from .aggregator import CostBreakdown
from .currency import format_cad
from usage_billing.storage.models import BillingCustomer, InvoiceRecord, InvoiceStatus

DateLike = Union[date, datetime]


@dataclass(frozen=True)
class LineItem:
    """One invoice line, amount in cents."""
    description: str
    amount_cents: int
    currency: str = "cad"


@dataclass(frozen=True)
class InvoicePreview:
    """What an invoice for a customer would contain, before it is recorded."""
    customer_id: str
    customer_name: str
    period_start: date
    period_end: date
    breakdown: CostBreakdown
    line_items: List[LineItem]

    @property
    def total_cents(self) -> int:
        return sum(item.amount_cents for item in self.line_items)

    @property
    def is_billable(self) -> bool:
        return self.breakdown.total > 0


def to_cents(amount: Decimal) -> int:
    """Round a dollar amount to whole cents, halves away from zero."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _as_date(value: DateLike) -> date:
    return value.date() if isinstance(value, datetime) else value


def format_date(value: DateLike) -> str:
    """Format a date like ``Jan 5, 2025``."""
    return f"{value:%b} {value.day}, {value.year}"


def format_date_range(start: DateLike, end: DateLike) -> str:
    return f"{format_date(start)} - {format_date(end)}"


def build_line_items(breakdown: CostBreakdown, start: DateLike, end: DateLike) -> List[LineItem]:
    """Build invoice lines, omitting categories with no cost.

    Args:
        breakdown: Priced usage for the period
        start: First day of the billing period
        end: Last day of the billing period

    Returns:
        SMS, voice, AI and markup lines in that order
    """
    period = format_date_range(start, end)
    items = []

    if breakdown.twilio_sms_cost_cad > 0:
        items.append(LineItem(
            description=(
                f"SMS Services - {period}\n"
                f"{breakdown.total_segments} segments, {breakdown.chat_count} conversations"
            ),
            amount_cents=to_cents(breakdown.twilio_sms_cost_cad),
        ))

    if breakdown.twilio_voice_cost_cad > 0:
        items.append(LineItem(
            description=(
                f"Voice Call Services - {period}\n"
                f"{breakdown.total_minutes} minutes, {breakdown.call_count} calls"
            ),
            amount_cents=to_cents(breakdown.twilio_voice_cost_cad),
        ))

    if breakdown.retell_cost_cad > 0:
        items.append(LineItem(
            description=f"AI Processing Services - {period}\nConversational AI, speech processing",
            amount_cents=to_cents(breakdown.retell_cost_cad),
        ))

    if breakdown.markup_amount > 0:
        items.append(LineItem(
            description=f"Service Markup ({breakdown.markup_percentage.normalize():f}%)",
            amount_cents=to_cents(breakdown.markup_amount),
        ))

    return items


def build_preview(
    customer: BillingCustomer,
    breakdown: CostBreakdown,
    start: DateLike,
    end: DateLike,
) -> InvoicePreview:
    return InvoicePreview(
        customer_id=customer.id,
        customer_name=customer.name,
        period_start=_as_date(start),
        period_end=_as_date(end),
        breakdown=breakdown,
        line_items=build_line_items(breakdown, start, end),
    )


def build_invoice_record(
    preview: InvoicePreview,
    due_in_days: int = 30,
    status: InvoiceStatus = InvoiceStatus.DRAFT,
    now: Optional[datetime] = None,
) -> InvoiceRecord:
    """Snapshot a preview into a ledger record.

    Raises:
        ValueError: If due_in_days is negative or status is already settled
    """
    if due_in_days < 0:
        raise ValueError("due_in_days must be >= 0")
    if status not in (InvoiceStatus.DRAFT, InvoiceStatus.SENT):
        raise ValueError(f"New invoices must be draft or sent, not {status.value}")

    now = now or datetime.now()
    breakdown = preview.breakdown
    return InvoiceRecord(
        customer_id=preview.customer_id,
        period_start=preview.period_start,
        period_end=preview.period_end,
        total_chats=breakdown.chat_count,
        total_calls=breakdown.call_count,
        total_sms_segments=breakdown.total_segments,
        total_call_minutes=breakdown.total_minutes,
        twilio_sms_cost_cad=breakdown.twilio_sms_cost_cad,
        twilio_voice_cost_cad=breakdown.twilio_voice_cost_cad,
        retell_chat_cost_cad=breakdown.retell_chat_cost_cad,
        retell_voice_cost_cad=breakdown.retell_voice_cost_cad,
        subtotal_cad=breakdown.subtotal,
        markup_amount_cad=breakdown.markup_amount,
        total_cad=breakdown.total,
        status=status,
        due_date=now.date() + timedelta(days=due_in_days),
        created_at=now,
        sent_at=now if status == InvoiceStatus.SENT else None,
    )


def render_preview(preview: InvoicePreview) -> str:
    """Plain-text rendering of a preview, one line item per block."""
    lines = [f"Invoice for {preview.customer_name} ({format_date_range(preview.period_start, preview.period_end)})"]
    for item in preview.line_items:
        lines.append(f"{item.description}\n    {format_cad(Decimal(item.amount_cents) / 100)}")
    lines.append(f"Total: {format_cad(Decimal(preview.total_cents) / 100)}")
    for warning in preview.breakdown.warnings:
        lines.append(f"Warning: {warning}")
    return "\n".join(lines)
