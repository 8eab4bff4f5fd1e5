"""
Unit tests for invoice construction.
"""

from datetime import date, datetime
from decimal import Decimal

import pytest

from usage_billing.core.aggregator import CostBreakdown
from usage_billing.core.invoice import (
    LineItem,
    build_invoice_record,
    build_line_items,
    build_preview,
    format_date_range,
    render_preview,
    to_cents,
)
from usage_billing.storage.models import BillingCustomer, InvoiceStatus

START = datetime(2025, 1, 1)
END = datetime(2025, 1, 31, 23, 59, 59)


def make_breakdown(sms="0", voice="0", chat="0", retell_voice="0", markup_pct="0", warnings=()):
    sms, voice, chat, retell_voice = (Decimal(v) for v in (sms, voice, chat, retell_voice))
    subtotal = sms + voice + chat + retell_voice
    markup = subtotal * Decimal(markup_pct) / 100
    return CostBreakdown(
        chat_count=3,
        call_count=2,
        sms_count=10,
        total_segments=12,
        total_minutes=7,
        twilio_sms_cost_cad=sms,
        twilio_voice_cost_cad=voice,
        retell_chat_cost_cad=chat,
        retell_voice_cost_cad=retell_voice,
        subtotal=subtotal,
        markup_percentage=Decimal(markup_pct),
        markup_amount=markup,
        total=subtotal + markup,
        warnings=tuple(warnings),
    )


@pytest.fixture
def customer():
    return BillingCustomer(id="acme", name="Acme Dental", email="billing@acme.test")


class TestCents:
    """Test dollar to cent rounding."""

    @pytest.mark.parametrize("amount,cents", [
        ("0", 0),
        ("1.234", 123),
        ("1.235", 124),
        ("0.005", 1),
        ("0.1188", 12),
        ("120.00", 12000),
    ])
    def test_to_cents(self, amount, cents):
        assert to_cents(Decimal(amount)) == cents


class TestLineItems:
    """Test invoice line generation."""

    def test_period_formatting(self):
        assert format_date_range(date(2025, 1, 5), date(2025, 2, 4)) == "Jan 5, 2025 - Feb 4, 2025"

    def test_all_categories(self):
        breakdown = make_breakdown(sms="1.50", voice="2.25", chat="0.40", retell_voice="0.60", markup_pct="20")

        items = build_line_items(breakdown, START, END)

        assert [item.amount_cents for item in items] == [150, 225, 100, 95]
        assert items[0].description == (
            "SMS Services - Jan 1, 2025 - Jan 31, 2025\n12 segments, 3 conversations"
        )
        assert items[1].description == (
            "Voice Call Services - Jan 1, 2025 - Jan 31, 2025\n7 minutes, 2 calls"
        )
        assert items[2].description.startswith("AI Processing Services - Jan 1, 2025")
        assert items[3].description == "Service Markup (20%)"
        assert all(item.currency == "cad" for item in items)

    def test_zero_categories_omitted(self):
        items = build_line_items(make_breakdown(voice="5"), START, END)
        assert len(items) == 1
        assert items[0].description.startswith("Voice Call Services")

    def test_no_markup_line_without_markup(self):
        items = build_line_items(make_breakdown(sms="1"), START, END)
        assert not any(item.description.startswith("Service Markup") for item in items)

    def test_fractional_markup_label(self):
        items = build_line_items(make_breakdown(sms="10", markup_pct="12.50"), START, END)
        assert items[-1].description == "Service Markup (12.5%)"

    def test_empty_breakdown_has_no_lines(self):
        assert build_line_items(make_breakdown(), START, END) == []


class TestPreview:
    """Test invoice previews."""

    def test_preview_fields(self, customer):
        preview = build_preview(customer, make_breakdown(sms="1.50", voice="2.25"), START, END)

        assert preview.customer_id == "acme"
        assert preview.period_start == date(2025, 1, 1)
        assert preview.period_end == date(2025, 1, 31)
        assert preview.total_cents == 375
        assert preview.is_billable

    def test_zero_preview_not_billable(self, customer):
        preview = build_preview(customer, make_breakdown(), START, END)
        assert not preview.is_billable
        assert preview.total_cents == 0

    def test_render_includes_warnings(self, customer):
        breakdown = make_breakdown(sms="1.50", warnings=("Retell AI not configured; AI costs counted as zero",))
        text = render_preview(build_preview(customer, breakdown, START, END))

        assert "Invoice for Acme Dental (Jan 1, 2025 - Jan 31, 2025)" in text
        assert "$1.50" in text
        assert "Total: $1.50" in text
        assert "Warning: Retell AI not configured" in text


class TestInvoiceRecord:
    """Test ledger record snapshots."""

    def test_draft_record(self, customer):
        now = datetime(2025, 2, 1, 9, 0)
        preview = build_preview(customer, make_breakdown(sms="1.50", markup_pct="10"), START, END)

        record = build_invoice_record(preview, due_in_days=15, now=now)

        assert record.customer_id == "acme"
        assert record.status == InvoiceStatus.DRAFT
        assert record.due_date == date(2025, 2, 16)
        assert record.created_at == now
        assert record.sent_at is None
        assert record.total_sms_segments == 12
        assert record.subtotal_cad == Decimal("1.50")
        assert record.markup_amount_cad == Decimal("0.15")
        assert record.total_cad == Decimal("1.65")
        assert record.id is None

    def test_sent_record_has_sent_at(self, customer):
        now = datetime(2025, 2, 1, 9, 0)
        preview = build_preview(customer, make_breakdown(sms="1"), START, END)
        record = build_invoice_record(preview, status=InvoiceStatus.SENT, now=now)
        assert record.sent_at == now
        assert record.due_date == date(2025, 3, 3)

    def test_settled_status_rejected(self, customer):
        preview = build_preview(customer, make_breakdown(sms="1"), START, END)
        with pytest.raises(ValueError, match="must be draft or sent"):
            build_invoice_record(preview, status=InvoiceStatus.PAID)

    def test_negative_due_days_rejected(self, customer):
        preview = build_preview(customer, make_breakdown(sms="1"), START, END)
        with pytest.raises(ValueError, match="due_in_days must be >= 0"):
            build_invoice_record(preview, due_in_days=-1)

    def test_line_item_default_currency(self):
        assert LineItem("x", 100).currency == "cad"
