"""
Unit tests for customer cost aggregation.

Tests source pricing precedence, markup, and degradation when a usage
source fails.
"""

from datetime import datetime
from decimal import Decimal
from unittest.mock import Mock

import httpx
import pytest

from usage_billing.clients.errors import UsageSourceError
from usage_billing.clients.retell import ConversationRecord, RetellClient
from usage_billing.clients.twilio import TelephonyCallRecord, TelephonyMessageRecord, TwilioClient
from usage_billing.core.aggregator import CostAggregator, CostBreakdown, apply_markup
from usage_billing.core.currency import CurrencyConverter
from usage_billing.storage.models import BillingCustomer

START = datetime(2025, 1, 1)
END = datetime(2025, 1, 31, 23, 59, 59)


def make_customer(markup="0", agents=("agent_1",), phone="+18005550100", customer_id="acme"):
    return BillingCustomer(
        id=customer_id,
        name="Acme Dental",
        email="billing@acme.test",
        markup_percentage=Decimal(markup),
        retell_agent_ids=agents,
        phone_number=phone,
    )


def make_twilio(messages=(), calls=()):
    twilio = Mock(spec=TwilioClient)
    twilio.is_configured.return_value = True
    twilio.get_messages.return_value = list(messages)
    twilio.get_calls.return_value = list(calls)
    return twilio


def make_retell(calls=(), chats=()):
    retell = Mock(spec=RetellClient)
    retell.is_configured.return_value = True
    retell.list_calls.return_value = list(calls)
    retell.list_chats.return_value = list(chats)
    return retell


def conversation(record_id, cents):
    return ConversationRecord(
        record_id=record_id,
        agent_id="agent_1",
        start_timestamp_ms=1735689600000,
        duration_seconds=Decimal("60"),
        cost_cents=Decimal(cents),
    )


@pytest.fixture
def converter():
    return CurrencyConverter(fallback_rate=Decimal("1.35"))


class TestApplyMarkup:
    """Test markup arithmetic."""

    @pytest.mark.parametrize("subtotal,pct,markup,total", [
        ("100", "0", "0", "100"),
        ("100", "15", "15", "115"),
        ("100", "100", "100", "200"),
        ("100.00", "20", "20.00", "120.00"),
        ("0", "50", "0", "0"),
    ])
    def test_markup(self, subtotal, pct, markup, total):
        markup_amount, result = apply_markup(Decimal(subtotal), Decimal(pct))
        assert markup_amount == Decimal(markup)
        assert result == Decimal(total)


class TestCustomerCosts:
    """Test aggregation for a single customer."""

    def test_twilio_price_takes_precedence(self, converter):
        """Reported prices win; unpriced records fall back to the rate card."""
        twilio = make_twilio(
            messages=[
                TelephonyMessageRecord("SM1", "Hello", 1, Decimal("0.0079")),
                TelephonyMessageRecord("SM2", "Hi", 2, None),
            ],
            calls=[
                TelephonyCallRecord("CA1", 125, Decimal("0.05")),
                TelephonyCallRecord("CA2", 61, None),
            ],
        )
        aggregator = CostAggregator(twilio=twilio, retell=make_retell(), converter=converter)

        breakdown = aggregator.calculate_customer_costs(make_customer(agents=()), START, END)

        assert breakdown.sms_count == 2
        assert breakdown.total_segments == 3
        assert breakdown.twilio_sms_cost_cad == (Decimal("0.0079") + 2 * Decimal("0.0083")) * Decimal("1.35")
        assert breakdown.total_minutes == 5
        assert breakdown.twilio_voice_cost_cad == (Decimal("0.05") + 2 * Decimal("0.022")) * Decimal("1.35")
        assert breakdown.warnings == ()
        assert breakdown.is_complete

    def test_segments_counted_from_body_when_missing(self, converter):
        twilio = make_twilio(messages=[TelephonyMessageRecord("SM1", "a" * 161, None, None)])
        aggregator = CostAggregator(twilio=twilio, converter=converter)

        breakdown = aggregator.calculate_customer_costs(make_customer(agents=()), START, END)
        assert breakdown.total_segments == 2

    def test_twilio_queried_with_customer_phone(self, converter):
        twilio = make_twilio()
        aggregator = CostAggregator(twilio=twilio, converter=converter)

        aggregator.calculate_customer_costs(make_customer(agents=()), START, END)

        twilio.get_messages.assert_called_once_with(START, END, "+18005550100")
        twilio.get_calls.assert_called_once_with(START, END, "+18005550100")

    def test_retell_costs_are_cents(self, converter):
        retell = make_retell(
            calls=[conversation("call_1", "150"), conversation("call_2", "50")],
            chats=[conversation("chat_1", "10")],
        )
        aggregator = CostAggregator(twilio=make_twilio(), retell=retell, converter=converter)

        breakdown = aggregator.calculate_customer_costs(make_customer(), START, END)

        assert breakdown.call_count == 2
        assert breakdown.chat_count == 1
        assert breakdown.retell_voice_cost_cad == Decimal("2.00") * Decimal("1.35")
        assert breakdown.retell_chat_cost_cad == Decimal("0.10") * Decimal("1.35")
        assert breakdown.retell_cost_cad == Decimal("2.835")

    def test_retell_queried_in_milliseconds_per_agent(self, converter):
        retell = make_retell()
        aggregator = CostAggregator(twilio=make_twilio(), retell=retell, converter=converter)

        aggregator.calculate_customer_costs(make_customer(agents=("a1", "a2")), START, END)

        start_ms = int(START.timestamp() * 1000)
        end_ms = int(END.timestamp() * 1000)
        assert retell.list_calls.call_count == 2
        retell.list_calls.assert_any_call("a1", start_ms, end_ms)
        retell.list_chats.assert_any_call("a2", start_ms, end_ms)

    def test_subtotal_markup_and_total(self, converter):
        twilio = make_twilio(calls=[TelephonyCallRecord("CA1", 60, Decimal("10"))])
        aggregator = CostAggregator(twilio=twilio, converter=converter)

        breakdown = aggregator.calculate_customer_costs(make_customer(markup="20", agents=()), START, END)

        assert breakdown.subtotal == Decimal("13.50")
        assert breakdown.markup_percentage == Decimal("20")
        assert breakdown.markup_amount == Decimal("2.70")
        assert breakdown.total == Decimal("16.20")

    def test_retell_failure_keeps_twilio_costs(self, converter):
        """One failing source yields a warning, not an error."""
        twilio = make_twilio(messages=[TelephonyMessageRecord("SM1", "Hello", 1, Decimal("0.01"))])
        retell = make_retell()
        retell.list_calls.side_effect = UsageSourceError("retell", "HTTP 500", 500)
        aggregator = CostAggregator(twilio=twilio, retell=retell, converter=converter)

        breakdown = aggregator.calculate_customer_costs(make_customer(), START, END)

        assert breakdown.twilio_sms_cost_cad == Decimal("0.0135")
        assert breakdown.retell_voice_cost_cad == 0
        assert len(breakdown.warnings) == 1
        assert breakdown.warnings[0].startswith("Retell AI calls unavailable for agent agent_1")
        assert not breakdown.is_complete

    def test_twilio_sms_failure_keeps_voice(self, converter):
        twilio = make_twilio(calls=[TelephonyCallRecord("CA1", 60, Decimal("1"))])
        twilio.get_messages.side_effect = UsageSourceError("twilio", "HTTP 503", 503)
        aggregator = CostAggregator(twilio=twilio, converter=converter)

        breakdown = aggregator.calculate_customer_costs(make_customer(agents=()), START, END)

        assert breakdown.twilio_sms_cost_cad == 0
        assert breakdown.twilio_voice_cost_cad == Decimal("1.35")
        assert breakdown.warnings == ("Twilio SMS usage unavailable: twilio: HTTP 503",)

    def test_malformed_twilio_payload_becomes_warning(self, converter):
        def handler(request):
            if request.url.path.endswith("/Messages.json"):
                return httpx.Response(200, json={"messages": ["oops"]})
            return httpx.Response(200, json={"calls": [{"sid": "CA1", "duration": "60", "price": "-1"}]})

        twilio = TwilioClient("AC123", "secret", transport=httpx.MockTransport(handler))
        aggregator = CostAggregator(twilio=twilio, converter=converter)

        breakdown = aggregator.calculate_customer_costs(make_customer(agents=()), START, END)

        assert breakdown.twilio_sms_cost_cad == 0
        assert breakdown.twilio_voice_cost_cad == Decimal("1.35")
        assert len(breakdown.warnings) == 1
        assert breakdown.warnings[0].startswith("Twilio SMS usage unavailable")

    def test_unconfigured_sources_warn_once(self, converter):
        aggregator = CostAggregator(converter=converter)

        breakdown = aggregator.calculate_customer_costs(make_customer(), START, END)

        assert breakdown.total == 0
        assert breakdown.warnings == (
            "Twilio not configured; SMS and voice costs counted as zero",
            "Retell AI not configured; AI costs counted as zero",
        )

    def test_customer_without_agents_skips_retell(self, converter):
        retell = make_retell()
        aggregator = CostAggregator(twilio=make_twilio(), retell=retell, converter=converter)

        breakdown = aggregator.calculate_customer_costs(make_customer(agents=()), START, END)

        retell.list_calls.assert_not_called()
        assert breakdown.warnings == ()

    def test_start_after_end_rejected(self, converter):
        aggregator = CostAggregator(converter=converter)
        with pytest.raises(ValueError, match="start must not be after end"):
            aggregator.calculate_customer_costs(make_customer(), END, START)


class TestPeriodCosts:
    """Test aggregation across customers."""

    def test_totals_across_customers(self, converter):
        twilio = make_twilio(calls=[TelephonyCallRecord("CA1", 60, Decimal("1"))])
        retell = make_retell(chats=[conversation("chat_1", "100")])
        aggregator = CostAggregator(twilio=twilio, retell=retell, converter=converter)
        customers = [
            make_customer(customer_id="a", markup="0"),
            make_customer(customer_id="b", markup="100"),
        ]

        period = aggregator.calculate_period_costs(customers, START, END)

        assert set(period.breakdowns) == {"a", "b"}
        assert isinstance(period.breakdowns["a"], CostBreakdown)
        assert period.twilio_voice_cost == Decimal("2.70")
        assert period.retell_cost == Decimal("2.70")
        assert period.chat_count == 2
        assert period.markup_amount == Decimal("2.70")
        assert period.total_revenue == Decimal("8.10")

    def test_empty_period(self, converter):
        period = CostAggregator(converter=converter).calculate_period_costs([], START, END)
        assert period.total_revenue == 0
        assert period.breakdowns == {}
