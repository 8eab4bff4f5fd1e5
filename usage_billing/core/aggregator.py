"""
Customer cost aggregation.

Combines telephony usage (Twilio SMS and voice) with conversational-AI
usage (Retell calls and chats) for a customer and billing period, converts
everything to CAD and applies the customer's markup.

Aggregation never fails because a usage source is down: the affected cost
category counts as zero and a warning is attached to the breakdown, since
every invoice is reviewed by an operator before it is sent.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

import structlog

from .currency import CurrencyConverter, Number, get_converter, to_decimal
from .pricing import DEFAULT_RATE_CARD, RateCard, billed_minutes
from .segments import count_segments
from usage_billing.clients.errors import UsageSourceError
from usage_billing.clients.retell import RetellClient
from usage_billing.clients.twilio import TwilioClient
from usage_billing.storage.models import BillingCustomer

logger = structlog.get_logger()

ZERO = Decimal("0")


@dataclass(frozen=True)
class CostBreakdown:
    """Priced usage for one customer and period. All amounts are CAD."""
    chat_count: int
    call_count: int
    sms_count: int
    total_segments: int
    total_minutes: int
    twilio_sms_cost_cad: Decimal
    twilio_voice_cost_cad: Decimal
    retell_chat_cost_cad: Decimal
    retell_voice_cost_cad: Decimal
    subtotal: Decimal
    markup_percentage: Decimal
    markup_amount: Decimal
    total: Decimal
    warnings: Tuple[str, ...] = ()

    @property
    def retell_cost_cad(self) -> Decimal:
        return self.retell_chat_cost_cad + self.retell_voice_cost_cad

    @property
    def is_complete(self) -> bool:
        """True when every usage source answered."""
        return not self.warnings


@dataclass
class PeriodCosts:
    """Costs across all customers for a billing period."""
    breakdowns: Dict[str, CostBreakdown] = field(default_factory=dict)

    @property
    def total_revenue(self) -> Decimal:
        return sum((b.total for b in self.breakdowns.values()), ZERO)

    @property
    def chat_count(self) -> int:
        return sum(b.chat_count for b in self.breakdowns.values())

    @property
    def call_count(self) -> int:
        return sum(b.call_count for b in self.breakdowns.values())

    @property
    def twilio_sms_cost(self) -> Decimal:
        return sum((b.twilio_sms_cost_cad for b in self.breakdowns.values()), ZERO)

    @property
    def twilio_voice_cost(self) -> Decimal:
        return sum((b.twilio_voice_cost_cad for b in self.breakdowns.values()), ZERO)

    @property
    def retell_cost(self) -> Decimal:
        return sum((b.retell_cost_cad for b in self.breakdowns.values()), ZERO)

    @property
    def markup_amount(self) -> Decimal:
        return sum((b.markup_amount for b in self.breakdowns.values()), ZERO)


def apply_markup(subtotal: Number, markup_percentage: Number) -> Tuple[Decimal, Decimal]:
    """Return ``(markup_amount, total)`` for a subtotal and percentage."""
    subtotal = to_decimal(subtotal)
    markup_amount = subtotal * to_decimal(markup_percentage) / 100
    return markup_amount, subtotal + markup_amount


@dataclass
class _Usage:
    count: int = 0
    units: int = 0
    cost_usd: Decimal = ZERO


class CostAggregator:
    """Aggregates a customer's usage costs from the configured sources."""

    def __init__(
        self,
        twilio: Optional[TwilioClient] = None,
        retell: Optional[RetellClient] = None,
        converter: Optional[CurrencyConverter] = None,
        rates: RateCard = DEFAULT_RATE_CARD,
    ):
        """Initialize the aggregator.

        Args:
            twilio: Telephony usage source; None counts SMS and voice as zero
            retell: Conversational-AI usage source; None counts AI costs as zero
            converter: Currency converter, defaults to the process-wide one
            rates: Rates used when Twilio has not priced a record
        """
        self.twilio = twilio
        self.retell = retell
        self.converter = converter or get_converter()
        self.rates = rates

    def calculate_customer_costs(
        self,
        customer: BillingCustomer,
        start: datetime,
        end: datetime,
    ) -> CostBreakdown:
        """Calculate a customer's costs for a date range.

        Args:
            customer: Customer whose markup and usage identifiers apply
            start: Start of the billing period (inclusive)
            end: End of the billing period (inclusive)

        Returns:
            CostBreakdown with warnings for any usage source that was skipped

        Raises:
            ValueError: If start is after end
        """
        if start > end:
            raise ValueError("start must not be after end")

        warnings: List[str] = []
        sms = self._twilio_sms(customer, start, end, warnings)
        voice = self._twilio_voice(customer, start, end, warnings)
        calls, chats = self._retell(customer, start, end, warnings)

        convert = self.converter.convert_usd_to_cad
        sms_cad = convert(sms.cost_usd)
        voice_cad = convert(voice.cost_usd)
        retell_voice_cad = convert(calls.cost_usd)
        retell_chat_cad = convert(chats.cost_usd)

        subtotal = sms_cad + voice_cad + retell_chat_cad + retell_voice_cad
        markup_amount, total = apply_markup(subtotal, customer.markup_percentage)

        logger.info(
            "customer_costs_calculated",
            customer_id=customer.id,
            subtotal=str(subtotal),
            total=str(total),
            warnings=len(warnings),
        )

        return CostBreakdown(
            chat_count=chats.count,
            call_count=calls.count,
            sms_count=sms.count,
            total_segments=sms.units,
            total_minutes=voice.units,
            twilio_sms_cost_cad=sms_cad,
            twilio_voice_cost_cad=voice_cad,
            retell_chat_cost_cad=retell_chat_cad,
            retell_voice_cost_cad=retell_voice_cad,
            subtotal=subtotal,
            markup_percentage=customer.markup_percentage,
            markup_amount=markup_amount,
            total=total,
            warnings=tuple(warnings),
        )

    def calculate_period_costs(
        self,
        customers: Iterable[BillingCustomer],
        start: datetime,
        end: datetime,
    ) -> PeriodCosts:
        """Calculate costs for every customer over the same period."""
        period = PeriodCosts()
        for customer in customers:
            period.breakdowns[customer.id] = self.calculate_customer_costs(customer, start, end)
        return period

    def _twilio_ready(self, warnings: List[str]) -> bool:
        if self.twilio is None or not self.twilio.is_configured():
            warning = "Twilio not configured; SMS and voice costs counted as zero"
            if warning not in warnings:
                warnings.append(warning)
            return False
        return True

    def _twilio_sms(
        self,
        customer: BillingCustomer,
        start: datetime,
        end: datetime,
        warnings: List[str],
    ) -> _Usage:
        usage = _Usage()
        if not self._twilio_ready(warnings):
            return usage
        try:
            messages = self.twilio.get_messages(start, end, customer.phone_number)
        except UsageSourceError as e:
            logger.warning("twilio_sms_unavailable", customer_id=customer.id, error=str(e))
            warnings.append(f"Twilio SMS usage unavailable: {e}")
            return usage

        for message in messages:
            segments = message.num_segments
            if segments is None:
                segments = count_segments(message.body)
            usage.count += 1
            usage.units += segments
            if message.price_usd is not None:
                usage.cost_usd += message.price_usd
            else:
                usage.cost_usd += segments * self.rates.sms_per_segment_usd
        return usage

    def _twilio_voice(
        self,
        customer: BillingCustomer,
        start: datetime,
        end: datetime,
        warnings: List[str],
    ) -> _Usage:
        usage = _Usage()
        if not self._twilio_ready(warnings):
            return usage
        try:
            calls = self.twilio.get_calls(start, end, customer.phone_number)
        except UsageSourceError as e:
            logger.warning("twilio_voice_unavailable", customer_id=customer.id, error=str(e))
            warnings.append(f"Twilio voice usage unavailable: {e}")
            return usage

        for call in calls:
            minutes = billed_minutes(call.duration_seconds)
            usage.count += 1
            usage.units += minutes
            if call.price_usd is not None:
                usage.cost_usd += call.price_usd
            else:
                usage.cost_usd += minutes * self.rates.voice_per_minute_usd
        return usage

    def _retell(
        self,
        customer: BillingCustomer,
        start: datetime,
        end: datetime,
        warnings: List[str],
    ) -> Tuple[_Usage, _Usage]:
        calls, chats = _Usage(), _Usage()
        if not customer.retell_agent_ids:
            return calls, chats
        if self.retell is None or not self.retell.is_configured():
            warnings.append("Retell AI not configured; AI costs counted as zero")
            return calls, chats

        start_ms = int(start.timestamp() * 1000)
        end_ms = int(end.timestamp() * 1000)

        for agent_id in customer.retell_agent_ids:
            for kind, usage, fetch in (
                ("calls", calls, self.retell.list_calls),
                ("chats", chats, self.retell.list_chats),
            ):
                try:
                    records = fetch(agent_id, start_ms, end_ms)
                except UsageSourceError as e:
                    logger.warning(
                        "retell_usage_unavailable",
                        customer_id=customer.id,
                        agent_id=agent_id,
                        kind=kind,
                        error=str(e),
                    )
                    warnings.append(f"Retell AI {kind} unavailable for agent {agent_id}: {e}")
                    continue
                for record in records:
                    usage.count += 1
                    # combined_cost is reported in cents
                    usage.cost_usd += record.cost_cents / 100
        return calls, chats
