"""
Usage pricing for telephony traffic.

Prices inbound toll-free voice minutes and SMS segments in USD and
converts the result to CAD.
"""

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Optional

from .currency import CurrencyConverter, Number, get_converter, to_decimal
from .segments import count_segments


@dataclass(frozen=True)
class RateCard:
    """Fixed per-unit telephony rates in USD."""
    voice_per_minute_usd: Decimal  # Inbound to Canadian 1-800 numbers
    sms_per_segment_usd: Decimal  # Inbound and outbound, per segment

    def __post_init__(self):
        """Validate rates are non-negative."""
        if self.voice_per_minute_usd < 0:
            raise ValueError("voice_per_minute_usd must be >= 0")
        if self.sms_per_segment_usd < 0:
            raise ValueError("sms_per_segment_usd must be >= 0")


DEFAULT_RATE_CARD = RateCard(
    voice_per_minute_usd=Decimal("0.022"),
    sms_per_segment_usd=Decimal("0.0083"),
)


@dataclass(frozen=True)
class VoiceCostBreakdown:
    """Cost of a single call."""
    duration_seconds: Decimal
    billed_minutes: int
    cost_usd: Decimal
    cost_cad: Decimal
    rate_per_minute_usd: Decimal
    rate_per_minute_cad: Decimal


@dataclass(frozen=True)
class SmsCostBreakdown:
    """Cost of a set of SMS messages."""
    message_count: int
    segment_count: int
    cost_usd: Decimal
    cost_cad: Decimal
    rate_per_segment_usd: Decimal
    rate_per_segment_cad: Decimal


@dataclass(frozen=True)
class CombinedSmsCostBreakdown:
    """SMS cost plus the conversational-AI cost of the same chat."""
    sms: SmsCostBreakdown
    chat_cost_usd: Decimal
    chat_cost_cad: Decimal

    @property
    def total_cost_usd(self) -> Decimal:
        return self.sms.cost_usd + self.chat_cost_usd

    @property
    def total_cost_cad(self) -> Decimal:
        return self.sms.cost_cad + self.chat_cost_cad


def billed_minutes(duration_seconds: Any) -> int:
    """Round a call duration up to whole minutes.

    Zero, negative and non-numeric durations bill as 0 minutes.
    """
    if isinstance(duration_seconds, bool):
        return 0
    try:
        seconds = to_decimal(duration_seconds)
    except (ArithmeticError, ValueError, TypeError):
        return 0
    if not seconds.is_finite() or seconds <= 0:
        return 0
    return math.ceil(seconds / 60)


def calculate_voice_cost(
    duration_seconds: Any,
    converter: Optional[CurrencyConverter] = None,
    rates: RateCard = DEFAULT_RATE_CARD,
) -> VoiceCostBreakdown:
    """Calculate the cost of an inbound call.

    Args:
        duration_seconds: Call length in seconds
        converter: Currency converter, defaults to the process-wide one
        rates: Rate card to price with

    Returns:
        VoiceCostBreakdown with USD and CAD amounts
    """
    converter = converter or get_converter()
    minutes = billed_minutes(duration_seconds)
    seconds = to_decimal(duration_seconds) if minutes else Decimal("0")
    cost_usd = minutes * rates.voice_per_minute_usd

    return VoiceCostBreakdown(
        duration_seconds=seconds,
        billed_minutes=minutes,
        cost_usd=cost_usd,
        cost_cad=converter.convert_usd_to_cad(cost_usd),
        rate_per_minute_usd=rates.voice_per_minute_usd,
        rate_per_minute_cad=converter.convert_usd_to_cad(rates.voice_per_minute_usd),
    )


def count_message_segments(bodies: Iterable[Any]) -> int:
    """Sum segments over message bodies, skipping blank ones."""
    total = 0
    for body in bodies:
        if isinstance(body, str) and body.strip():
            total += count_segments(body)
    return total


def calculate_sms_cost(
    bodies: Iterable[Any],
    converter: Optional[CurrencyConverter] = None,
    rates: RateCard = DEFAULT_RATE_CARD,
    extra_segments: int = 0,
) -> SmsCostBreakdown:
    """Calculate the cost of a conversation's SMS messages.

    Each message is segmented on its own, as the carrier bills it.

    Args:
        bodies: Raw message bodies
        converter: Currency converter, defaults to the process-wide one
        rates: Rate card to price with
        extra_segments: Segments billed for messages not present in the
            history (for example an automated opening prompt)

    Returns:
        SmsCostBreakdown with USD and CAD amounts
    """
    if extra_segments < 0:
        raise ValueError("extra_segments must be >= 0")

    converter = converter or get_converter()
    bodies = list(bodies)
    segments = count_message_segments(bodies)
    if bodies:
        segments += extra_segments
    cost_usd = segments * rates.sms_per_segment_usd

    return SmsCostBreakdown(
        message_count=len(bodies),
        segment_count=segments,
        cost_usd=cost_usd,
        cost_cad=converter.convert_usd_to_cad(cost_usd),
        rate_per_segment_usd=rates.sms_per_segment_usd,
        rate_per_segment_cad=converter.convert_usd_to_cad(rates.sms_per_segment_usd),
    )


def calculate_combined_sms_cost(
    bodies: Iterable[Any],
    chat_cost_cents: Number = 0,
    converter: Optional[CurrencyConverter] = None,
    rates: RateCard = DEFAULT_RATE_CARD,
    extra_segments: int = 0,
) -> CombinedSmsCostBreakdown:
    """Calculate SMS cost plus a conversational-AI chat cost given in cents."""
    converter = converter or get_converter()
    sms = calculate_sms_cost(bodies, converter, rates, extra_segments)
    chat_cost_usd = to_decimal(chat_cost_cents) / 100

    return CombinedSmsCostBreakdown(
        sms=sms,
        chat_cost_usd=chat_cost_usd,
        chat_cost_cad=converter.convert_usd_to_cad(chat_cost_usd),
    )
