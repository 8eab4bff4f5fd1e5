"""
USD to CAD currency conversion.

Keeps a cached exchange rate that is refreshed in the background at most
once per refresh interval. Conversion never waits on the network: it uses
whatever rate is cached, or the fallback rate when none has been fetched.
"""

import threading
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Callable, Optional, Union

import structlog

logger = structlog.get_logger()

Number = Union[int, float, Decimal, str]

DEFAULT_FALLBACK_RATE = Decimal("1.35")
DEFAULT_REFRESH_INTERVAL = timedelta(hours=24)


class RateState(Enum):
    """Lifecycle of the cached exchange rate."""
    UNINITIALIZED = "uninitialized"
    FETCHING = "fetching"
    CACHED = "cached"


def to_decimal(value: Number) -> Decimal:
    """Convert a number to Decimal via its string form to avoid float noise."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _run_in_background(task: Callable[[], None]) -> None:
    thread = threading.Thread(target=task, name="exchange-rate-refresh", daemon=True)
    thread.start()


class CurrencyConverter:
    """Converts USD amounts to CAD using a cached, periodically refreshed rate.

    The rate source is any callable returning the current USD->CAD rate.
    Refreshes are handed to ``scheduler`` (a background thread by default)
    so callers never block; a failed refresh keeps the previous rate.
    """

    def __init__(
        self,
        fetch_rate: Optional[Callable[[], Number]] = None,
        fallback_rate: Number = DEFAULT_FALLBACK_RATE,
        refresh_interval: timedelta = DEFAULT_REFRESH_INTERVAL,
        clock: Callable[[], datetime] = datetime.now,
        scheduler: Callable[[Callable[[], None]], None] = _run_in_background,
    ):
        """Initialize the converter.

        Args:
            fetch_rate: Callable returning the live rate; None disables refreshing
            fallback_rate: Rate used until a live rate has been fetched
            refresh_interval: Minimum time between fetch attempts
            clock: Source of the current time
            scheduler: Runs a refresh task without blocking the caller

        Raises:
            ValueError: If fallback_rate is not positive
        """
        fallback = to_decimal(fallback_rate)
        if fallback <= 0:
            raise ValueError("fallback_rate must be > 0")

        self.fallback_rate = fallback
        self.refresh_interval = refresh_interval
        self._fetch_rate = fetch_rate
        self._clock = clock
        self._scheduler = scheduler
        self._lock = threading.Lock()
        self._rate: Optional[Decimal] = None
        self._fetched_at: Optional[datetime] = None
        self._last_attempt_at: Optional[datetime] = None
        self._state = RateState.UNINITIALIZED

    @property
    def state(self) -> RateState:
        return self._state

    @property
    def fetched_at(self) -> Optional[datetime]:
        """When the cached rate was fetched, or None if it never was."""
        return self._fetched_at

    @property
    def rate(self) -> Decimal:
        """The cached rate, or the fallback rate. Never triggers a refresh."""
        return self._rate if self._rate is not None else self.fallback_rate

    def current_rate(self) -> Decimal:
        """Return the rate to use now, scheduling a refresh if one is due."""
        self._schedule_refresh_if_due()
        return self.rate

    def convert_usd_to_cad(self, amount_usd: Number) -> Decimal:
        """Convert a USD amount to CAD at the current rate.

        Args:
            amount_usd: Amount in US dollars

        Returns:
            Amount in Canadian dollars (unrounded)
        """
        return to_decimal(amount_usd) * self.current_rate()

    def refresh(self) -> Decimal:
        """Fetch the rate synchronously and return the rate now in effect."""
        with self._lock:
            self._state = RateState.FETCHING
            self._last_attempt_at = self._clock()
        self._refresh_now()
        return self.rate

    def _refresh_due(self) -> bool:
        if self._last_attempt_at is None:
            return True
        return self._clock() - self._last_attempt_at >= self.refresh_interval

    def _schedule_refresh_if_due(self) -> None:
        with self._lock:
            if self._fetch_rate is None or self._state is RateState.FETCHING:
                return
            if not self._refresh_due():
                return
            self._state = RateState.FETCHING
            self._last_attempt_at = self._clock()
        self._scheduler(self._refresh_now)

    def _refresh_now(self) -> None:
        if self._fetch_rate is None:
            with self._lock:
                self._state = RateState.CACHED if self._rate is not None else RateState.UNINITIALIZED
            return

        try:
            rate = to_decimal(self._fetch_rate())
            if not rate.is_finite() or rate <= 0:
                raise ValueError(f"Invalid exchange rate: {rate}")
        except Exception as e:
            with self._lock:
                self._state = RateState.CACHED if self._rate is not None else RateState.UNINITIALIZED
            logger.warning(
                "exchange_rate_refresh_failed",
                error=str(e),
                rate_in_use=str(self.rate),
            )
            return

        with self._lock:
            self._rate = rate
            self._fetched_at = self._clock()
            self._state = RateState.CACHED
        logger.info("exchange_rate_refreshed", rate=str(rate))


def format_cad(amount: Number) -> str:
    """Format an amount as CAD currency, e.g. ``$1,234.57``."""
    value = to_decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,.2f}"


_default_converter: Optional[CurrencyConverter] = None


def get_converter() -> CurrencyConverter:
    """Get the process-wide converter, creating one with the fallback rate."""
    global _default_converter
    if _default_converter is None:
        _default_converter = CurrencyConverter()
    return _default_converter


def set_converter(converter: Optional[CurrencyConverter]) -> None:
    """Replace the process-wide converter (None resets it)."""
    global _default_converter
    _default_converter = converter
