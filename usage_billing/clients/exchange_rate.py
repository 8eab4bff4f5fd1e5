"""
Exchange-rate source for USD to CAD.
"""

from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx
import structlog

from .errors import UsageSourceError

logger = structlog.get_logger()

SOURCE = "exchange_rate"
DEFAULT_RATE_URL = "https://api.exchangerate-api.com/v4/latest/USD"


class ExchangeRateClient:
    """Fetches the current USD->CAD rate from a ``rates.CAD`` JSON endpoint.

    No retries: the converter keeps serving its cached rate on failure and
    tries again after its refresh interval.
    """

    def __init__(
        self,
        url: str = DEFAULT_RATE_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.url = url
        self._timeout = timeout
        self._transport = transport

    def fetch_usd_to_cad(self) -> Decimal:
        """Fetch the current rate.

        Raises:
            UsageSourceError: On network failure or an unusable payload
        """
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                resp = client.get(self.url)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise UsageSourceError(SOURCE, f"request failed: {e}") from e

        try:
            rate = Decimal(str(data["rates"]["CAD"]))
        except (KeyError, TypeError, InvalidOperation) as e:
            raise UsageSourceError(SOURCE, "response has no rates.CAD") from e

        if not rate.is_finite() or rate <= 0:
            raise UsageSourceError(SOURCE, f"invalid rate {rate}")

        logger.debug("exchange_rate_fetched", rate=str(rate), url=self.url)
        return rate
