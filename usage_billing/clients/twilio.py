"""
Twilio usage client.

Fetches SMS and voice records with the prices Twilio actually billed.

API Docs: https://www.twilio.com/docs/usage/api
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import SourceNotConfiguredError, UsageSourceError

logger = structlog.get_logger()

SOURCE = "twilio"


@dataclass(frozen=True)
class TelephonyMessageRecord:
    """An SMS as billed by the carrier."""
    sid: str
    body: str
    num_segments: Optional[int]
    price_usd: Optional[Decimal]  # None until Twilio has priced the message
    date_sent: Optional[str] = None


@dataclass(frozen=True)
class TelephonyCallRecord:
    """A voice call as billed by the carrier."""
    sid: str
    duration_seconds: int
    price_usd: Optional[Decimal]
    start_time: Optional[str] = None


def _parse_price(value: Any) -> Optional[Decimal]:
    # Twilio reports charges as negative strings, e.g. "-0.00830"
    if value is None or value == "":
        return None
    try:
        return abs(Decimal(str(value)))
    except InvalidOperation:
        return None


def _parse_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _utc_timestamp(value: datetime) -> str:
    # Naive datetimes are local time
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _dedupe(records: List[Any]) -> List[Any]:
    unique: Dict[str, Any] = {}
    for record in records:
        unique.setdefault(record.sid, record)
    return list(unique.values())


class TwilioClient:
    """Twilio REST API client for usage records."""

    BASE_URL = "https://api.twilio.com/2010-04-01"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        base_url: str = BASE_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token)

    def _get_client(self) -> httpx.Client:
        if not self.is_configured():
            raise SourceNotConfiguredError(SOURCE)
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                auth=(self.account_sid, self.auth_token),
                timeout=httpx.Timeout(self._timeout, connect=10.0),
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=5),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    def _send(self, url: str, params: Optional[Dict[str, str]]) -> httpx.Response:
        return self._get_client().get(url, params=params)

    def _get_json(self, url: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        try:
            resp = self._send(url, params)
        except httpx.HTTPError as e:
            raise UsageSourceError(SOURCE, f"request failed: {e}") from e

        if resp.status_code >= 400:
            logger.error(
                "twilio_api_error",
                status=resp.status_code,
                body=resp.text[:500],
                url=url,
            )
            raise UsageSourceError(SOURCE, f"HTTP {resp.status_code}", resp.status_code)

        try:
            data = resp.json()
        except ValueError as e:
            raise UsageSourceError(SOURCE, "response is not JSON") from e
        if not isinstance(data, dict):
            raise UsageSourceError(SOURCE, "unexpected response shape")
        return data

    def _list(self, resource: str, key: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        """Fetch every page of a list resource."""
        url = f"{self.base_url}/Accounts/{self.account_sid}/{resource}.json"
        items: List[Dict[str, Any]] = []
        page_params: Optional[Dict[str, str]] = params

        while url:
            data = self._get_json(url, page_params)
            page = data.get(key) or []
            if not isinstance(page, list):
                raise UsageSourceError(SOURCE, f"'{key}' is not a list")
            if not all(isinstance(item, dict) for item in page):
                raise UsageSourceError(SOURCE, f"'{key}' contains a non-object entry")
            items.extend(page)

            next_page = data.get("next_page_uri")
            # next_page_uri already carries the query string
            url = f"{self.base_url.rsplit('/', 1)[0]}{next_page}" if next_page else ""
            page_params = None

        return items

    def _filters(self, field: str, start: datetime, end: datetime) -> Dict[str, str]:
        return {
            f"{field}>": _utc_timestamp(start),
            f"{field}<": _utc_timestamp(end),
        }

    def get_messages(
        self,
        start: datetime,
        end: datetime,
        phone_number: Optional[str] = None,
    ) -> List[TelephonyMessageRecord]:
        """Fetch SMS messages sent in a date range.

        With a phone number, messages sent from and to it are combined and
        de-duplicated by sid.
        """
        base = self._filters("DateSent", start, end)
        if phone_number:
            raw = self._list("Messages", "messages", {**base, "From": phone_number})
            raw += self._list("Messages", "messages", {**base, "To": phone_number})
        else:
            raw = self._list("Messages", "messages", base)

        records = [
            TelephonyMessageRecord(
                sid=str(item.get("sid", "")),
                body=item.get("body") or "",
                num_segments=_parse_int(item.get("num_segments")),
                price_usd=_parse_price(item.get("price")),
                date_sent=item.get("date_sent"),
            )
            for item in raw
        ]
        return _dedupe(records)

    def get_calls(
        self,
        start: datetime,
        end: datetime,
        phone_number: Optional[str] = None,
    ) -> List[TelephonyCallRecord]:
        """Fetch voice calls started in a date range, optionally for one number."""
        base = self._filters("StartTime", start, end)
        if phone_number:
            raw = self._list("Calls", "calls", {**base, "From": phone_number})
            raw += self._list("Calls", "calls", {**base, "To": phone_number})
        else:
            raw = self._list("Calls", "calls", base)

        records = [
            TelephonyCallRecord(
                sid=str(item.get("sid", "")),
                duration_seconds=_parse_int(item.get("duration")) or 0,
                price_usd=_parse_price(item.get("price")),
                start_time=item.get("start_time"),
            )
            for item in raw
        ]
        return _dedupe(records)

    def test_connection(self) -> str:
        """Return the account's friendly name, raising UsageSourceError on failure."""
        data = self._get_json(f"{self.base_url}/Accounts/{self.account_sid}.json")
        return data.get("friendly_name") or self.account_sid
