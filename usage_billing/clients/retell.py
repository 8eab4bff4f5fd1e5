"""
Retell AI usage client.

Lists voice calls and chats handled by an agent together with the cost
Retell already computed for them.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import SourceNotConfiguredError, UsageSourceError

logger = structlog.get_logger()

SOURCE = "retell"
MAX_PAGE_SIZE = 1000


@dataclass(frozen=True)
class ConversationRecord:
    """A Retell call or chat with its provider-computed cost."""
    record_id: str
    agent_id: str
    start_timestamp_ms: int
    duration_seconds: Decimal
    cost_cents: Decimal  # combined_cost, already priced by Retell


def _decimal(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        return Decimal("0")
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")
    return result if result.is_finite() else Decimal("0")


def _combined_cost(item: Dict[str, Any], key: str) -> Decimal:
    cost = item.get(key)
    if isinstance(cost, dict):
        return _decimal(cost.get("combined_cost"))
    return Decimal("0")


def _call_duration(item: Dict[str, Any]) -> Decimal:
    if item.get("call_length_seconds") is not None:
        return _decimal(item["call_length_seconds"])
    if item.get("duration_ms") is not None:
        return _decimal(item["duration_ms"]) / 1000
    start, end = item.get("start_timestamp"), item.get("end_timestamp")
    if start is not None and end is not None:
        return max(_decimal(end) - _decimal(start), Decimal("0")) / 1000
    return Decimal("0")


def _extract_list(data: Any, key: str) -> List[Dict[str, Any]]:
    # The list endpoints return either a bare array or {key|data: [...]}
    if isinstance(data, list):
        items = data
    elif isinstance(data, dict):
        items = data.get(key) or data.get("data") or []
    else:
        raise UsageSourceError(SOURCE, "unexpected response shape")
    if not isinstance(items, list):
        raise UsageSourceError(SOURCE, f"'{key}' is not a list")
    return [item for item in items if isinstance(item, dict)]


class RetellClient:
    """Retell AI REST API client for call and chat history."""

    BASE_URL = "https://api.retellai.com"

    def __init__(
        self,
        api_key: str,
        base_url: str = BASE_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = (api_key or "").strip()
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self) -> httpx.Client:
        if not self.is_configured():
            raise SourceNotConfiguredError(SOURCE)
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                base_url=self.base_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
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
    def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        return self._get_client().request(method, path, **kwargs)

    def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            resp = self._send(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise UsageSourceError(SOURCE, f"request failed: {e}") from e

        if resp.status_code >= 400:
            logger.error(
                "retell_api_error",
                status=resp.status_code,
                body=resp.text[:500],
                path=path,
            )
            raise UsageSourceError(SOURCE, f"HTTP {resp.status_code}", resp.status_code)

        try:
            return resp.json()
        except ValueError as e:
            raise UsageSourceError(SOURCE, "response is not JSON") from e

    def list_calls(self, agent_id: str, start_ms: int, end_ms: int) -> List[ConversationRecord]:
        """List an agent's calls whose start time falls in [start_ms, end_ms]."""
        body = {
            "sort_order": "descending",
            "limit": MAX_PAGE_SIZE,
            "filter_criteria": {
                "agent_id": [agent_id],
                "start_timestamp": {
                    "lower_threshold": start_ms,
                    "upper_threshold": end_ms,
                },
            },
        }
        data = self._request("POST", "/v2/list-calls", json=body)

        return [
            ConversationRecord(
                record_id=str(item.get("call_id", "")),
                agent_id=item.get("agent_id") or agent_id,
                start_timestamp_ms=int(_decimal(item.get("start_timestamp"))),
                duration_seconds=_call_duration(item),
                cost_cents=_combined_cost(item, "call_cost"),
            )
            for item in _extract_list(data, "calls")
        ]

    def list_chats(self, agent_id: str, start_ms: int, end_ms: int) -> List[ConversationRecord]:
        """List an agent's chats started in [start_ms, end_ms].

        The chat endpoint has no time filter, so the range is applied here.
        """
        params = {"agent_id": agent_id, "limit": str(MAX_PAGE_SIZE)}
        data = self._request("GET", "/list-chat", params=params)

        records = []
        for item in _extract_list(data, "chats"):
            started = int(_decimal(item.get("start_timestamp")))
            if started < start_ms or started > end_ms:
                continue
            end = item.get("end_timestamp")
            duration = (max(_decimal(end) - started, Decimal("0")) / 1000) if end is not None else Decimal("0")
            records.append(ConversationRecord(
                record_id=str(item.get("chat_id", "")),
                agent_id=item.get("agent_id") or agent_id,
                start_timestamp_ms=started,
                duration_seconds=duration,
                cost_cents=_combined_cost(item, "chat_cost"),
            ))
        return records

    def test_connection(self) -> None:
        """Raise UsageSourceError if the API key is rejected."""
        self._request("POST", "/v2/list-calls", json={"limit": 1, "sort_order": "descending"})
