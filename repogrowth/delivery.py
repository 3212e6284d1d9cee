"""
Outbound digest delivery.

The engine never sends mail itself. A DeliveryClient receives one digest
payload per job and answers with a DeliveryReport:

    @dataclass
    class DeliveryReport:
        status: "delivered" | "failed"
        delivered: int
        bounces: list[DeliveryBounce]
        raw: dict[str, Any]

HttpDeliveryClient POSTs the payload as JSON to DIGEST_DELIVERY_URL and maps
the provider's answer into a DeliveryReport. Transport failures raise
DeliveryError so the worker can retry the job; the job row is only moved
forward once a report is in hand.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

import httpx
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from repogrowth.config import DeliveryConfig, app_config
from repogrowth.exceptions import DeliveryError

BounceKind = Literal["hard", "soft"]
ReportStatus = Literal["delivered", "failed"]


@dataclass(frozen=True)
class DeliveryBounce:
    address: str
    kind: BounceKind = "hard"
    reason: str | None = None


@dataclass
class DeliveryReport:
    status: ReportStatus
    delivered: int = 0
    bounces: list[DeliveryBounce] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def hard_bounces(self) -> list[DeliveryBounce]:
        return [b for b in self.bounces if b.kind == "hard"]

    @classmethod
    def from_payload(cls, data: Any) -> DeliveryReport:
        if not isinstance(data, dict):
            data = {"raw": data}
        bounces = [
            parse_bounce(b) for b in (data.get("bounces") or []) if isinstance(b, (dict, str))
        ]
        delivered = data.get("delivered") or 0
        try:
            delivered = int(delivered)
        except (TypeError, ValueError):
            delivered = 0
        return cls(
            status=_map_provider_status(data.get("status")),
            delivered=delivered,
            bounces=bounces,
            raw=data,
        )


def _map_provider_status(raw_status: Any) -> ReportStatus:
    """
    Map provider-specific job status strings to delivered/failed.

    Anything that is not clearly an error counts as delivered; individual
    recipients that failed show up as bounces instead.
    """
    if raw_status is None:
        return "delivered"
    s = str(raw_status).strip().lower()
    if s in {"failed", "error", "rejected", "aborted"}:
        return "failed"
    return "delivered"


def _map_bounce_kind(raw_kind: Any) -> BounceKind:
    s = str(raw_kind or "hard").strip().lower()
    if s in {"soft", "transient", "temporary", "deferred"}:
        return "soft"
    return "hard"


def parse_bounce(item: dict[str, Any] | str) -> DeliveryBounce:
    if isinstance(item, str):
        return DeliveryBounce(address=item)
    address = item.get("address") or item.get("email") or ""
    return DeliveryBounce(
        address=str(address),
        kind=_map_bounce_kind(item.get("kind") or item.get("type")),
        reason=item.get("reason") or item.get("diagnostic"),
    )


class DeliveryClient(Protocol):
    def send(self, payload: dict[str, Any]) -> DeliveryReport: ...


class HttpDeliveryClient:
    """DeliveryClient that POSTs digest payloads to an HTTP endpoint."""

    def __init__(
        self,
        config: DeliveryConfig | None = None,
        *,
        client: httpx.Client | None = None,
    ) -> None:
        self.config = config or app_config.delivery
        self._client = client

    def _post(self, url: str, payload: dict[str, Any], headers: dict[str, str]) -> httpx.Response:
        if self._client is not None:
            return self._client.post(url, json=payload, headers=headers)
        with httpx.Client(timeout=self.config.timeout_s) as client:
            return client.post(url, json=payload, headers=headers)

    def send(self, payload: dict[str, Any]) -> DeliveryReport:
        url = self.config.url
        if not url:
            raise DeliveryError("DIGEST_DELIVERY_URL is not configured")

        headers = {"Accept": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"

        # Connection-level failures are retried here; HTTP error statuses are not.
        retrying = Retrying(
            reraise=True,
            retry=retry_if_exception_type(httpx.TransportError),
            stop=stop_after_attempt(max(1, self.config.max_attempts)),
            wait=wait_random_exponential(multiplier=0.5, max=self.config.max_backoff_s),
        )
        try:
            resp = retrying(self._post, url, payload, headers)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as exc:
            raise DeliveryError(f"delivery request failed: {exc}") from exc
        except ValueError as exc:
            raise DeliveryError("delivery endpoint returned invalid JSON") from exc

        return DeliveryReport.from_payload(data)


__all__ = [
    "BounceKind",
    "DeliveryBounce",
    "DeliveryReport",
    "DeliveryClient",
    "HttpDeliveryClient",
    "parse_bounce",
]
