"""
Outbound, fire-and-forget collaborators: the ticket notification sink
(email/SMS delivery lives behind it) and the analytics sink.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Tuple
import os

import httpx
import orjson

from .errors import NotificationFailure
from .logger_config import logger

NOTIFY_WEBHOOK_URL = os.environ.get("NOTIFY_WEBHOOK_URL", "")
ANALYTICS_WEBHOOK_URL = os.environ.get("ANALYTICS_WEBHOOK_URL", "")

ATTRIBUTION_PREFIXES = ("utm_",)
ATTRIBUTION_KEYS = ("referrer", "campaign")


@dataclass(frozen=True)
class BundleTicket:
    id: str
    qr_payload: str
    order_reference: str


@dataclass(frozen=True)
class TicketGroup:
    tier_name: str
    tickets: Tuple[BundleTicket, ...]


@dataclass(frozen=True)
class TicketBundle:
    reference: str
    event_title: str
    event_starts_at: Optional[str]
    venue_name: Optional[str]
    customer_name: Optional[str]
    customer_email: Optional[str]
    customer_phone: Optional[str]
    currency: str
    amount: str
    groups: Tuple[TicketGroup, ...] = field(default_factory=tuple)

    @property
    def ticket_count(self) -> int:
        return sum(len(g.tickets) for g in self.groups)

    def as_dict(self) -> dict:
        return asdict(self)


def attribution_from(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not metadata:
        return {}
    return {
        k: v for k, v in metadata.items()
        if k.startswith(ATTRIBUTION_PREFIXES) or k in ATTRIBUTION_KEYS
    }


class NotificationSink(ABC):
    @abstractmethod
    async def send(self, bundle: TicketBundle) -> None: ...


class AnalyticsSink(ABC):
    @abstractmethod
    async def track(self, reference: str, attribution: Dict[str, Any]) -> None:
        ...


class LogNotificationSink(NotificationSink):
    def __init__(self):
        self.sent: List[TicketBundle] = []

    async def send(self, bundle: TicketBundle) -> None:
        self.sent.append(bundle)
        logger.info(
            f"tickets for {bundle.reference}: {bundle.ticket_count} ticket(s) "
            f"to {bundle.customer_email}"
        )


class LogAnalyticsSink(AnalyticsSink):
    async def track(self, reference: str, attribution: Dict[str, Any]) -> None:
        if attribution:
            logger.info(f"attribution for {reference}: {attribution}")


async def _post(http: httpx.AsyncClient, url: str, body: dict) -> None:
    try:
        r = await http.post(
            url,
            content=orjson.dumps(body),
            headers={"content-type": "application/json"},
        )
    except httpx.HTTPError as e:
        raise NotificationFailure(f"POST {url} failed: {e}") from e
    if r.status_code >= 300:
        raise NotificationFailure(f"POST {url} returned {r.status_code}")


class HttpNotificationSink(NotificationSink):
    def __init__(self, http: httpx.AsyncClient, url: str):
        self.http = http
        self.url = url

    async def send(self, bundle: TicketBundle) -> None:
        await _post(self.http, self.url, bundle.as_dict())


class HttpAnalyticsSink(AnalyticsSink):
    def __init__(self, http: httpx.AsyncClient, url: str):
        self.http = http
        self.url = url

    async def track(self, reference: str, attribution: Dict[str, Any]) -> None:
        if not attribution:
            return
        await _post(
            self.http, self.url,
            {"reference": reference, "attribution": attribution},
        )


def new_sinks(http: Optional[httpx.AsyncClient] = None):
    notifier: NotificationSink = LogNotificationSink()
    analytics: AnalyticsSink = LogAnalyticsSink()
    if http is not None and NOTIFY_WEBHOOK_URL:
        notifier = HttpNotificationSink(http, NOTIFY_WEBHOOK_URL)
    if http is not None and ANALYTICS_WEBHOOK_URL:
        analytics = HttpAnalyticsSink(http, ANALYTICS_WEBHOOK_URL)
    return notifier, analytics
