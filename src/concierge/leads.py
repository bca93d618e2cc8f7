"""Fire-and-forget delivery of captured leads to a CRM and/or a webhook."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol

import httpx

from .config import GateSettings

logger = logging.getLogger(__name__)


class LeadSink(Protocol):
    name: str

    async def send(self, lead: Dict[str, Any]) -> None:
        ...


class WebhookSink:
    """POST ``{"event": "lead", "lead": {...}}`` to a generic webhook.

    When a secret is set it travels as an ``X-Webhook-Secret`` header for the
    receiver to compare.
    """

    name = "webhook"

    def __init__(
        self,
        url: str,
        *,
        secret: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self._secret = secret
        self.timeout = timeout
        self._transport = transport

    async def send(self, lead: Dict[str, Any]) -> None:
        headers = {"Content-Type": "application/json"}
        if self._secret:
            headers["X-Webhook-Secret"] = self._secret
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.post(self.url, json={"event": "lead", "lead": lead}, headers=headers)
            resp.raise_for_status()


class CrmSink:
    """Create a contact through a bearer-authenticated CRM endpoint.

    The lead record is passed through as ``properties``; field mapping is the
    CRM's concern.
    """

    name = "crm"

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self._api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def send(self, lead: Dict[str, Any]) -> None:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.post(self.url, json={"properties": lead}, headers=headers)
            resp.raise_for_status()


class LeadForwarder:
    """Send a lead to every configured sink; failures are logged, never raised."""

    def __init__(self, sinks: Iterable[LeadSink] = ()) -> None:
        self.sinks: List[LeadSink] = list(sinks)

    def __bool__(self) -> bool:
        return bool(self.sinks)

    async def forward(self, lead: Any) -> int:
        """Return the number of sinks that accepted the lead."""
        if not self.sinks:
            return 0
        if not isinstance(lead, dict):
            logger.info("skipping non-object lead of type %s", type(lead).__name__)
            return 0
        results = await asyncio.gather(
            *(sink.send(lead) for sink in self.sinks), return_exceptions=True
        )
        delivered = 0
        for sink, res in zip(self.sinks, results):
            if isinstance(res, BaseException):
                logger.warning("lead forwarding to %s failed: %s", getattr(sink, "name", sink), res)
            else:
                delivered += 1
        return delivered


def create_forwarder(
    settings: GateSettings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> LeadForwarder:
    sinks: List[LeadSink] = []
    if settings.crm_url:
        sinks.append(CrmSink(settings.crm_url, settings.crm_api_key, timeout=settings.lead_timeout, transport=transport))
    if settings.webhook_url:
        sinks.append(
            WebhookSink(settings.webhook_url, secret=settings.webhook_secret, timeout=settings.lead_timeout, transport=transport)
        )
    return LeadForwarder(sinks)
