from __future__ import annotations

import asyncio
import json

import httpx

from concierge.config import GateSettings
from concierge.leads import CrmSink, LeadForwarder, WebhookSink, create_forwarder
from conftest import RecordingSink

LEAD = {"email": "cmo@brand.example", "website": "brand.example"}


def test_webhook_sink_sends_event_and_secret():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        seen["secret"] = request.headers.get("x-webhook-secret")
        return httpx.Response(204)

    sink = WebhookSink("https://hooks.example/lead", secret="s3cret", transport=httpx.MockTransport(handler))
    asyncio.run(sink.send(LEAD))

    assert seen["body"] == {"event": "lead", "lead": LEAD}
    assert seen["secret"] == "s3cret"


def test_webhook_sink_without_secret():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = request.headers
        return httpx.Response(200)

    asyncio.run(WebhookSink("https://hooks.example", transport=httpx.MockTransport(handler)).send(LEAD))
    assert "x-webhook-secret" not in seen["headers"]


def test_crm_sink_posts_properties_with_bearer():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("authorization")
        seen["json"] = json.loads(request.content)
        return httpx.Response(201, json={"id": "1"})

    sink = CrmSink("https://crm.example/contacts", "crm-key", transport=httpx.MockTransport(handler))
    asyncio.run(sink.send(LEAD))
    assert seen["auth"] == "Bearer crm-key"
    assert seen["json"] == {"properties": LEAD}


def test_forwarder_swallows_failures():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    ok = RecordingSink("ok")
    failing_http = CrmSink("https://crm.example", transport=httpx.MockTransport(handler))
    failing = RecordingSink("down", fail=True)
    forwarder = LeadForwarder([ok, failing_http, failing])

    assert asyncio.run(forwarder.forward(LEAD)) == 1
    assert ok.leads == [LEAD]
    assert failing.leads == [LEAD]


def test_empty_forwarder_is_falsy():
    forwarder = LeadForwarder()
    assert not forwarder
    assert asyncio.run(forwarder.forward(LEAD)) == 0


def test_create_forwarder_from_settings():
    assert create_forwarder(GateSettings()).sinks == []
    fw = create_forwarder(GateSettings(crm_url="https://crm.example", webhook_url="https://hooks.example"))
    assert [s.name for s in fw.sinks] == ["crm", "webhook"]


def test_forwarder_skips_non_object_leads():
    sink = RecordingSink("crm")
    forwarder = LeadForwarder([sink])
    for lead in ("cmo@brand.example", ["a@b.co"], 42):
        assert asyncio.run(forwarder.forward(lead)) == 0
    assert sink.leads == []
