"""Outbound edges: geography/pricing clients and the status notifier."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from shipment_engine.core.errors import CollaboratorUnavailable
from shipment_engine.services.collaborators import GeographyClient, PricingClient
from shipment_engine.services.notifications import (
    STATUS_CHANGED_ROUTING_KEY,
    RabbitNotificationDispatcher,
    StatusChanged,
)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_geography_client_reads_the_verdict():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"valid": False})

    client = GeographyClient("http://geo.test/", http_client=_client(handler))
    valid = await client.validate_route_scope(
        sender_province_code="79", receiver_province_code="01", route_scope="INTRA_PROVINCE"
    )
    await client.aclose()

    assert valid is False
    assert seen == [
        (
            "/api/route-scope/validate",
            {
                "sender_province_code": "79",
                "receiver_province_code": "01",
                "route_scope": "INTRA_PROVINCE",
            },
        )
    ]


@pytest.mark.asyncio
async def test_pricing_client_returns_decimal_or_none():
    amounts = iter([{"amount": 41500.5}, {}])
    client = PricingClient(
        "http://pricing.test",
        http_client=_client(lambda request: httpx.Response(200, json=next(amounts))),
    )

    assert await client.quote({"total_weight_kg": "10"}) == Decimal("41500.5")
    assert await client.quote({"total_weight_kg": "10"}) is None


@pytest.mark.asyncio
async def test_failing_collaborator_is_reported_as_unavailable():
    client = PricingClient(
        "http://pricing.test",
        http_client=_client(lambda request: httpx.Response(503, json={"detail": "down"})),
    )

    with pytest.raises(CollaboratorUnavailable) as excinfo:
        await client.quote({"total_weight_kg": "10"})
    assert excinfo.value.details["url"] == "http://pricing.test/api/quotes"


class FakePublisher:
    def __init__(self, connected=True, fail=False):
        self.is_connected = connected
        self.fail = fail
        self.published = []

    async def publish_event(self, routing_key, body, *, correlation_id=None, headers=None):
        if self.fail:
            raise ConnectionError("channel closed")
        self.published.append((routing_key, body, headers))


def _change() -> StatusChanged:
    return StatusChanged(
        shipment_id=uuid.uuid4(),
        tracking_code="CX260302ABCD1234",
        old_status="BOOKED",
        new_status="PRICE_ESTIMATED",
        actor_type="AGENT",
        actor_id="agent-7",
        event_at=datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc),
    )


@pytest.mark.asyncio
async def test_dispatcher_publishes_status_changes():
    publisher = FakePublisher()
    change = _change()

    await RabbitNotificationDispatcher(publisher).status_changed(change)

    [(routing_key, body, headers)] = publisher.published
    assert routing_key == STATUS_CHANGED_ROUTING_KEY
    assert body["new_status"] == "PRICE_ESTIMATED"
    assert headers == {"tracking_code": "CX260302ABCD1234"}


@pytest.mark.asyncio
@pytest.mark.parametrize("publisher", [FakePublisher(connected=False), FakePublisher(fail=True)])
async def test_dispatcher_drops_events_when_the_broker_is_unavailable(publisher):
    await RabbitNotificationDispatcher(publisher).status_changed(_change())

    assert publisher.published == []
