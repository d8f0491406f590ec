"""Log processors and per-shipment context binding."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest
import structlog

from courierx_shared.logging import (
    mask_phone_numbers,
    render_engine_values,
    setup_logging,
    shipment_context,
)
from shipment_engine.models import ShipmentStatus
from shipment_engine.services.state_machine import ShipmentStateMachine
from tests.factories import make_draft, move


def test_engine_values_render_as_strings():
    shipment_id = uuid.uuid4()
    event = render_engine_values(
        None,
        "info",
        {
            "event": "shipment_transitioned",
            "shipment_id": shipment_id,
            "amount": Decimal("40000.00"),
            "new_status": ShipmentStatus.IN_TRANSIT,
            "event_at": datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc),
            "attempt_no": 2,
        },
    )

    assert event == {
        "event": "shipment_transitioned",
        "shipment_id": str(shipment_id),
        "amount": "40000.00",
        "new_status": "IN_TRANSIT",
        "event_at": "2026-03-02T08:00:00+00:00",
        "attempt_no": 2,
    }


def test_phone_numbers_are_masked():
    event = mask_phone_numbers(
        None, "info", {"sender_phone": "0901234567", "receiver_phone": "12", "note": "0901"}
    )

    assert event == {"sender_phone": "*******567", "receiver_phone": "12", "note": "0901"}


def test_shipment_context_is_bound_only_inside_the_block():
    shipment_id = uuid.uuid4()
    with shipment_context(shipment_id, target_status="ISSUE"):
        bound = structlog.contextvars.get_contextvars()
    assert bound["shipment_id"] == str(shipment_id)
    assert bound["target_status"] == "ISSUE"
    assert "shipment_id" not in structlog.contextvars.get_contextvars()


class ContextRecordingDispatcher:
    def __init__(self):
        self.contexts: list[dict] = []

    async def status_changed(self, change) -> None:
        self.contexts.append(structlog.contextvars.get_contextvars())


@pytest.mark.asyncio
async def test_transition_logs_carry_the_shipment(session_factory, clock):
    dispatcher = ContextRecordingDispatcher()
    machine = ShipmentStateMachine(session_factory, dispatcher=dispatcher, clock=clock)
    shipment = await machine.book(make_draft())
    dispatcher.contexts.clear()

    await move(machine, shipment.id, ShipmentStatus.PRICE_ESTIMATED)

    assert dispatcher.contexts == [
        {"shipment_id": str(shipment.id), "target_status": "PRICE_ESTIMATED"}
    ]
    assert "shipment_id" not in structlog.contextvars.get_contextvars()


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


def test_json_lines_carry_service_and_masked_fields(restore_logging, capsys):
    setup_logging(log_level="INFO", json_logs=True, service_name="shipment-service")
    shipment_id = uuid.uuid4()

    structlog.get_logger("courierx.test").info(
        "shipment_booked", shipment_id=shipment_id, receiver_phone="0987654321"
    )

    line = capsys.readouterr().out.strip().splitlines()[-1]
    record = json.loads(line)
    assert record["event"] == "shipment_booked"
    assert record["service"] == "shipment-service"
    assert record["shipment_id"] == str(shipment_id)
    assert record["receiver_phone"] == "*******321"
    assert record["level"] == "info"
