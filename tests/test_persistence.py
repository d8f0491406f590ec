"""Append-only helpers and foreign-key delete behaviour."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import delete, func, select

from shipment_engine.models import (
    AdminTask,
    AssignmentType,
    Branch,
    CallLog,
    CapacityReservation,
    DriverAssignment,
    DriverAssignmentHistory,
    PaymentIntent,
    PaymentMethod,
    Shipment,
    ShipmentStatus,
    ShipmentStatusHistory,
)
from shipment_engine.services import event_log
from tests.factories import move


def test_jsonable_coerces_engine_values():
    shipment_id = uuid.uuid4()
    payload = event_log.jsonable(
        {
            "shipment_id": shipment_id,
            "amount": Decimal("12.50"),
            "at": datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc),
            "nested": {"ok": True},
        }
    )

    assert payload == {
        "shipment_id": str(shipment_id),
        "amount": "12.50",
        "at": "2026-03-02 08:00:00+00:00",
        "nested": {"ok": True},
    }
    assert event_log.jsonable({}) is None


@pytest.mark.asyncio
async def test_record_once_ignores_the_duplicate(run, shipment):
    def call(uow):
        return event_log.record_once(
            uow,
            CallLog,
            conflict_on=["shipment_id", "call_type", "attempt_no"],
            id=uuid.uuid4(),
            shipment_id=shipment.id,
            call_type="PICKUP_CONTACT",
            attempt_no=1,
            outcome="NO_ANSWER",
            caller_type="AGENT",
            called_at=uow.now(),
        )

    assert await run(call) is True
    assert await run(call) is False
    count = await run(lambda uow: uow.scalar(select(func.count(CallLog.id))))
    assert count == 1


async def _count(run, model, column, value):
    return await run(
        lambda uow: uow.scalar(select(func.count()).select_from(model).where(column == value))
    )


@pytest.mark.asyncio
async def test_deleting_a_shipment_removes_its_owned_rows(machine, run, world, shipment):
    await run(
        lambda uow: machine.assignments.assign(
            uow, shipment.id, AssignmentType.PICKUP, world.driver.id
        )
    )
    await run(lambda uow: machine.payments.create(uow, shipment.id, PaymentMethod.CASH, "40000"))
    await move(machine, shipment.id, ShipmentStatus.ISSUE, note="Damaged label")

    await run(lambda uow: uow.execute(delete(Shipment.__table__).where(Shipment.id == shipment.id)))

    for model in (
        ShipmentStatusHistory,
        DriverAssignment,
        DriverAssignmentHistory,
        CapacityReservation,
        PaymentIntent,
        AdminTask,
    ):
        assert await _count(run, model, model.shipment_id, shipment.id) == 0, model.__name__


@pytest.mark.asyncio
async def test_deleting_a_branch_detaches_shipments(machine, run, world, shipment):
    await move(machine, shipment.id, ShipmentStatus.BRANCH_ASSIGNED, branch_id=str(world.dest.id))

    await run(lambda uow: uow.execute(delete(Branch.__table__).where(Branch.id == world.dest.id)))

    reloaded = await run(lambda uow: uow.get(Shipment, shipment.id))
    assert reloaded.assigned_branch_id is None
    assert reloaded.shipment_status is ShipmentStatus.BRANCH_ASSIGNED
