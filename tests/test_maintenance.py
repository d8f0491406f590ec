"""Batch jobs: load reconciliation, legacy backfill, payment expiry sweep."""

from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import String, select, type_coerce, update

from shipment_engine.models import (
    AdminTask,
    AdminTaskType,
    AssignmentType,
    PaymentIntent,
    PaymentIntentStatus,
    PaymentMethod,
    Shipment,
    ShipmentStatus,
    VehicleLoadTracking,
)
from shipment_engine.services.maintenance import (
    backfill_legacy_statuses,
    expire_overdue_payments,
    reconcile_vehicle_loads,
)
from tests.factories import make_draft


async def _force_status(run, shipment_id, raw):
    table = Shipment.__table__

    async def work(uow):
        await uow.execute(
            update(table)
            .where(table.c.id == shipment_id)
            .values(shipment_status=type_coerce(raw, String))
        )

    await run(work)


@pytest.mark.asyncio
async def test_reconcile_reports_drift_once_and_leaves_counters(
    machine, run, session_factory, clock, world, shipment
):
    await run(
        lambda uow: machine.assignments.assign(
            uow, shipment.id, AssignmentType.PICKUP, world.driver.id
        )
    )
    assert await reconcile_vehicle_loads(session_factory, clock=clock) == []

    async def tamper(uow):
        await uow.execute(
            update(VehicleLoadTracking)
            .where(VehicleLoadTracking.vehicle_id == world.truck.id)
            .values(current_load_kg=Decimal("99"))
        )

    await run(tamper)

    mismatches = await reconcile_vehicle_loads(session_factory, clock=clock)
    assert [m.vehicle_id for m in mismatches] == [world.truck.id]
    assert mismatches[0].reserved_load_kg == Decimal("10")
    assert mismatches[0].recorded_load_kg == Decimal("99")

    await reconcile_vehicle_loads(session_factory, clock=clock)
    tasks = await run(
        lambda uow: uow.scalars(
            select(AdminTask).where(AdminTask.task_type == AdminTaskType.LOAD_MISMATCH)
        )
    )
    assert len(tasks) == 1
    assert tasks[0].vehicle_id == world.truck.id

    load = await run(lambda uow: uow.get(VehicleLoadTracking, world.truck.id))
    assert load.current_load_kg == Decimal("99")


@pytest.mark.asyncio
async def test_reconcile_walks_vehicles_in_chunks(machine, run, session_factory, clock, world):
    first = await machine.book(make_draft())
    second = await machine.book(make_draft())
    await run(
        lambda uow: machine.assignments.assign(
            uow, first.id, AssignmentType.PICKUP, world.driver.id
        )
    )
    await run(
        lambda uow: machine.assignments.assign(
            uow, second.id, AssignmentType.PICKUP, world.other.id
        )
    )

    async def tamper(uow):
        await uow.execute(update(VehicleLoadTracking).values(current_order_count=5))

    await run(tamper)

    mismatches = await reconcile_vehicle_loads(session_factory, chunk_size=1, clock=clock)
    assert {m.vehicle_id for m in mismatches} == {world.truck.id, world.van.id}
    assert all(m.reserved_order_count == 1 for m in mismatches)

    again = await reconcile_vehicle_loads(session_factory, chunk_size=1, clock=clock)
    assert len(again) == 2
    tasks = await run(
        lambda uow: uow.scalars(
            select(AdminTask).where(AdminTask.task_type == AdminTaskType.LOAD_MISMATCH)
        )
    )
    assert sorted(str(t.vehicle_id) for t in tasks) == sorted(
        str(v) for v in (world.truck.id, world.van.id)
    )


@pytest.mark.asyncio
async def test_backfill_rewrites_legacy_values_once(machine, run, session_factory, clock):
    legacy = await machine.book(make_draft())
    unknown = await machine.book(make_draft())
    await _force_status(run, legacy.id, "CREATED")
    await _force_status(run, unknown.id, "LOST_IN_SPACE")

    changed = await backfill_legacy_statuses(session_factory, chunk_size=1, clock=clock)
    assert changed == 1

    reloaded = await run(lambda uow: uow.get(Shipment, legacy.id))
    assert reloaded.shipment_status is ShipmentStatus.BOOKED
    assert reloaded.version == legacy.version + 1

    history = await run(lambda uow: machine.history(uow, legacy.id))
    assert (history[-1].old_status, history[-1].new_status) == ("CREATED", "BOOKED")
    assert history[-1].actor_type == "JOB"

    assert await backfill_legacy_statuses(session_factory, clock=clock) == 0


@pytest.mark.asyncio
async def test_sweep_expires_only_overdue_online_intents(machine, run, session_factory, clock):
    online = await machine.book(make_draft())
    cash = await machine.book(make_draft())
    fresh = await machine.book(make_draft())

    await run(
        lambda uow: machine.payments.create(uow, online.id, PaymentMethod.ONLINE, "40000")
    )
    await run(lambda uow: machine.payments.create(uow, cash.id, PaymentMethod.CASH, "40000"))
    clock.advance(hours=20)
    await run(
        lambda uow: machine.payments.create(uow, fresh.id, PaymentMethod.ONLINE, "40000")
    )
    clock.advance(hours=5)

    expired = await expire_overdue_payments(
        session_factory, machine.payments, chunk_size=1, clock=clock
    )
    assert expired == 1
    assert await expire_overdue_payments(session_factory, machine.payments, clock=clock) == 0

    intents = await run(lambda uow: uow.scalars(select(PaymentIntent)))
    by_shipment = {}
    for intent in intents:
        by_shipment.setdefault(intent.shipment_id, []).append(intent)

    assert sorted((i.method.value, i.status.value) for i in by_shipment[online.id]) == [
        ("CASH", "PENDING"),
        ("ONLINE", "EXPIRED"),
    ]
    assert [i.status for i in by_shipment[cash.id]] == [PaymentIntentStatus.PENDING]
    assert [i.status for i in by_shipment[fresh.id]] == [PaymentIntentStatus.PENDING]
