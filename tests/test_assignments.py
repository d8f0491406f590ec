"""AssignmentCoordinator: one active leg, driver limits, reassignment."""

from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import select

from shipment_engine.core.errors import (
    AssignmentAlreadyActive,
    DriverAtCapacity,
    InvalidAssignmentState,
    NotFound,
)
from shipment_engine.models import (
    AssignmentStatus,
    AssignmentType,
    DriverAssignment,
    DriverAssignmentHistory,
    VehicleLoadTracking,
)
from tests.factories import AGENT, make_draft, make_driver, persist


async def _assign(machine, shipment_id, driver_id, leg=AssignmentType.PICKUP, **kwargs):
    return await machine.run(
        lambda uow: machine.assignments.assign(
            uow, shipment_id, leg, driver_id, actor=AGENT, **kwargs
        )
    )


@pytest.mark.asyncio
async def test_driver_at_capacity_is_refused(machine, world):
    for _ in range(3):
        booked = await machine.book(make_draft())
        await _assign(machine, booked.id, world.driver.id)

    fourth = await machine.book(make_draft())
    with pytest.raises(DriverAtCapacity):
        await _assign(machine, fourth.id, world.driver.id)


@pytest.mark.asyncio
async def test_second_active_assignment_for_same_leg_is_refused(machine, world, shipment):
    await _assign(machine, shipment.id, world.driver.id)

    with pytest.raises(AssignmentAlreadyActive):
        await _assign(machine, shipment.id, world.other.id)

    # The other leg is independent
    delivery = await _assign(machine, shipment.id, world.other.id, AssignmentType.DELIVERY)
    assert delivery.is_active


@pytest.mark.asyncio
async def test_assign_reserves_capacity_on_driver_vehicle(machine, run, world, shipment):
    assignment = await _assign(machine, shipment.id, world.driver.id)

    assert assignment.vehicle_id == world.truck.id
    assert assignment.reservation_id is not None
    load = await run(lambda uow: uow.get(VehicleLoadTracking, world.truck.id))
    assert load.current_load_kg == Decimal("10")


@pytest.mark.asyncio
async def test_cancel_releases_the_reservation(machine, run, world, shipment):
    assignment = await _assign(machine, shipment.id, world.driver.id)

    cancelled = await run(lambda uow: machine.assignments.cancel(uow, assignment.id, actor=AGENT))

    assert cancelled.status is AssignmentStatus.CANCELLED
    assert cancelled.is_active is False
    load = await run(lambda uow: uow.get(VehicleLoadTracking, world.truck.id))
    assert load.current_load_kg == Decimal("0")


@pytest.mark.asyncio
async def test_illegal_assignment_move_is_refused(machine, run, world, shipment):
    assignment = await _assign(machine, shipment.id, world.driver.id)

    with pytest.raises(InvalidAssignmentState):
        await run(lambda uow: machine.assignments.complete(uow, assignment.id))

    accepted = await run(lambda uow: machine.assignments.accept(uow, assignment.id))
    assert accepted.status is AssignmentStatus.ACCEPTED
    assert accepted.accepted_at is not None


@pytest.mark.asyncio
async def test_reassign_swaps_driver_and_moves_capacity(machine, run, world, shipment):
    old = await _assign(machine, shipment.id, world.driver.id)

    new = await run(
        lambda uow: machine.assignments.reassign(
            uow, shipment.id, AssignmentType.PICKUP, world.other.id, actor=AGENT, note="Closer"
        )
    )

    rows = await run(
        lambda uow: uow.scalars(
            select(DriverAssignment).where(DriverAssignment.shipment_id == shipment.id)
        )
    )
    by_id = {row.id: row for row in rows}
    assert by_id[old.id].status is AssignmentStatus.CANCELLED
    assert by_id[old.id].is_active is False
    assert by_id[new.id].status is AssignmentStatus.ASSIGNED
    assert [row.id for row in rows if row.is_active] == [new.id]

    history = await run(
        lambda uow: uow.scalars(
            select(DriverAssignmentHistory).where(
                DriverAssignmentHistory.change_action == "REASSIGNED"
            )
        )
    )
    assert len(history) == 1
    assert history[0].old_driver_id == world.driver.id
    assert history[0].new_driver_id == world.other.id

    truck = await run(lambda uow: uow.get(VehicleLoadTracking, world.truck.id))
    van = await run(lambda uow: uow.get(VehicleLoadTracking, world.van.id))
    assert truck.current_load_kg == Decimal("0")
    assert van.current_load_kg == Decimal("10")


@pytest.mark.asyncio
async def test_reassign_without_active_leg_or_to_same_driver_fails(machine, run, world, shipment):
    with pytest.raises(NotFound):
        await run(
            lambda uow: machine.assignments.reassign(
                uow, shipment.id, AssignmentType.DELIVERY, world.other.id
            )
        )

    await _assign(machine, shipment.id, world.driver.id)
    with pytest.raises(InvalidAssignmentState):
        await run(
            lambda uow: machine.assignments.reassign(
                uow, shipment.id, AssignmentType.PICKUP, world.driver.id
            )
        )


@pytest.mark.asyncio
async def test_reassign_to_driver_without_vehicle_keeps_the_leg_vehicle(
    machine, run, session_factory, world, shipment
):
    walker = make_driver("DRV-03", branch_id=world.origin.id)
    await persist(session_factory, walker)
    old = await _assign(machine, shipment.id, world.driver.id)

    new = await run(
        lambda uow: machine.assignments.reassign(
            uow, shipment.id, AssignmentType.PICKUP, walker.id, actor=AGENT
        )
    )

    assert new.vehicle_id == world.truck.id
    assert new.reservation_id == old.reservation_id
    truck = await run(lambda uow: uow.get(VehicleLoadTracking, world.truck.id))
    assert truck.current_load_kg == Decimal("10")
