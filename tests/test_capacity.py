"""CapacityTracker: bounded counters, idempotent release, binding log."""

from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from shipment_engine.core.errors import CapacityError, CapacityExceeded
from shipment_engine.models import (
    ReservationPurpose,
    ReservationStatus,
    ShipmentVehicleAssignmentLog,
    VehicleLoadTracking,
)
from tests.factories import make_vehicle, persist


async def _load(run, vehicle_id) -> VehicleLoadTracking:
    return await run(lambda uow: uow.get(VehicleLoadTracking, vehicle_id))


@pytest.mark.asyncio
async def test_reserve_beyond_max_load_is_rejected_and_counters_stay(machine, run, world, shipment):
    capacity = machine.capacity

    await run(
        lambda uow: capacity.reserve(
            uow, world.truck.id, 480, shipment_id=shipment.id, purpose=ReservationPurpose.PICKUP
        )
    )

    with pytest.raises(CapacityExceeded):
        await run(
            lambda uow: capacity.reserve(
                uow, world.truck.id, 30, shipment_id=shipment.id, purpose=ReservationPurpose.PICKUP
            )
        )

    load = await _load(run, world.truck.id)
    assert load.current_load_kg == Decimal("480")
    assert load.current_order_count == 1


@pytest.mark.asyncio
async def test_volume_limit_applies_only_when_declared(machine, run, world, shipment):
    capacity = machine.capacity

    with pytest.raises(CapacityExceeded):
        await run(
            lambda uow: capacity.reserve(
                uow,
                world.truck.id,
                1,
                "5.5",
                shipment_id=shipment.id,
                purpose=ReservationPurpose.MANIFEST,
            )
        )

    # The van declares no volume limit
    reservation = await run(
        lambda uow: capacity.reserve(
            uow, world.van.id, 1, "99", shipment_id=shipment.id, purpose=ReservationPurpose.PICKUP
        )
    )
    assert reservation.status is ReservationStatus.RESERVED


@pytest.mark.asyncio
async def test_reserve_release_reserve_is_idempotent(machine, run, world, shipment):
    capacity = machine.capacity

    token = await run(
        lambda uow: capacity.reserve(
            uow, world.truck.id, 10, "0.5", shipment_id=shipment.id, purpose=ReservationPurpose.PICKUP
        )
    )
    assert await run(lambda uow: capacity.release(uow, token.id)) is True
    assert await run(lambda uow: capacity.release(uow, token.id)) is False

    load = await _load(run, world.truck.id)
    assert load.current_load_kg == Decimal("0")
    assert load.current_volume_m3 == Decimal("0")
    assert load.current_order_count == 0

    await run(
        lambda uow: capacity.reserve(
            uow, world.truck.id, 10, "0.5", shipment_id=shipment.id, purpose=ReservationPurpose.PICKUP
        )
    )
    load = await _load(run, world.truck.id)
    assert load.current_load_kg == Decimal("10")
    assert load.current_order_count == 1


@pytest.mark.asyncio
async def test_release_for_shipment_only_touches_matching_purpose(machine, run, world, shipment):
    capacity = machine.capacity

    async def reserve_both(uow):
        await capacity.reserve(
            uow, world.truck.id, 10, shipment_id=shipment.id, purpose=ReservationPurpose.PICKUP
        )
        await capacity.reserve(
            uow, world.truck.id, 10, shipment_id=shipment.id, purpose=ReservationPurpose.MANIFEST
        )

    await run(reserve_both)
    released = await run(
        lambda uow: capacity.release_for_shipment(uow, shipment.id, ReservationPurpose.PICKUP)
    )
    assert released == 1

    remaining = await run(lambda uow: capacity.reserved_for_shipment(uow, shipment.id))
    assert [r.purpose for r in remaining] == [ReservationPurpose.MANIFEST]
    assert (await _load(run, world.truck.id)).current_load_kg == Decimal("10")


@pytest.mark.asyncio
async def test_inactive_vehicle_and_negative_load_are_refused(machine, run, session_factory, shipment):
    parked = make_vehicle("TRK-OFF")
    parked.is_active = False
    await persist(session_factory, parked)

    with pytest.raises(CapacityError):
        await run(
            lambda uow: machine.capacity.reserve(
                uow, parked.id, 1, shipment_id=shipment.id, purpose=ReservationPurpose.PICKUP
            )
        )
    with pytest.raises(ValueError):
        await run(
            lambda uow: machine.capacity.reserve(
                uow, parked.id, -1, shipment_id=shipment.id, purpose=ReservationPurpose.PICKUP
            )
        )


@pytest.mark.asyncio
async def test_binding_is_logged_once_per_reservation(machine, run, world, shipment):
    await run(
        lambda uow: machine.capacity.reserve(
            uow,
            world.truck.id,
            5,
            shipment_id=shipment.id,
            purpose=ReservationPurpose.PICKUP,
            branch_id=world.origin.id,
        )
    )

    count = await run(
        lambda uow: uow.scalar(
            select(func.count(ShipmentVehicleAssignmentLog.id)).where(
                ShipmentVehicleAssignmentLog.shipment_id == shipment.id
            )
        )
    )
    assert count == 1
