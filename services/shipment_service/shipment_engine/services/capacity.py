"""Vehicle capacity accounting.

``VehicleLoadTracking`` counters move only through ``reserve`` and
``release``; nothing recomputes them from shipments. Each reservation is a
persisted ``CapacityReservation`` row, so releasing twice is harmless and
the counters can be reconciled against the RESERVED rows at any time.
"""

from __future__ import annotations

import uuid
from decimal import Decimal

import structlog
from sqlalchemy import select

from shipment_engine.core.context import Actor
from shipment_engine.core.errors import CapacityError, CapacityExceeded
from shipment_engine.core.unit_of_work import UnitOfWork
from shipment_engine.models import (
    CapacityReservation,
    ReservationPurpose,
    ReservationStatus,
    ShipmentVehicleAssignmentLog,
    Vehicle,
    VehicleLoadTracking,
)
from shipment_engine.services import event_log

logger = structlog.get_logger()

ZERO = Decimal("0")


def to_decimal(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class CapacityTracker:
    async def lock_load_row(self, uow: UnitOfWork, vehicle_id: uuid.UUID) -> VehicleLoadTracking:
        """Lock the vehicle's load row, creating an empty one on first use."""
        row = await uow.get(VehicleLoadTracking, vehicle_id, lock=True, missing_ok=True)
        if row is None:
            # Two first reservations may race here; ON CONFLICT keeps one row
            await event_log.record_once(
                uow,
                VehicleLoadTracking,
                conflict_on=["vehicle_id"],
                vehicle_id=vehicle_id,
                current_load_kg=ZERO,
                current_volume_m3=ZERO,
                current_order_count=0,
                version=1,
                updated_at=uow.now(),
            )
            row = await uow.get(VehicleLoadTracking, vehicle_id, lock=True)
        return row

    async def reserve(
        self,
        uow: UnitOfWork,
        vehicle_id: uuid.UUID,
        load_kg,
        volume_m3=None,
        *,
        shipment_id: uuid.UUID,
        purpose: ReservationPurpose,
        branch_id: uuid.UUID | None = None,
        actor: Actor | None = None,
    ) -> CapacityReservation:
        """Reserve ``load_kg``/``volume_m3`` on a vehicle or raise ``CapacityExceeded``."""
        load = to_decimal(load_kg)
        volume = to_decimal(volume_m3)
        if load < 0 or volume < 0:
            raise ValueError("Reserved load and volume must be non-negative")

        vehicle = await uow.get(Vehicle, vehicle_id)
        if not vehicle.is_active:
            raise CapacityError(
                f"Vehicle {vehicle.code} is inactive", vehicle_id=str(vehicle_id)
            )

        tracking = await self.lock_load_row(uow, vehicle_id)
        new_load = to_decimal(tracking.current_load_kg) + load
        new_volume = to_decimal(tracking.current_volume_m3) + volume

        if new_load > to_decimal(vehicle.max_load_kg):
            raise CapacityExceeded(
                f"Vehicle {vehicle.code} load would exceed {vehicle.max_load_kg} kg",
                vehicle_id=str(vehicle_id),
                requested_kg=str(load),
                current_kg=str(tracking.current_load_kg),
                max_kg=str(vehicle.max_load_kg),
            )
        if vehicle.max_volume_m3 is not None and new_volume > to_decimal(vehicle.max_volume_m3):
            raise CapacityExceeded(
                f"Vehicle {vehicle.code} volume would exceed {vehicle.max_volume_m3} m3",
                vehicle_id=str(vehicle_id),
                requested_m3=str(volume),
                current_m3=str(tracking.current_volume_m3),
                max_m3=str(vehicle.max_volume_m3),
            )

        now = uow.now()
        tracking.current_load_kg = new_load
        tracking.current_volume_m3 = new_volume
        tracking.current_order_count = tracking.current_order_count + 1
        tracking.updated_at = now

        reservation = CapacityReservation(
            vehicle_id=vehicle_id,
            shipment_id=shipment_id,
            purpose=purpose,
            load_kg=load,
            volume_m3=volume,
            status=ReservationStatus.RESERVED,
            reserved_at=now,
        )
        uow.add(reservation)
        await uow.flush()

        await event_log.record_once(
            uow,
            ShipmentVehicleAssignmentLog,
            conflict_on=["shipment_id", "vehicle_id", "branch_id", "assigned_at"],
            id=uuid.uuid4(),
            shipment_id=shipment_id,
            vehicle_id=vehicle_id,
            branch_id=branch_id,
            purpose=purpose.value,
            assigned_by=actor.id if actor else None,
            assigned_at=now,
        )

        logger.info(
            "capacity_reserved",
            vehicle_id=str(vehicle_id),
            shipment_id=str(shipment_id),
            purpose=purpose.value,
            load_kg=str(load),
            volume_m3=str(volume),
            current_load_kg=str(new_load),
        )
        return reservation

    async def release(
        self, uow: UnitOfWork, token: CapacityReservation | uuid.UUID
    ) -> bool:
        """Return a reservation's share to the vehicle.

        Releasing an already released token is a no-op and returns ``False``.
        """
        token_id = token.id if isinstance(token, CapacityReservation) else token
        reservation = await uow.get(CapacityReservation, token_id, lock=True)
        if reservation.status is ReservationStatus.RELEASED:
            return False

        tracking = await self.lock_load_row(uow, reservation.vehicle_id)
        now = uow.now()
        tracking.current_load_kg = to_decimal(tracking.current_load_kg) - to_decimal(
            reservation.load_kg
        )
        tracking.current_volume_m3 = to_decimal(
            tracking.current_volume_m3
        ) - to_decimal(reservation.volume_m3)
        tracking.current_order_count = tracking.current_order_count - 1
        tracking.updated_at = now

        reservation.status = ReservationStatus.RELEASED
        reservation.released_at = now
        await uow.flush()

        logger.info(
            "capacity_released",
            reservation_id=str(reservation.id),
            vehicle_id=str(reservation.vehicle_id),
            shipment_id=str(reservation.shipment_id),
            purpose=reservation.purpose.value,
        )
        return True

    async def reserved_for_shipment(
        self,
        uow: UnitOfWork,
        shipment_id: uuid.UUID,
        purpose: ReservationPurpose | None = None,
    ) -> list[CapacityReservation]:
        stmt = select(CapacityReservation).where(
            CapacityReservation.shipment_id == shipment_id,
            CapacityReservation.status == ReservationStatus.RESERVED,
        )
        if purpose is not None:
            stmt = stmt.where(CapacityReservation.purpose == purpose)
        return list(await uow.scalars(stmt.order_by(CapacityReservation.reserved_at)))

    async def release_for_shipment(
        self,
        uow: UnitOfWork,
        shipment_id: uuid.UUID,
        purpose: ReservationPurpose | None = None,
    ) -> int:
        """Release every RESERVED token of a shipment (optionally one purpose)."""
        released = 0
        for reservation in await self.reserved_for_shipment(uow, shipment_id, purpose):
            if await self.release(uow, reservation):
                released += 1
        return released
