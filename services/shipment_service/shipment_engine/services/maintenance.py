"""Batch jobs: load reconciliation, legacy status backfill, payment expiry sweep.

Each job walks its rows in id-ordered chunks, one short transaction per
chunk (or per row where the work is per-entity), so it can be stopped and
re-run at any point.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy import String, func, select, type_coerce, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shipment_engine.core.config import settings
from shipment_engine.core.context import Actor, utcnow
from shipment_engine.core.errors import EngineError
from shipment_engine.core.unit_of_work import UnitOfWork, run_in_transaction
from shipment_engine.models import (
    AdminTaskType,
    CapacityReservation,
    ReservationStatus,
    Shipment,
    ShipmentStatus,
    ShipmentStatusHistory,
    Vehicle,
    VehicleLoadTracking,
    normalize_status,
)
from shipment_engine.services import event_log
from shipment_engine.services.admin_tasks import AdminTaskQueue
from shipment_engine.services.capacity import ZERO, to_decimal
from shipment_engine.services.payments import PaymentIntentLedger

logger = structlog.get_logger()


@dataclass(frozen=True)
class LoadMismatch:
    vehicle_id: uuid.UUID
    recorded_load_kg: Decimal
    reserved_load_kg: Decimal
    recorded_volume_m3: Decimal
    reserved_volume_m3: Decimal
    recorded_order_count: int
    reserved_order_count: int

    def as_payload(self) -> dict:
        return event_log.jsonable(
            {
                "recorded_load_kg": self.recorded_load_kg,
                "reserved_load_kg": self.reserved_load_kg,
                "recorded_volume_m3": self.recorded_volume_m3,
                "reserved_volume_m3": self.reserved_volume_m3,
                "recorded_order_count": self.recorded_order_count,
                "reserved_order_count": self.reserved_order_count,
            }
        )


async def reconcile_vehicle_loads(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    queue: AdminTaskQueue | None = None,
    chunk_size: int | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> list[LoadMismatch]:
    """Compare load counters with their RESERVED reservations.

    Vehicles are walked by id in chunks; each chunk sums only its own
    vehicles' reservations. Mismatches open a LOAD_MISMATCH task per
    vehicle; the counters are left as they are for a person to investigate.
    """
    queue = queue or AdminTaskQueue()
    chunk_size = chunk_size or settings.backfill_chunk_size
    actor = Actor.job("reconcile_vehicle_loads")

    async def chunk(uow: UnitOfWork, after_id: uuid.UUID | None):
        stmt = select(Vehicle.id).order_by(Vehicle.id).limit(chunk_size)
        if after_id is not None:
            stmt = stmt.where(Vehicle.id > after_id)
        vehicle_ids = list(await uow.scalars(stmt))
        if not vehicle_ids:
            return [], None, 0

        sums = (
            select(
                CapacityReservation.vehicle_id,
                func.coalesce(func.sum(CapacityReservation.load_kg), 0),
                func.coalesce(func.sum(CapacityReservation.volume_m3), 0),
                func.count(CapacityReservation.id),
            )
            .where(
                CapacityReservation.status == ReservationStatus.RESERVED,
                CapacityReservation.vehicle_id.in_(vehicle_ids),
            )
            .group_by(CapacityReservation.vehicle_id)
        )
        reserved = {
            row[0]: (to_decimal(row[1]), to_decimal(row[2]), int(row[3]))
            for row in (await uow.execute(sums)).all()
        }
        loads = await uow.scalars(
            select(VehicleLoadTracking).where(VehicleLoadTracking.vehicle_id.in_(vehicle_ids))
        )
        recorded = {
            load.vehicle_id: (
                to_decimal(load.current_load_kg),
                to_decimal(load.current_volume_m3),
                load.current_order_count,
            )
            for load in loads
        }

        mismatches: list[LoadMismatch] = []
        for vehicle_id in vehicle_ids:
            have = recorded.get(vehicle_id, (ZERO, ZERO, 0))
            want = reserved.get(vehicle_id, (ZERO, ZERO, 0))
            if have == want:
                continue
            mismatch = LoadMismatch(
                vehicle_id=vehicle_id,
                recorded_load_kg=have[0],
                reserved_load_kg=want[0],
                recorded_volume_m3=have[1],
                reserved_volume_m3=want[1],
                recorded_order_count=have[2],
                reserved_order_count=want[2],
            )
            logger.warning(
                "vehicle_load_mismatch",
                vehicle_id=str(vehicle_id),
                recorded_load_kg=str(mismatch.recorded_load_kg),
                reserved_load_kg=str(mismatch.reserved_load_kg),
            )
            await queue.open_once(
                uow,
                AdminTaskType.LOAD_MISMATCH,
                "Vehicle load counters disagree with reservations",
                actor=actor,
                payload=mismatch.as_payload(),
                vehicle_id=vehicle_id,
            )
            mismatches.append(mismatch)
        return mismatches, vehicle_ids[-1], len(vehicle_ids)

    found: list[LoadMismatch] = []
    cursor: uuid.UUID | None = None
    while True:
        mismatches, cursor_next, seen = await run_in_transaction(
            session_factory, lambda uow: chunk(uow, cursor), clock=clock
        )
        found += mismatches
        if seen < chunk_size:
            break
        cursor = cursor_next

    logger.info("vehicle_loads_reconciled", mismatches=len(found))
    return found


async def backfill_legacy_statuses(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    chunk_size: int | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> int:
    """Rewrite pre-canonical status strings to the canonical vocabulary.

    Rows are read through Core with the status column as plain text, since
    the ORM refuses to load values outside the enum. Returns the number of
    shipments changed; a second run changes nothing.
    """
    chunk_size = chunk_size or settings.backfill_chunk_size
    actor = Actor.job("backfill_legacy_statuses")
    table = Shipment.__table__
    raw_status = type_coerce(table.c.shipment_status, String)
    canonical = [status.value for status in ShipmentStatus]

    async def chunk(uow: UnitOfWork, after_id: uuid.UUID | None):
        stmt = (
            select(table.c.id, raw_status.label("raw_status"))
            .where(raw_status.not_in(canonical))
            .order_by(table.c.id)
            .limit(chunk_size)
        )
        if after_id is not None:
            stmt = stmt.where(table.c.id > after_id)
        rows = (await uow.execute(stmt)).all()

        changed = 0
        for shipment_id, raw in rows:
            try:
                status = normalize_status(raw)
            except ValueError:
                logger.warning(
                    "legacy_status_unmapped", shipment_id=str(shipment_id), raw_status=raw
                )
                continue
            result = await uow.execute(
                update(table)
                .where(table.c.id == shipment_id, raw_status == raw)
                .values(
                    shipment_status=status,
                    updated_at=uow.now(),
                    version=table.c.version + 1,
                )
            )
            if result.rowcount != 1:
                continue
            event_log.append(
                uow,
                ShipmentStatusHistory,
                shipment_id=shipment_id,
                old_status=raw,
                new_status=status.value,
                actor_type=actor.type.value,
                actor_id=actor.id,
                message="Legacy status normalised",
            )
            changed += 1
        last_id = rows[-1][0] if rows else None
        return changed, last_id, len(rows)

    total = 0
    cursor: uuid.UUID | None = None
    while True:
        changed, cursor_next, seen = await run_in_transaction(
            session_factory, lambda uow: chunk(uow, cursor), clock=clock
        )
        total += changed
        if seen:
            logger.info("legacy_status_chunk_done", rows=seen, changed=changed)
        if seen < chunk_size:
            break
        cursor = cursor_next

    logger.info("legacy_status_backfill_done", changed=total)
    return total


async def expire_overdue_payments(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: PaymentIntentLedger,
    *,
    chunk_size: int | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> int:
    """Expire every PENDING online intent past its deadline.

    Each intent expires in its own transaction. An intent that changed
    state since it was listed is logged and skipped.
    """
    chunk_size = chunk_size or settings.backfill_chunk_size
    actor = Actor.job("expire_overdue_payments")
    expired = 0
    cursor: uuid.UUID | None = None

    while True:
        now = clock()
        ids = await run_in_transaction(
            session_factory,
            lambda uow: ledger.find_overdue(uow, now, limit=chunk_size, after_id=cursor),
            clock=clock,
        )
        for intent_id in ids:
            try:
                await run_in_transaction(
                    session_factory,
                    lambda uow: ledger.expire(uow, intent_id, actor=actor),
                    clock=clock,
                )
            except EngineError as exc:
                logger.warning(
                    "payment_expiry_skipped",
                    payment_intent_id=str(intent_id),
                    code=exc.code,
                    error=exc.message,
                )
                continue
            expired += 1
        if len(ids) < chunk_size:
            break
        cursor = ids[-1]

    logger.info("overdue_payments_expired", expired=expired)
    return expired
