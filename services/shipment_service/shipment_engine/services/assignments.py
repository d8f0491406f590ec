"""Driver assignment coordination for pickup and delivery legs.

An assignment moves ASSIGNED -> ACCEPTED -> IN_PROGRESS -> COMPLETED, or to
CANCELLED from any non-terminal state. Terminal rows stay in the table with
``is_active`` cleared; at most one row per (shipment, leg) is active.
"""

from __future__ import annotations

import uuid

import structlog
from sqlalchemy import func, select

from shipment_engine.core.context import Actor
from shipment_engine.core.errors import (
    AssignmentAlreadyActive,
    DriverAtCapacity,
    InvalidAssignmentState,
    NotFound,
)
from shipment_engine.core.unit_of_work import UnitOfWork
from shipment_engine.models import (
    AssignmentStatus,
    AssignmentType,
    Driver,
    DriverAssignment,
    ReservationPurpose,
    Shipment,
)
from shipment_engine.models.assignment import OPEN_ASSIGNMENT_STATUSES
from shipment_engine.services import event_log
from shipment_engine.services.capacity import CapacityTracker

logger = structlog.get_logger()

_NEXT_STATES: dict[AssignmentStatus, frozenset[AssignmentStatus]] = {
    AssignmentStatus.ASSIGNED: frozenset({AssignmentStatus.ACCEPTED, AssignmentStatus.CANCELLED}),
    AssignmentStatus.ACCEPTED: frozenset({AssignmentStatus.IN_PROGRESS, AssignmentStatus.CANCELLED}),
    AssignmentStatus.IN_PROGRESS: frozenset({AssignmentStatus.COMPLETED, AssignmentStatus.CANCELLED}),
    AssignmentStatus.COMPLETED: frozenset(),
    AssignmentStatus.CANCELLED: frozenset(),
}

_TIMESTAMP_FIELDS = {
    AssignmentStatus.ACCEPTED: "accepted_at",
    AssignmentStatus.IN_PROGRESS: "started_at",
    AssignmentStatus.COMPLETED: "completed_at",
    AssignmentStatus.CANCELLED: "cancelled_at",
}


class AssignmentCoordinator:
    def __init__(self, capacity: CapacityTracker):
        self.capacity = capacity

    # ── Queries ───────────────────────────────

    async def active_assignment(
        self,
        uow: UnitOfWork,
        shipment_id: uuid.UUID,
        assignment_type: AssignmentType,
        *,
        lock: bool = False,
    ) -> DriverAssignment | None:
        stmt = select(DriverAssignment).where(
            DriverAssignment.shipment_id == shipment_id,
            DriverAssignment.assignment_type == assignment_type,
            DriverAssignment.is_active.is_(True),
        )
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return await uow.scalar(stmt)

    async def open_count_for_driver(self, uow: UnitOfWork, driver_id: uuid.UUID) -> int:
        stmt = select(func.count(DriverAssignment.id)).where(
            DriverAssignment.driver_id == driver_id,
            DriverAssignment.is_active.is_(True),
            DriverAssignment.status.in_(OPEN_ASSIGNMENT_STATUSES),
        )
        return (await uow.scalar(stmt)) or 0

    async def _lock_available_driver(self, uow: UnitOfWork, driver_id: uuid.UUID) -> Driver:
        # The driver row lock serialises concurrent assignments to one driver
        driver = await uow.get(Driver, driver_id, lock=True)
        if not driver.is_active:
            raise InvalidAssignmentState(
                f"Driver {driver.code} is inactive", driver_id=str(driver_id)
            )
        open_count = await self.open_count_for_driver(uow, driver_id)
        if open_count >= driver.max_active_orders:
            raise DriverAtCapacity(
                f"Driver {driver.code} already has {open_count} open assignments",
                driver_id=str(driver_id),
                open_assignments=open_count,
                max_active_orders=driver.max_active_orders,
            )
        return driver

    # ── Commands ──────────────────────────────

    async def assign(
        self,
        uow: UnitOfWork,
        shipment_id: uuid.UUID,
        assignment_type: AssignmentType,
        driver_id: uuid.UUID,
        vehicle_id: uuid.UUID | None = None,
        *,
        actor: Actor | None = None,
        branch_id: uuid.UUID | None = None,
        note: str | None = None,
    ) -> DriverAssignment:
        """Bind a driver (and a vehicle's capacity) to one leg of a shipment."""
        actor = actor or Actor.system()
        shipment = await uow.get(Shipment, shipment_id, lock=True)

        existing = await self.active_assignment(uow, shipment_id, assignment_type)
        if existing is not None:
            raise AssignmentAlreadyActive(
                f"Shipment {shipment.tracking_code} already has an active "
                f"{assignment_type.value} assignment",
                shipment_id=str(shipment_id),
                assignment_id=str(existing.id),
            )

        driver = await self._lock_available_driver(uow, driver_id)
        vehicle_id = vehicle_id or driver.vehicle_id
        branch_id = branch_id or shipment.assigned_branch_id or driver.branch_id

        reservation = None
        if vehicle_id is not None:
            reservation = await self.capacity.reserve(
                uow,
                vehicle_id,
                shipment.total_weight_kg,
                shipment.total_volume_m3,
                shipment_id=shipment_id,
                purpose=ReservationPurpose(assignment_type.value),
                branch_id=branch_id,
                actor=actor,
            )

        assignment = DriverAssignment(
            shipment_id=shipment_id,
            assignment_type=assignment_type,
            branch_id=branch_id,
            driver_id=driver_id,
            vehicle_id=vehicle_id,
            reservation_id=reservation.id if reservation else None,
            status=AssignmentStatus.ASSIGNED,
            assigned_by_type=actor.type.value,
            assigned_by=actor.id,
            assigned_at=uow.now(),
            note=note,
            is_active=True,
        )
        uow.add(assignment)
        await event_log.assignment_changed(
            uow, assignment=assignment, change_action="ASSIGNED", actor=actor, note=note
        )

        logger.info(
            "driver_assigned",
            shipment_id=str(shipment_id),
            assignment_type=assignment_type.value,
            driver_id=str(driver_id),
            vehicle_id=str(vehicle_id) if vehicle_id else None,
        )
        return assignment

    async def _move(
        self,
        uow: UnitOfWork,
        assignment_id: uuid.UUID,
        target: AssignmentStatus,
        actor: Actor | None,
        note: str | None,
    ) -> DriverAssignment:
        actor = actor or Actor.system()
        assignment = await uow.get(DriverAssignment, assignment_id, lock=True)
        current = assignment.status
        if target not in _NEXT_STATES[current]:
            raise InvalidAssignmentState(
                f"Assignment cannot move from {current.value} to {target.value}",
                assignment_id=str(assignment_id),
                current=current.value,
                target=target.value,
            )

        now = uow.now()
        assignment.status = target
        setattr(assignment, _TIMESTAMP_FIELDS[target], now)
        if not _NEXT_STATES[target]:
            assignment.is_active = False
        if note:
            assignment.note = note

        if target is AssignmentStatus.CANCELLED and assignment.reservation_id:
            await self.capacity.release(uow, assignment.reservation_id)

        await event_log.assignment_changed(
            uow,
            assignment=assignment,
            change_action=target.value,
            actor=actor,
            old_driver_id=assignment.driver_id,
            old_status=current.value,
            note=note,
        )
        logger.info(
            "assignment_status_changed",
            assignment_id=str(assignment_id),
            shipment_id=str(assignment.shipment_id),
            old_status=current.value,
            new_status=target.value,
        )
        return assignment

    async def accept(self, uow, assignment_id, *, actor=None, note=None) -> DriverAssignment:
        return await self._move(uow, assignment_id, AssignmentStatus.ACCEPTED, actor, note)

    async def start(self, uow, assignment_id, *, actor=None, note=None) -> DriverAssignment:
        return await self._move(uow, assignment_id, AssignmentStatus.IN_PROGRESS, actor, note)

    async def complete(self, uow, assignment_id, *, actor=None, note=None) -> DriverAssignment:
        return await self._move(uow, assignment_id, AssignmentStatus.COMPLETED, actor, note)

    async def cancel(self, uow, assignment_id, *, actor=None, note=None) -> DriverAssignment:
        return await self._move(uow, assignment_id, AssignmentStatus.CANCELLED, actor, note)

    async def reassign(
        self,
        uow: UnitOfWork,
        shipment_id: uuid.UUID,
        assignment_type: AssignmentType,
        new_driver_id: uuid.UUID,
        *,
        vehicle_id: uuid.UUID | None = None,
        actor: Actor | None = None,
        note: str | None = None,
    ) -> DriverAssignment:
        """Swap the active leg to another driver in one step.

        The old row ends CANCELLED and inactive, the new row starts ASSIGNED,
        and a single history row records both drivers and both statuses.
        """
        actor = actor or Actor.system()
        shipment = await uow.get(Shipment, shipment_id, lock=True)
        old = await self.active_assignment(uow, shipment_id, assignment_type, lock=True)
        if old is None:
            raise NotFound(
                f"No active {assignment_type.value} assignment for "
                f"shipment {shipment.tracking_code}",
                shipment_id=str(shipment_id),
            )
        if old.driver_id == new_driver_id:
            raise InvalidAssignmentState(
                "Shipment is already assigned to this driver",
                assignment_id=str(old.id),
                driver_id=str(new_driver_id),
            )

        driver = await self._lock_available_driver(uow, new_driver_id)
        # A driver without a default vehicle takes over the one already on the leg
        new_vehicle_id = vehicle_id or driver.vehicle_id or old.vehicle_id

        old_status = old.status
        now = uow.now()
        old.status = AssignmentStatus.CANCELLED
        old.cancelled_at = now
        old.is_active = False
        # The partial unique index must see the old row inactive before the insert
        await uow.flush()

        reservation_id = old.reservation_id
        if reservation_id is not None and new_vehicle_id != old.vehicle_id:
            await self.capacity.release(uow, reservation_id)
            reservation_id = None
        if reservation_id is None and new_vehicle_id is not None:
            reservation = await self.capacity.reserve(
                uow,
                new_vehicle_id,
                shipment.total_weight_kg,
                shipment.total_volume_m3,
                shipment_id=shipment_id,
                purpose=ReservationPurpose(assignment_type.value),
                branch_id=old.branch_id,
                actor=actor,
            )
            reservation_id = reservation.id

        new = DriverAssignment(
            shipment_id=shipment_id,
            assignment_type=assignment_type,
            branch_id=old.branch_id,
            driver_id=new_driver_id,
            vehicle_id=new_vehicle_id,
            reservation_id=reservation_id,
            status=AssignmentStatus.ASSIGNED,
            assigned_by_type=actor.type.value,
            assigned_by=actor.id,
            assigned_at=now,
            note=note,
            is_active=True,
        )
        uow.add(new)
        await event_log.assignment_changed(
            uow,
            assignment=new,
            change_action="REASSIGNED",
            actor=actor,
            old_driver_id=old.driver_id,
            old_status=old_status.value,
            note=note,
        )

        logger.info(
            "driver_reassigned",
            shipment_id=str(shipment_id),
            assignment_type=assignment_type.value,
            old_driver_id=str(old.driver_id),
            new_driver_id=str(new_driver_id),
        )
        return new
