"""Append-only event recording for every mutated entity.

Two flavours:

* ``append`` adds an ORM row to the current unit of work. History rows are
  never updated or deleted, so there is nothing to deduplicate.
* ``record_once`` writes a row keyed by a natural key with
  ``INSERT ... ON CONFLICT DO NOTHING``. A duplicate is a successful no-op,
  which makes scans, call attempts and vehicle binding logs safe to replay.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any, TypeVar

import structlog
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from shipment_engine.core.context import Actor
from shipment_engine.core.unit_of_work import UnitOfWork
from shipment_engine.models import (
    AdminTaskEvent,
    DriverAssignmentHistory,
    PaymentEventLog,
    ReturnEventLog,
    ShipmentStatusHistory,
    TransitManifestEvent,
)

logger = structlog.get_logger()

T = TypeVar("T")

_DIALECT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def jsonable(payload: dict | None) -> dict | None:
    """Coerce UUIDs, decimals and datetimes so the payload fits a JSON column."""
    if not payload:
        return None
    return json.loads(json.dumps(payload, default=str))


def append(
    uow: UnitOfWork, model: type[T], *, time_field: str = "event_at", **values: Any
) -> T:
    """Stage one append-only row, stamping it with the unit of work clock."""
    values.setdefault(time_field, uow.now())
    row = model(**values)
    uow.add(row)
    return row


async def record_once(
    uow: UnitOfWork,
    model: type,
    *,
    conflict_on: Sequence[str],
    **values: Any,
) -> bool:
    """Insert a natural-keyed row unless it already exists.

    Returns ``True`` when a row was written, ``False`` for a duplicate.
    """
    insert = _DIALECT_INSERTS.get(uow.dialect_name)
    if insert is None:
        raise RuntimeError(f"ON CONFLICT inserts unsupported on {uow.dialect_name}")

    # Pending ORM rows (e.g. a freshly created shipment) must exist first
    await uow.flush()
    stmt = insert(model.__table__).values(**values).on_conflict_do_nothing(
        index_elements=list(conflict_on)
    )
    result = await uow.execute(stmt)
    inserted = result.rowcount == 1
    if not inserted:
        logger.debug(
            "event_duplicate_ignored",
            table=model.__tablename__,
            key={k: str(values.get(k)) for k in conflict_on},
        )
    return inserted


async def _flush_parents(uow: UnitOfWork) -> None:
    # Models carry no ORM relationships, so a flush cannot order parent rows
    # before children, and parent ids only exist once flushed
    await uow.flush()


# ── Typed helpers ─────────────────────────────


async def shipment_status_changed(
    uow: UnitOfWork,
    *,
    shipment_id,
    old_status: str | None,
    new_status: str,
    actor: Actor,
    message: str | None = None,
    payload: dict | None = None,
) -> ShipmentStatusHistory:
    await _flush_parents(uow)
    return append(
        uow,
        ShipmentStatusHistory,
        shipment_id=shipment_id,
        old_status=old_status,
        new_status=new_status,
        actor_type=actor.type.value,
        actor_id=actor.id,
        message=message,
        payload=jsonable(payload),
    )


async def assignment_changed(
    uow: UnitOfWork,
    *,
    assignment,
    change_action: str,
    actor: Actor,
    old_driver_id=None,
    old_status: str | None = None,
    note: str | None = None,
) -> DriverAssignmentHistory:
    await _flush_parents(uow)
    return append(
        uow,
        DriverAssignmentHistory,
        time_field="changed_at",
        assignment_id=assignment.id,
        shipment_id=assignment.shipment_id,
        assignment_type=assignment.assignment_type.value,
        old_driver_id=old_driver_id,
        new_driver_id=assignment.driver_id,
        old_status=old_status,
        new_status=assignment.status.value,
        change_action=change_action,
        changed_by_type=actor.type.value,
        changed_by=actor.id,
        note=note,
    )


async def payment_changed(
    uow: UnitOfWork,
    *,
    intent,
    event_type: str,
    old_status: str | None,
    actor: Actor,
    message: str | None = None,
    raw_payload: dict | None = None,
) -> PaymentEventLog:
    await _flush_parents(uow)
    return append(
        uow,
        PaymentEventLog,
        payment_intent_id=intent.id,
        shipment_id=intent.shipment_id,
        event_type=event_type,
        old_status=old_status,
        new_status=intent.status.value,
        actor_type=actor.type.value,
        actor_id=actor.id,
        message=message,
        raw_payload=jsonable(raw_payload),
    )


async def manifest_changed(
    uow: UnitOfWork,
    *,
    manifest,
    event_type: str,
    actor: Actor,
    old_status: str | None = None,
    message: str | None = None,
) -> TransitManifestEvent:
    await _flush_parents(uow)
    return append(
        uow,
        TransitManifestEvent,
        manifest_id=manifest.id,
        event_type=event_type,
        old_status=old_status,
        new_status=manifest.status.value,
        actor_type=actor.type.value,
        actor_id=actor.id,
        message=message,
    )


async def return_changed(
    uow: UnitOfWork,
    *,
    return_order,
    event_type: str,
    actor: Actor,
    old_status: str | None = None,
    message: str | None = None,
    raw_payload: dict | None = None,
) -> ReturnEventLog:
    await _flush_parents(uow)
    return append(
        uow,
        ReturnEventLog,
        return_order_id=return_order.id,
        original_shipment_id=return_order.original_shipment_id,
        event_type=event_type,
        old_status=old_status,
        new_status=return_order.status.value,
        actor_type=actor.type.value,
        actor_id=actor.id,
        message=message,
        raw_payload=jsonable(raw_payload),
    )


async def admin_task_changed(
    uow: UnitOfWork,
    *,
    task,
    event_type: str,
    actor: Actor,
    old_status: str | None = None,
    note: str | None = None,
    payload: dict | None = None,
) -> AdminTaskEvent:
    await _flush_parents(uow)
    return append(
        uow,
        AdminTaskEvent,
        task_id=task.id,
        event_type=event_type,
        old_status=old_status,
        new_status=task.status.value,
        actor_type=actor.type.value,
        actor_id=actor.id,
        note=note,
        payload=jsonable(payload),
    )
