"""Admin task queue: work items raised by the engine for people to handle."""

from __future__ import annotations

import secrets
import uuid
from datetime import timedelta

import structlog
from sqlalchemy import select

from shipment_engine.core.config import settings
from shipment_engine.core.context import Actor
from shipment_engine.core.errors import AdminTaskStateError, HumanActorRequired
from shipment_engine.core.unit_of_work import UnitOfWork
from shipment_engine.models import AdminTask, AdminTaskStatus, AdminTaskType
from shipment_engine.services import event_log

logger = structlog.get_logger()

_REFERENCE_FIELDS = (
    "shipment_id",
    "branch_id",
    "driver_id",
    "vehicle_id",
    "manifest_id",
    "return_order_id",
    "payment_intent_id",
)


def _require_human(actor: Actor, action: str) -> None:
    if not actor.is_human:
        raise HumanActorRequired(
            f"{action} requires a human actor", actor_type=actor.type.value
        )


class AdminTaskQueue:
    async def open_task(
        self,
        uow: UnitOfWork,
        task_type: AdminTaskType,
        title: str,
        *,
        actor: Actor | None = None,
        description: str | None = None,
        priority: int | None = None,
        due_in: timedelta | None = None,
        payload: dict | None = None,
        **references: uuid.UUID | None,
    ) -> AdminTask:
        """Create an OPEN task with its CREATED event.

        ``references`` are the related entity ids (``shipment_id``,
        ``vehicle_id``, ``payment_intent_id`` ...).
        """
        unknown = set(references) - set(_REFERENCE_FIELDS)
        if unknown:
            raise TypeError(f"Unknown task references: {sorted(unknown)}")

        actor = actor or Actor.system()
        now = uow.now()
        task = AdminTask(
            task_code=f"TASK-{now:%Y%m%d}-{secrets.token_hex(3).upper()}",
            task_type=task_type,
            priority=priority if priority is not None else settings.admin_task_default_priority,
            status=AdminTaskStatus.OPEN,
            title=title[:200],
            description=description,
            due_at=now + (due_in or timedelta(hours=settings.admin_task_due_hours)),
            created_by_type=actor.type.value,
            created_by=actor.id,
            created_at=now,
            **references,
        )
        uow.add(task)
        await event_log.admin_task_changed(
            uow, task=task, event_type="CREATED", actor=actor, payload=payload
        )

        logger.info(
            "admin_task_opened",
            task_id=str(task.id),
            task_code=task.task_code,
            task_type=task_type.value,
            shipment_id=str(task.shipment_id) if task.shipment_id else None,
        )
        return task

    async def find_open(
        self, uow: UnitOfWork, task_type: AdminTaskType, **references: uuid.UUID
    ) -> AdminTask | None:
        """Latest unresolved task of a type for the given references, if any."""
        stmt = select(AdminTask).where(
            AdminTask.task_type == task_type,
            AdminTask.status != AdminTaskStatus.RESOLVED,
        )
        for field, value in references.items():
            stmt = stmt.where(getattr(AdminTask, field) == value)
        stmt = stmt.order_by(AdminTask.created_at.desc()).limit(1)
        return await uow.scalar(stmt)

    async def open_once(
        self, uow: UnitOfWork, task_type: AdminTaskType, title: str, **kwargs
    ) -> AdminTask:
        """Like ``open_task`` but reuse an unresolved task with the same references."""
        references = {k: v for k, v in kwargs.items() if k in _REFERENCE_FIELDS and v}
        existing = await self.find_open(uow, task_type, **references)
        if existing is not None:
            return existing
        return await self.open_task(uow, task_type, title, **kwargs)

    async def start(self, uow: UnitOfWork, task_id: uuid.UUID, actor: Actor) -> AdminTask:
        _require_human(actor, "Starting an admin task")
        task = await uow.get(AdminTask, task_id, lock=True)
        if task.status is not AdminTaskStatus.OPEN:
            raise AdminTaskStateError(
                f"Task {task.task_code} is {task.status.value}, not OPEN",
                task_id=str(task_id),
            )
        task.status = AdminTaskStatus.IN_PROGRESS
        await event_log.admin_task_changed(
            uow,
            task=task,
            event_type="STARTED",
            actor=actor,
            old_status=AdminTaskStatus.OPEN.value,
        )
        return task

    async def resolve(
        self,
        uow: UnitOfWork,
        task_id: uuid.UUID,
        actor: Actor,
        resolution_code: str,
        note: str | None = None,
    ) -> AdminTask:
        _require_human(actor, "Resolving an admin task")
        task = await uow.get(AdminTask, task_id, lock=True)
        if task.status is AdminTaskStatus.RESOLVED:
            raise AdminTaskStateError(
                f"Task {task.task_code} is already resolved", task_id=str(task_id)
            )

        old_status = task.status
        task.status = AdminTaskStatus.RESOLVED
        task.resolution_code = resolution_code
        task.resolution_note = note
        task.resolved_by_type = actor.type.value
        task.resolved_by = actor.id
        task.resolved_at = uow.now()
        await event_log.admin_task_changed(
            uow,
            task=task,
            event_type="RESOLVED",
            actor=actor,
            old_status=old_status.value,
            note=note,
            payload={"resolution_code": resolution_code},
        )
        logger.info(
            "admin_task_resolved",
            task_id=str(task.id),
            task_code=task.task_code,
            resolution_code=resolution_code,
            actor_type=actor.type.value,
        )
        return task
