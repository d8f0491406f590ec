"""AdminTaskQueue: codes, dedupe, human-only handling."""

from __future__ import annotations

import re

import pytest
from sqlalchemy import select

from shipment_engine.core.context import Actor
from shipment_engine.core.errors import AdminTaskStateError, HumanActorRequired
from shipment_engine.models import AdminTaskEvent, AdminTaskStatus, AdminTaskType
from tests.factories import ADMIN


async def _open(machine, shipment_id):
    return await machine.run(
        lambda uow: machine.admin_tasks.open_task(
            uow, AdminTaskType.MANUAL, "Check parcel seal", shipment_id=shipment_id
        )
    )


@pytest.mark.asyncio
async def test_open_task_gets_code_due_date_and_event(machine, run, shipment):
    task = await _open(machine, shipment.id)

    assert re.fullmatch(r"TASK-\d{8}-[0-9A-F]{6}", task.task_code)
    assert task.status is AdminTaskStatus.OPEN
    assert task.due_at is not None
    events = await run(
        lambda uow: uow.scalars(select(AdminTaskEvent).where(AdminTaskEvent.task_id == task.id))
    )
    assert [e.event_type for e in events] == ["CREATED"]


@pytest.mark.asyncio
async def test_automated_actors_cannot_work_tasks(machine, run, shipment):
    task = await _open(machine, shipment.id)

    with pytest.raises(HumanActorRequired):
        await run(lambda uow: machine.admin_tasks.start(uow, task.id, Actor.system()))
    with pytest.raises(HumanActorRequired):
        await run(
            lambda uow: machine.admin_tasks.resolve(
                uow, task.id, Actor.job("nightly"), "AUTO_FIXED"
            )
        )


@pytest.mark.asyncio
async def test_resolve_once(machine, run, shipment):
    task = await _open(machine, shipment.id)

    started = await run(lambda uow: machine.admin_tasks.start(uow, task.id, ADMIN))
    assert started.status is AdminTaskStatus.IN_PROGRESS

    resolved = await run(
        lambda uow: machine.admin_tasks.resolve(uow, task.id, ADMIN, "SEAL_OK", "Photo checked")
    )
    assert resolved.status is AdminTaskStatus.RESOLVED
    assert resolved.resolved_by_type == "ADMIN"

    with pytest.raises(AdminTaskStateError):
        await run(lambda uow: machine.admin_tasks.resolve(uow, task.id, ADMIN, "SEAL_OK"))
    with pytest.raises(AdminTaskStateError):
        await run(lambda uow: machine.admin_tasks.start(uow, task.id, ADMIN))


@pytest.mark.asyncio
async def test_open_once_reuses_unresolved_task(machine, run, shipment):
    first = await run(
        lambda uow: machine.admin_tasks.open_once(
            uow, AdminTaskType.PICKUP_RESCHEDULE, "Call customer", shipment_id=shipment.id
        )
    )
    second = await run(
        lambda uow: machine.admin_tasks.open_once(
            uow, AdminTaskType.PICKUP_RESCHEDULE, "Call customer", shipment_id=shipment.id
        )
    )
    assert first.id == second.id


@pytest.mark.asyncio
async def test_unknown_reference_is_a_programming_error(machine, run, shipment):
    with pytest.raises(TypeError):
        await run(
            lambda uow: machine.admin_tasks.open_task(
                uow, AdminTaskType.MANUAL, "Oops", parcel_id=shipment.id
            )
        )
