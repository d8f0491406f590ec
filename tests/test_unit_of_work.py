"""UnitOfWork commit/rollback rules and the transient-conflict retry."""

from __future__ import annotations

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from shipment_engine.core.errors import Conflict, NotFound, PreconditionFailed
from shipment_engine.core.unit_of_work import is_transient, run_in_transaction
from shipment_engine.models import Branch
from tests.factories import make_branch


async def _branch_codes(session_factory):
    return await run_in_transaction(
        session_factory, lambda uow: uow.scalars(select(Branch.code)), backoff_ms=0
    )


@pytest.mark.asyncio
async def test_stale_write_is_retried_once(session_factory):
    attempts = []

    async def work(uow):
        attempts.append(1)
        if len(attempts) == 1:
            raise StaleDataError("version mismatch")
        uow.add(make_branch("DN01"))
        return "done"

    result = await run_in_transaction(session_factory, work, backoff_ms=0)

    assert result == "done"
    assert len(attempts) == 2
    assert await _branch_codes(session_factory) == ["DN01"]


@pytest.mark.asyncio
async def test_second_collision_surfaces_as_conflict(session_factory):
    async def work(uow):
        uow.add(make_branch("DN02"))
        await uow.flush()
        raise StaleDataError("version mismatch")

    with pytest.raises(Conflict) as excinfo:
        await run_in_transaction(session_factory, work, retries=1, backoff_ms=0)

    assert excinfo.value.details["attempts"] == 2
    assert await _branch_codes(session_factory) == []


@pytest.mark.asyncio
async def test_engine_error_rolls_back_and_skips_after_commit(session_factory):
    sent = []

    async def notify():
        sent.append("sent")

    async def work(uow):
        uow.add(make_branch("HP01"))
        await uow.flush()
        uow.after_commit(notify)
        raise PreconditionFailed("nope")

    with pytest.raises(PreconditionFailed):
        await run_in_transaction(session_factory, work, backoff_ms=0)

    assert sent == []
    assert await _branch_codes(session_factory) == []


@pytest.mark.asyncio
async def test_after_commit_runs_once_committed_and_failures_do_not_propagate(session_factory):
    sent = []

    async def broken():
        raise RuntimeError("broker down")

    async def notify():
        sent.append("sent")

    async def work(uow):
        uow.add(make_branch("CT01"))
        uow.after_commit(broken)
        uow.after_commit(notify)
        return "ok"

    assert await run_in_transaction(session_factory, work, backoff_ms=0) == "ok"
    assert sent == ["sent"]
    assert await _branch_codes(session_factory) == ["CT01"]


@pytest.mark.asyncio
async def test_missing_row_raises_not_found(session_factory):
    async def work(uow):
        return await uow.get(Branch, make_branch("XX").id)

    with pytest.raises(NotFound):
        await run_in_transaction(session_factory, work)

    async def tolerant(uow):
        return await uow.get(Branch, make_branch("XX").id, missing_ok=True)

    assert await run_in_transaction(session_factory, tolerant) is None


def test_unique_violation_counts_as_transient():
    unique = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: branches.code"))
    fk = IntegrityError("INSERT", {}, Exception("FOREIGN KEY constraint failed"))

    assert is_transient(unique)
    assert not is_transient(fk)
    assert is_transient(StaleDataError("stale"))
    assert not is_transient(ValueError("no"))
