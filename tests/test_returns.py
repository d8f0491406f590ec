"""ReturnLifecycleManager: hold clock, early pickup, single terminal decision."""

from __future__ import annotations

from datetime import timedelta

import pytest

from shipment_engine.core.context import as_utc
from shipment_engine.core.errors import HoldAlreadyDecided, HoldNotElapsed, ReturnStateError
from shipment_engine.models import FinalAction, ReturnOrderStatus, ShipmentStatus
from shipment_engine.services.returns import ReturnLifecycleManager
from tests.factories import AGENT


@pytest.fixture
def decisions():
    return []


@pytest.fixture
def returns(decisions):
    async def record(uow, shipment_id, target, actor):
        decisions.append((shipment_id, target))

    return ReturnLifecycleManager(on_decided=record)


async def _returned_order(run, returns, shipment_id):
    async def work(uow):
        order = await returns.open_return(uow, shipment_id, "RECEIVER_ABSENT", actor=AGENT)
        await returns.advance(uow, shipment_id, ReturnOrderStatus.IN_TRANSIT, actor=AGENT)
        await returns.advance(uow, shipment_id, ReturnOrderStatus.RETURNED, actor=AGENT)
        return order

    return await run(work)


@pytest.mark.asyncio
async def test_only_one_open_return_per_shipment(run, returns, shipment):
    await run(lambda uow: returns.open_return(uow, shipment.id, "REFUSED"))

    with pytest.raises(ReturnStateError):
        await run(lambda uow: returns.open_return(uow, shipment.id, "REFUSED"))


@pytest.mark.asyncio
async def test_hold_starts_only_once_returned(run, returns, shipment):
    order = await run(lambda uow: returns.open_return(uow, shipment.id, "REFUSED"))

    with pytest.raises(ReturnStateError):
        await run(lambda uow: returns.start_hold(uow, order.id, "STANDARD"))


@pytest.mark.asyncio
async def test_policy_duration_sets_hold_until(run, returns, shipment):
    order = await _returned_order(run, returns, shipment.id)

    hold = await run(lambda uow: returns.start_hold(uow, order.id, "standard", actor=AGENT))

    assert hold.policy == "STANDARD"
    assert as_utc(hold.hold_until_at) - as_utc(hold.hold_start_at) == timedelta(days=7)


@pytest.mark.asyncio
async def test_explicit_duration_and_unknown_policy(run, returns, shipment):
    order = await _returned_order(run, returns, shipment.id)

    with pytest.raises(ReturnStateError):
        await run(lambda uow: returns.start_hold(uow, order.id, "FOREVER"))

    hold = await run(lambda uow: returns.start_hold(uow, order.id, timedelta(hours=36)))
    assert hold.policy == "CUSTOM"
    assert as_utc(hold.hold_until_at) - as_utc(hold.hold_start_at) == timedelta(hours=36)


@pytest.mark.asyncio
async def test_decide_waits_for_the_hold_then_is_final(run, clock, returns, decisions, shipment):
    order = await _returned_order(run, returns, shipment.id)
    await run(lambda uow: returns.start_hold(uow, order.id, timedelta(days=3)))

    with pytest.raises(HoldNotElapsed):
        await run(lambda uow: returns.decide(uow, order.id, FinalAction.DISPOSED))
    assert decisions == []

    clock.advance(days=3, seconds=1)
    hold = await run(
        lambda uow: returns.decide(uow, order.id, FinalAction.DISPOSED, actor=AGENT, note="Unclaimed")
    )
    assert hold.final_action is FinalAction.DISPOSED
    assert hold.disposed_at is not None
    assert decisions == [(shipment.id, ShipmentStatus.DISPOSED)]

    with pytest.raises(HoldAlreadyDecided):
        await run(lambda uow: returns.decide(uow, order.id, FinalAction.REDELIVERED))

    reloaded = await run(lambda uow: returns.open_for_shipment(uow, shipment.id))
    assert reloaded is None


@pytest.mark.asyncio
async def test_customer_pickup_allows_only_early_return_to_origin(run, returns, decisions, shipment):
    order = await _returned_order(run, returns, shipment.id)
    await run(lambda uow: returns.start_hold(uow, order.id, "STANDARD"))
    await run(lambda uow: returns.record_customer_pickup(uow, order.id, actor=AGENT))

    with pytest.raises(HoldNotElapsed):
        await run(lambda uow: returns.decide(uow, order.id, FinalAction.DISPOSED))

    hold = await run(lambda uow: returns.decide(uow, order.id, FinalAction.RETURNED_TO_ORIGIN))
    assert hold.final_action is FinalAction.RETURNED_TO_ORIGIN
    assert decisions == [(shipment.id, ShipmentStatus.RETURN_COMPLETED)]
