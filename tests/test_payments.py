"""PaymentIntentLedger: single pending intent, expiry fallback, chain safety."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from shipment_engine.core.context import as_utc
from shipment_engine.core.errors import (
    FallbackCycleDetected,
    IntentAlreadyOpen,
    IntentNotExpired,
    InvalidIntentState,
)
from shipment_engine.models import (
    AdminTask,
    AdminTaskType,
    PaymentEventLog,
    PaymentIntent,
    PaymentIntentStatus,
    PaymentMethod,
)
from tests.factories import persist


async def _create(machine, shipment_id, method=PaymentMethod.ONLINE, amount="40000"):
    return await machine.run(
        lambda uow: machine.payments.create(uow, shipment_id, method, amount, provider="vnpay")
    )


@pytest.mark.asyncio
async def test_online_intent_gets_expiry_and_blocks_a_second_intent(machine, clock, shipment):
    intent = await _create(machine, shipment.id)

    assert intent.status is PaymentIntentStatus.PENDING
    assert as_utc(intent.expires_at) - clock.current < timedelta(hours=24)
    assert as_utc(intent.expires_at) - clock.current > timedelta(hours=23, minutes=59)

    with pytest.raises(IntentAlreadyOpen):
        await _create(machine, shipment.id, PaymentMethod.CASH)


@pytest.mark.asyncio
async def test_cash_intent_never_expires(machine, shipment):
    intent = await _create(machine, shipment.id, PaymentMethod.CASH)
    assert intent.expires_at is None

    with pytest.raises(InvalidIntentState):
        await machine.run(lambda uow: machine.payments.expire(uow, intent.id))


@pytest.mark.asyncio
async def test_expire_before_deadline_is_rejected(machine, clock, shipment):
    intent = await _create(machine, shipment.id)
    clock.advance(hours=23)

    with pytest.raises(IntentNotExpired):
        await machine.run(lambda uow: machine.payments.expire(uow, intent.id))


@pytest.mark.asyncio
async def test_expire_twice_yields_one_cash_fallback(machine, run, clock, shipment):
    intent = await _create(machine, shipment.id)
    clock.advance(hours=24, seconds=1)

    first = await run(lambda uow: machine.payments.expire(uow, intent.id))
    second = await run(lambda uow: machine.payments.expire(uow, intent.id))

    assert first.id == second.id
    assert first.method is PaymentMethod.CASH
    assert first.fallback_payment_intent_id == intent.id
    assert first.amount == Decimal("40000")

    intents = await run(
        lambda uow: uow.scalars(
            select(PaymentIntent).where(PaymentIntent.shipment_id == shipment.id)
        )
    )
    statuses = sorted(i.status.value for i in intents)
    assert statuses == ["EXPIRED", "PENDING"]

    tasks = await run(
        lambda uow: uow.scalars(
            select(AdminTask).where(AdminTask.task_type == AdminTaskType.PAYMENT_TIMEOUT)
        )
    )
    assert len(tasks) == 1
    assert tasks[0].payment_intent_id == intent.id

    chain = await run(lambda uow: machine.payments.walk_chain(uow, first.id))
    assert [i.id for i in chain] == [first.id, intent.id]


@pytest.mark.asyncio
async def test_confirm_is_idempotent_and_logged(machine, run, shipment):
    intent = await _create(machine, shipment.id, PaymentMethod.CASH)

    confirmed = await run(
        lambda uow: machine.payments.confirm(
            uow, intent.id, provider_txn_id="TXN-1", amount_paid="40000"
        )
    )
    again = await run(lambda uow: machine.payments.confirm(uow, intent.id))
    assert confirmed.status is PaymentIntentStatus.CONFIRMED
    assert again.id == confirmed.id
    assert again.amount_paid == Decimal("40000")

    events = await run(
        lambda uow: uow.scalars(
            select(PaymentEventLog).where(PaymentEventLog.payment_intent_id == intent.id)
        )
    )
    assert sorted(e.event_type for e in events) == ["CONFIRMED", "CREATED"]


@pytest.mark.asyncio
async def test_failed_intent_frees_the_pending_slot(machine, run, shipment):
    intent = await _create(machine, shipment.id)

    failed = await run(lambda uow: machine.payments.fail(uow, intent.id, "card_declined"))
    assert failed.status is PaymentIntentStatus.FAILED
    with pytest.raises(InvalidIntentState):
        await run(lambda uow: machine.payments.cancel(uow, intent.id))

    replacement = await _create(machine, shipment.id, PaymentMethod.COD)
    assert replacement.status is PaymentIntentStatus.PENDING


@pytest.mark.asyncio
async def test_walk_chain_detects_cycles_and_long_chains(machine, run, session_factory, shipment):
    def intent(**kwargs):
        return PaymentIntent(
            shipment_id=shipment.id,
            method=PaymentMethod.CASH,
            status=PaymentIntentStatus.EXPIRED,
            amount=Decimal("1"),
            **kwargs,
        )

    first = intent()
    await persist(session_factory, first)
    second = intent(fallback_payment_intent_id=first.id)
    await persist(session_factory, second)
    third = intent(fallback_payment_intent_id=second.id)
    await persist(session_factory, third)

    with pytest.raises(FallbackCycleDetected):
        await run(lambda uow: machine.payments.walk_chain(uow, third.id, max_hops=1))

    async def close_loop(uow):
        await uow.execute(
            update(PaymentIntent)
            .where(PaymentIntent.id == first.id)
            .values(fallback_payment_intent_id=third.id)
        )

    await run(close_loop)
    with pytest.raises(FallbackCycleDetected):
        await run(lambda uow: machine.payments.walk_chain(uow, third.id))
