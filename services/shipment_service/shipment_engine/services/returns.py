"""Return orders and the policy hold that precedes their final disposition."""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

import structlog
from sqlalchemy import select

from shipment_engine.core.config import settings
from shipment_engine.core.context import Actor, as_utc
from shipment_engine.core.errors import (
    HoldAlreadyDecided,
    HoldNotElapsed,
    NotFound,
    ReturnStateError,
)
from shipment_engine.core.unit_of_work import UnitOfWork
from shipment_engine.models import (
    FinalAction,
    ReturnOrder,
    ReturnOrderStatus,
    ReturnPolicyHold,
    Shipment,
    ShipmentStatus,
)
from shipment_engine.services import event_log

logger = structlog.get_logger()

# Shipment state each final action drives the original shipment to
FINAL_ACTION_TARGETS: dict[FinalAction, ShipmentStatus] = {
    FinalAction.RETURNED_TO_ORIGIN: ShipmentStatus.RETURN_COMPLETED,
    FinalAction.DISPOSED: ShipmentStatus.DISPOSED,
    FinalAction.REDELIVERED: ShipmentStatus.IN_ORIGIN_WAREHOUSE,
}

_ADVANCE_FROM = {
    ReturnOrderStatus.IN_TRANSIT: ReturnOrderStatus.CREATED,
    ReturnOrderStatus.RETURNED: ReturnOrderStatus.IN_TRANSIT,
}

DecisionCallback = Callable[[UnitOfWork, uuid.UUID, ShipmentStatus, Actor], Awaitable[None]]


class ReturnLifecycleManager:
    """Opens return orders, runs the hold clock and records the final action.

    ``on_decided`` is invoked inside the deciding unit of work so the
    original shipment moves in the same transaction as the decision.
    """

    def __init__(self, on_decided: DecisionCallback | None = None):
        self._on_decided = on_decided

    # ── Queries ───────────────────────────────

    async def open_for_shipment(
        self, uow: UnitOfWork, shipment_id: uuid.UUID, *, lock: bool = False
    ) -> ReturnOrder | None:
        """The shipment's return order that is not yet COMPLETED."""
        stmt = (
            select(ReturnOrder)
            .where(
                ReturnOrder.original_shipment_id == shipment_id,
                ReturnOrder.status != ReturnOrderStatus.COMPLETED,
            )
            .order_by(ReturnOrder.created_at.desc())
            .limit(1)
        )
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return await uow.scalar(stmt)

    async def latest_hold(
        self, uow: UnitOfWork, shipment_id: uuid.UUID
    ) -> ReturnPolicyHold | None:
        stmt = (
            select(ReturnPolicyHold)
            .where(ReturnPolicyHold.original_shipment_id == shipment_id)
            .order_by(ReturnPolicyHold.hold_start_at.desc())
            .limit(1)
        )
        return await uow.scalar(stmt)

    async def _hold_for_order(
        self, uow: UnitOfWork, return_order_id: uuid.UUID
    ) -> ReturnPolicyHold:
        stmt = (
            select(ReturnPolicyHold)
            .where(ReturnPolicyHold.return_order_id == return_order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        hold = await uow.scalar(stmt)
        if hold is None:
            raise NotFound(
                "Return order has no policy hold", return_order_id=str(return_order_id)
            )
        return hold

    # ── Commands ──────────────────────────────

    async def open_return(
        self,
        uow: UnitOfWork,
        original_shipment_id: uuid.UUID,
        reason_code: str,
        *,
        actor: Actor | None = None,
        reason_note: str | None = None,
    ) -> ReturnOrder:
        actor = actor or Actor.system()
        shipment = await uow.get(Shipment, original_shipment_id, lock=True)
        existing = await self.open_for_shipment(uow, original_shipment_id)
        if existing is not None:
            raise ReturnStateError(
                f"Shipment {shipment.tracking_code} already has an open return",
                return_order_id=str(existing.id),
            )

        order = ReturnOrder(
            original_shipment_id=original_shipment_id,
            reason_code=reason_code,
            reason_note=reason_note,
            route_scope=shipment.route_scope,
            origin_branch_id=shipment.assigned_branch_id,
            current_branch_id=shipment.assigned_branch_id,
            status=ReturnOrderStatus.CREATED,
            created_by_type=actor.type.value,
            created_by=actor.id,
        )
        uow.add(order)
        await event_log.return_changed(
            uow, return_order=order, event_type="CREATED", actor=actor, message=reason_note
        )
        logger.info(
            "return_opened",
            return_order_id=str(order.id),
            shipment_id=str(original_shipment_id),
            reason_code=reason_code,
        )
        return order

    async def advance(
        self,
        uow: UnitOfWork,
        original_shipment_id: uuid.UUID,
        status: ReturnOrderStatus,
        *,
        actor: Actor | None = None,
        branch_id: uuid.UUID | None = None,
    ) -> ReturnOrder:
        """Move the open return order CREATED -> IN_TRANSIT -> RETURNED."""
        actor = actor or Actor.system()
        order = await self.open_for_shipment(uow, original_shipment_id, lock=True)
        if order is None:
            raise ReturnStateError(
                "Shipment has no open return order", shipment_id=str(original_shipment_id)
            )
        expected = _ADVANCE_FROM.get(status)
        if expected is None or order.status is not expected:
            raise ReturnStateError(
                f"Return order cannot move from {order.status.value} to {status.value}",
                return_order_id=str(order.id),
            )

        old_status = order.status
        order.status = status
        if branch_id:
            order.current_branch_id = branch_id
        await event_log.return_changed(
            uow,
            return_order=order,
            event_type="STATUS_CHANGED",
            actor=actor,
            old_status=old_status.value,
        )
        return order

    async def attach_return_shipment(
        self,
        uow: UnitOfWork,
        return_order_id: uuid.UUID,
        return_shipment_id: uuid.UUID,
        *,
        actor: Actor | None = None,
    ) -> ReturnOrder:
        actor = actor or Actor.system()
        order = await uow.get(ReturnOrder, return_order_id, lock=True)
        await uow.get(Shipment, return_shipment_id)
        order.return_shipment_id = return_shipment_id
        await event_log.return_changed(
            uow,
            return_order=order,
            event_type="RETURN_SHIPMENT_ATTACHED",
            actor=actor,
            raw_payload={"return_shipment_id": return_shipment_id},
        )
        return order

    async def start_hold(
        self,
        uow: UnitOfWork,
        return_order_id: uuid.UUID,
        duration_policy: str | timedelta,
        *,
        actor: Actor | None = None,
    ) -> ReturnPolicyHold:
        """Start the hold clock; the order must be back at origin."""
        actor = actor or Actor.system()
        order = await uow.get(ReturnOrder, return_order_id, lock=True)
        if order.status is not ReturnOrderStatus.RETURNED:
            raise ReturnStateError(
                f"Hold can only start once returned, order is {order.status.value}",
                return_order_id=str(return_order_id),
            )

        if isinstance(duration_policy, timedelta):
            policy_name, duration = "CUSTOM", duration_policy
        else:
            try:
                duration = settings.hold_duration(duration_policy)
            except ValueError as exc:
                raise ReturnStateError(str(exc), policy=duration_policy) from exc
            policy_name = duration_policy.upper()
        if duration <= timedelta(0):
            raise ReturnStateError("Hold duration must be positive", policy=policy_name)

        now = uow.now()
        hold = ReturnPolicyHold(
            return_order_id=return_order_id,
            original_shipment_id=order.original_shipment_id,
            policy=policy_name,
            hold_start_at=now,
            hold_until_at=now + duration,
        )
        uow.add(hold)
        order.status = ReturnOrderStatus.ON_HOLD
        await event_log.return_changed(
            uow,
            return_order=order,
            event_type="HOLD_STARTED",
            actor=actor,
            old_status=ReturnOrderStatus.RETURNED.value,
            raw_payload={"policy": policy_name, "hold_until_at": hold.hold_until_at},
        )
        logger.info(
            "return_hold_started",
            return_order_id=str(return_order_id),
            policy=policy_name,
            hold_until_at=hold.hold_until_at.isoformat(),
        )
        return hold

    async def record_customer_pickup(
        self,
        uow: UnitOfWork,
        return_order_id: uuid.UUID,
        *,
        actor: Actor | None = None,
        picked_up_at: datetime | None = None,
    ) -> ReturnPolicyHold:
        actor = actor or Actor.system()
        order = await uow.get(ReturnOrder, return_order_id, lock=True)
        hold = await self._hold_for_order(uow, return_order_id)
        if hold.final_action is not None:
            raise HoldAlreadyDecided(
                "Return hold already decided", return_order_id=str(return_order_id)
            )
        hold.pickup_by_customer_at = picked_up_at or uow.now()
        await event_log.return_changed(
            uow,
            return_order=order,
            event_type="CUSTOMER_PICKUP",
            actor=actor,
            old_status=order.status.value,
        )
        return hold

    async def decide(
        self,
        uow: UnitOfWork,
        return_order_id: uuid.UUID,
        final_action: FinalAction,
        *,
        actor: Actor | None = None,
        note: str | None = None,
    ) -> ReturnPolicyHold:
        """Record the terminal disposition and move the original shipment.

        Legal once ``hold_until_at`` has passed, or earlier for
        RETURNED_TO_ORIGIN when the customer collected the parcel.
        """
        actor = actor or Actor.system()
        final_action = FinalAction(final_action)
        order = await uow.get(ReturnOrder, return_order_id, lock=True)
        hold = await self._hold_for_order(uow, return_order_id)

        if hold.final_action is not None:
            raise HoldAlreadyDecided(
                f"Return hold already decided as {hold.final_action.value}",
                return_order_id=str(return_order_id),
            )

        now = uow.now()
        hold_until = as_utc(hold.hold_until_at)
        if now < hold_until:
            early_pickup = (
                hold.pickup_by_customer_at is not None
                and final_action is FinalAction.RETURNED_TO_ORIGIN
            )
            if not early_pickup:
                raise HoldNotElapsed(
                    "Return hold has not elapsed",
                    return_order_id=str(return_order_id),
                    hold_until_at=hold_until.isoformat(),
                    final_action=final_action.value,
                )

        hold.final_action = final_action
        hold.decided_at = now
        hold.decided_by_type = actor.type.value
        hold.decided_by = actor.id
        hold.note = note
        if final_action is FinalAction.DISPOSED:
            hold.disposed_at = now

        old_status = order.status
        order.status = ReturnOrderStatus.COMPLETED
        await event_log.return_changed(
            uow,
            return_order=order,
            event_type="DECIDED",
            actor=actor,
            old_status=old_status.value,
            message=note,
            raw_payload={"final_action": final_action.value},
        )
        logger.info(
            "return_decided",
            return_order_id=str(return_order_id),
            final_action=final_action.value,
        )

        if self._on_decided is not None:
            await self._on_decided(
                uow, order.original_shipment_id, FINAL_ACTION_TARGETS[final_action], actor
            )
        return hold
