"""Shipment lifecycle state machine.

``transition`` is the single entry point for moving a shipment. Inside one
unit of work it locks the shipment row, checks the move against
``TRANSITIONS``, runs the target state's side effects through the
sub-components, appends the status history row and commits. The status
change notification is dispatched only after the commit.

Side effects are declared per target status in ``_effects``; a handler
either mutates sub-entities or raises ``PreconditionFailed``, in which case
the whole transition rolls back. Handlers that depend on where the
shipment came from read ``source_status``, which sees through ISSUE to the
status the issue interrupted.
"""

from __future__ import annotations

import secrets
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, fields
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, TypeVar

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courierx_shared.logging import shipment_context
from shipment_engine.core.context import (
    Actor,
    ActorType,
    TransitionContext,
    as_utc,
    utcnow,
)
from shipment_engine.core.errors import (
    InvalidTransition,
    PreconditionFailed,
    PrematureClose,
)
from shipment_engine.core.unit_of_work import UnitOfWork, run_in_transaction
from shipment_engine.models import (
    AdminTask,
    AdminTaskStatus,
    AdminTaskType,
    AssignmentStatus,
    AssignmentType,
    Branch,
    CallLog,
    DriverAssignment,
    FinalAction,
    GoodsInspection,
    ManifestStatus,
    PaymentIntent,
    PaymentIntentStatus,
    PaymentMethod,
    PickupSchedule,
    PickupScheduleHistory,
    ReservationPurpose,
    ReturnOrder,
    ReturnOrderStatus,
    ScanType,
    Shipment,
    ShipmentStatus,
    ShipmentStatusHistory,
    WarehouseRole,
    WarehouseScan,
)
from shipment_engine.services import event_log
from shipment_engine.services.admin_tasks import AdminTaskQueue
from shipment_engine.services.assignments import AssignmentCoordinator
from shipment_engine.services.capacity import CapacityTracker
from shipment_engine.services.collaborators import GeographyService, PricingService
from shipment_engine.services.manifests import ManifestConsolidator
from shipment_engine.services.notifications import NotificationDispatcher, StatusChanged
from shipment_engine.services.payments import PaymentIntentLedger
from shipment_engine.services.returns import ReturnLifecycleManager

logger = structlog.get_logger()

T = TypeVar("T")

S = ShipmentStatus

CM3_PER_M3 = Decimal(1_000_000)

TRANSITIONS: dict[ShipmentStatus, frozenset[ShipmentStatus]] = {
    S.BOOKED: frozenset({S.PRICE_ESTIMATED, S.BRANCH_ASSIGNED}),
    S.PRICE_ESTIMATED: frozenset({S.BRANCH_ASSIGNED}),
    S.BRANCH_ASSIGNED: frozenset({S.PICKUP_SCHEDULED}),
    S.PICKUP_SCHEDULED: frozenset({S.PICKUP_RESCHEDULED, S.ON_THE_WAY_PICKUP}),
    S.PICKUP_RESCHEDULED: frozenset({S.PICKUP_SCHEDULED, S.ON_THE_WAY_PICKUP}),
    S.ON_THE_WAY_PICKUP: frozenset({S.VERIFIED_ITEM, S.ADJUST_ITEM, S.PICKUP_RESCHEDULED}),
    S.VERIFIED_ITEM: frozenset({S.CONFIRMED_PRICE, S.ADJUSTED_PRICE}),
    S.ADJUST_ITEM: frozenset({S.VERIFIED_ITEM, S.ADJUSTED_PRICE}),
    S.CONFIRMED_PRICE: frozenset({S.PENDING_PAYMENT, S.CONFIRM_PAYMENT}),
    S.ADJUSTED_PRICE: frozenset({S.PENDING_PAYMENT, S.CONFIRM_PAYMENT}),
    S.PENDING_PAYMENT: frozenset({S.CONFIRM_PAYMENT, S.PAYMENT_CONFIRMED}),
    S.CONFIRM_PAYMENT: frozenset({S.PAYMENT_CONFIRMED}),
    S.PAYMENT_CONFIRMED: frozenset({S.PICKUP_COMPLETE, S.PICKUP_COMPLETED}),
    S.PICKUP_COMPLETE: frozenset({S.PICKUP_COMPLETED, S.IN_ORIGIN_WAREHOUSE}),
    S.PICKUP_COMPLETED: frozenset({S.IN_ORIGIN_WAREHOUSE}),
    S.IN_ORIGIN_WAREHOUSE: frozenset({S.IN_TRANSIT, S.OUT_FOR_DELIVERY}),
    S.IN_TRANSIT: frozenset({S.IN_DEST_WAREHOUSE}),
    S.IN_DEST_WAREHOUSE: frozenset({S.OUT_FOR_DELIVERY}),
    S.OUT_FOR_DELIVERY: frozenset({S.DELIVERED_SUCCESS, S.DELIVERY_FAILED}),
    S.DELIVERY_FAILED: frozenset({S.OUT_FOR_DELIVERY, S.RETURN_CREATED}),
    S.DELIVERED_SUCCESS: frozenset({S.CLOSED}),
    S.RETURN_CREATED: frozenset({S.RETURN_IN_TRANSIT}),
    S.RETURN_IN_TRANSIT: frozenset({S.RETURNED_TO_ORIGIN}),
    S.RETURNED_TO_ORIGIN: frozenset({S.RETURN_COMPLETED, S.DISPOSED, S.IN_ORIGIN_WAREHOUSE}),
    S.RETURN_COMPLETED: frozenset({S.CLOSED}),
    S.DISPOSED: frozenset({S.CLOSED}),
    S.CLOSED: frozenset(),
    S.ISSUE: frozenset(),
}

TERMINAL_STATUSES = frozenset({S.CLOSED})

_HUMAN_ACTOR_TYPES = frozenset(t.value for t in ActorType if Actor(t).is_human)

Effect = Callable[[UnitOfWork, Shipment, TransitionContext], Awaitable[None]]


def allowed_targets(shipment: Shipment) -> frozenset[ShipmentStatus]:
    """Statuses the shipment may move to from where it stands."""
    current = shipment.shipment_status
    if current in TERMINAL_STATUSES:
        return frozenset()
    if current is S.ISSUE:
        origin = shipment.pre_issue_status
        if origin is None:
            return frozenset()
        return frozenset({origin}) | TRANSITIONS[origin]
    return TRANSITIONS[current] | {S.ISSUE}


def source_status(shipment: Shipment) -> ShipmentStatus:
    """Status a transition leaves from, looking through ISSUE to the status it interrupted."""
    if shipment.shipment_status is S.ISSUE and shipment.pre_issue_status is not None:
        return shipment.pre_issue_status
    return shipment.shipment_status


@dataclass
class ShipmentDraft:
    """Booking input: the sender/receiver snapshot and parcel facts."""

    sender_address_text: str
    receiver_address_text: str
    total_weight_kg: Decimal
    route_scope: str
    tracking_code: str | None = None
    sender_name: str | None = None
    sender_phone: str | None = None
    sender_province_code: str | None = None
    receiver_name: str | None = None
    receiver_phone: str | None = None
    receiver_province_code: str | None = None
    service_type: str = "STANDARD"
    goods_type: str = "GENERAL"
    declared_value: Decimal = Decimal("0")
    total_volume_m3: Decimal | None = None
    parcel_length_cm: Decimal | None = None
    parcel_width_cm: Decimal | None = None
    parcel_height_cm: Decimal | None = None
    quoted_amount: Decimal | None = None


# ── Payload parsing ───────────────────────────


def _payload_uuid(ctx: TransitionContext, key: str, *, required: bool = False) -> uuid.UUID | None:
    value = ctx.payload.get(key)
    if value is None:
        if required:
            raise PreconditionFailed(f"Payload field {key!r} is required", field=key)
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise PreconditionFailed(f"Payload field {key!r} is not a UUID", field=key) from None


def _payload_decimal(ctx: TransitionContext, key: str) -> Decimal | None:
    value = ctx.payload.get(key)
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise PreconditionFailed(f"Payload field {key!r} is not a number", field=key) from None


def _payload_datetime(ctx: TransitionContext, key: str) -> datetime | None:
    value = ctx.payload.get(key)
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        return as_utc(datetime.fromisoformat(str(value)))
    except ValueError:
        raise PreconditionFailed(
            f"Payload field {key!r} is not an ISO datetime", field=key
        ) from None


class ShipmentStateMachine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        dispatcher: NotificationDispatcher | None = None,
        geography: GeographyService | None = None,
        pricing: PricingService | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._geography = geography
        self._pricing = pricing
        self._clock = clock

        self.capacity = CapacityTracker()
        self.admin_tasks = AdminTaskQueue()
        self.assignments = AssignmentCoordinator(self.capacity)
        self.payments = PaymentIntentLedger(self.admin_tasks)
        self.manifests = ManifestConsolidator(self.capacity)
        self.returns = ReturnLifecycleManager(on_decided=self._apply_return_decision)

        self._effects: dict[ShipmentStatus, Effect] = {
            S.PRICE_ESTIMATED: self._price_estimated,
            S.BRANCH_ASSIGNED: self._branch_assigned,
            S.PICKUP_SCHEDULED: self._pickup_scheduled,
            S.PICKUP_RESCHEDULED: self._pickup_rescheduled,
            S.ON_THE_WAY_PICKUP: self._on_the_way_pickup,
            S.VERIFIED_ITEM: self._item_measured,
            S.ADJUST_ITEM: self._item_measured,
            S.CONFIRMED_PRICE: self._price_confirmed,
            S.ADJUSTED_PRICE: self._price_confirmed,
            S.PENDING_PAYMENT: self._pending_payment,
            S.CONFIRM_PAYMENT: self._confirm_payment,
            S.PAYMENT_CONFIRMED: self._payment_confirmed,
            S.PICKUP_COMPLETE: self._pickup_complete,
            S.PICKUP_COMPLETED: self._pickup_complete,
            S.IN_ORIGIN_WAREHOUSE: self._in_origin_warehouse,
            S.IN_TRANSIT: self._in_transit,
            S.IN_DEST_WAREHOUSE: self._in_dest_warehouse,
            S.OUT_FOR_DELIVERY: self._out_for_delivery,
            S.DELIVERED_SUCCESS: self._delivered,
            S.DELIVERY_FAILED: self._delivery_failed,
            S.RETURN_CREATED: self._return_created,
            S.RETURN_IN_TRANSIT: self._return_in_transit,
            S.RETURNED_TO_ORIGIN: self._returned_to_origin,
            S.RETURN_COMPLETED: self._return_completed,
            S.DISPOSED: self._disposed,
            S.CLOSED: self._closed,
            S.ISSUE: self._issue_raised,
        }

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    # ── Entry points ──────────────────────────

    async def run(self, work: Callable[[UnitOfWork], Awaitable[T]]) -> T:
        """Run ``work`` in a retried unit of work on this engine's clock."""
        return await run_in_transaction(self._session_factory, work, clock=self._clock)

    async def transition(
        self,
        shipment_id: uuid.UUID,
        target_status: ShipmentStatus,
        context: TransitionContext,
    ) -> Shipment:
        target = ShipmentStatus(target_status)
        with shipment_context(shipment_id, target_status=target.value):
            return await self.run(lambda uow: self.apply(uow, shipment_id, target, context))

    async def book(self, draft: ShipmentDraft, actor: Actor | None = None) -> Shipment:
        """Create a BOOKED shipment after consulting geography and pricing."""
        actor = actor or Actor.system()
        if self._geography is not None:
            valid = await self._geography.validate_route_scope(
                sender_province_code=draft.sender_province_code,
                receiver_province_code=draft.receiver_province_code,
                route_scope=draft.route_scope,
            )
            if not valid:
                raise PreconditionFailed(
                    f"Route scope {draft.route_scope} does not fit the addresses",
                    route_scope=draft.route_scope,
                )

        quoted = draft.quoted_amount
        if quoted is None and self._pricing is not None:
            quoted = await self._pricing.quote(event_log.jsonable(asdict(draft)))

        columns = {f.name: getattr(draft, f.name) for f in fields(draft)}
        columns["quoted_amount"] = quoted

        async def work(uow: UnitOfWork) -> Shipment:
            now = uow.now()
            columns["tracking_code"] = columns["tracking_code"] or (
                f"CX{now:%y%m%d}{secrets.token_hex(4).upper()}"
            )
            shipment = Shipment(
                id=uuid.uuid4(),
                shipment_status=S.BOOKED,
                created_at=now,
                updated_at=now,
                **columns,
            )
            uow.add(shipment)
            await event_log.shipment_status_changed(
                uow,
                shipment_id=shipment.id,
                old_status=None,
                new_status=S.BOOKED.value,
                actor=actor,
                message="Shipment booked",
            )
            self._queue_notification(uow, shipment, None, S.BOOKED, actor)
            logger.info(
                "shipment_booked",
                shipment_id=str(shipment.id),
                tracking_code=shipment.tracking_code,
                route_scope=shipment.route_scope,
            )
            return shipment

        return await self.run(work)

    async def decide_return(
        self,
        return_order_id: uuid.UUID,
        final_action: FinalAction,
        context: TransitionContext,
    ):
        """Decide a return hold; the original shipment moves in the same transaction."""

        async def work(uow: UnitOfWork):
            return await self.returns.decide(
                uow, return_order_id, final_action, actor=context.actor, note=context.note
            )

        return await self.run(work)

    async def apply(
        self,
        uow: UnitOfWork,
        shipment_id: uuid.UUID,
        target: ShipmentStatus,
        ctx: TransitionContext,
    ) -> Shipment:
        """Perform one transition inside a caller-owned unit of work."""
        shipment = await uow.get(Shipment, shipment_id, lock=True)
        current = shipment.shipment_status

        if target not in allowed_targets(shipment):
            raise InvalidTransition(
                f"Shipment cannot move from {current.value} to {target.value}",
                shipment_id=str(shipment_id),
                current=current.value,
                target=target.value,
            )

        restoring = False
        if current is S.ISSUE:
            await self._check_issue_resolved(uow, shipment, ctx)
            restoring = target is shipment.pre_issue_status

        # Returning to the pre-issue status restores it without re-running its effects
        if not restoring:
            await self._effects[target](uow, shipment, ctx)

        if target is S.ISSUE:
            shipment.pre_issue_status = current
        elif current is S.ISSUE:
            shipment.pre_issue_status = None
        shipment.shipment_status = target
        shipment.updated_at = uow.now()

        await event_log.shipment_status_changed(
            uow,
            shipment_id=shipment.id,
            old_status=current.value,
            new_status=target.value,
            actor=ctx.actor,
            message=ctx.note,
            payload=ctx.payload,
        )
        self._queue_notification(uow, shipment, current, target, ctx.actor)

        logger.info(
            "shipment_transitioned",
            shipment_id=str(shipment.id),
            tracking_code=shipment.tracking_code,
            old_status=current.value,
            new_status=target.value,
            actor_type=ctx.actor.type.value,
        )
        return shipment

    # ── Queries ───────────────────────────────

    async def history(self, uow: UnitOfWork, shipment_id: uuid.UUID) -> list[ShipmentStatusHistory]:
        stmt = (
            select(ShipmentStatusHistory)
            .where(ShipmentStatusHistory.shipment_id == shipment_id)
            .order_by(ShipmentStatusHistory.event_at, ShipmentStatusHistory.id)
        )
        return list(await uow.scalars(stmt))

    async def close_blockers(self, uow: UnitOfWork, shipment_id: uuid.UUID) -> list[str]:
        """Sub-entities that still keep the shipment from closing."""
        blockers: list[str] = []

        assignments = await uow.scalars(
            select(DriverAssignment).where(
                DriverAssignment.shipment_id == shipment_id,
                DriverAssignment.is_active.is_(True),
            )
        )
        blockers += [
            f"assignment:{a.assignment_type.value}:{a.status.value}" for a in assignments
        ]

        intents = await uow.scalars(
            select(PaymentIntent).where(
                PaymentIntent.shipment_id == shipment_id,
                PaymentIntent.status == PaymentIntentStatus.PENDING,
            )
        )
        blockers += [f"payment_intent:{i.method.value}:PENDING" for i in intents]

        membership = await self.manifests.active_membership(uow, shipment_id)
        if membership is not None:
            blockers.append(f"manifest:{membership[1].manifest_code}")

        reservations = await self.capacity.reserved_for_shipment(uow, shipment_id)
        blockers += [f"reservation:{r.purpose.value}" for r in reservations]

        returns = await uow.scalars(
            select(ReturnOrder).where(
                ReturnOrder.original_shipment_id == shipment_id,
                ReturnOrder.status != ReturnOrderStatus.COMPLETED,
            )
        )
        blockers += [f"return_order:{r.status.value}" for r in returns]
        return blockers

    # ── Internals ─────────────────────────────

    def _queue_notification(
        self,
        uow: UnitOfWork,
        shipment: Shipment,
        old: ShipmentStatus | None,
        new: ShipmentStatus,
        actor: Actor,
    ) -> None:
        if self._dispatcher is None:
            return
        event = StatusChanged(
            shipment_id=shipment.id,
            tracking_code=shipment.tracking_code,
            old_status=old.value if old else None,
            new_status=new.value,
            actor_type=actor.type.value,
            actor_id=actor.id,
            event_at=uow.now(),
        )
        dispatcher = self._dispatcher

        async def dispatch() -> None:
            await dispatcher.status_changed(event)

        uow.after_commit(dispatch)

    async def _apply_return_decision(
        self, uow: UnitOfWork, shipment_id: uuid.UUID, target: ShipmentStatus, actor: Actor
    ) -> None:
        await self.apply(
            uow,
            shipment_id,
            target,
            TransitionContext(actor=actor, note="Return hold decided"),
        )

    async def _check_issue_resolved(
        self, uow: UnitOfWork, shipment: Shipment, ctx: TransitionContext
    ) -> None:
        task_id = _payload_uuid(ctx, "admin_task_id", required=True)
        latest = await uow.scalar(
            select(AdminTask)
            .where(
                AdminTask.shipment_id == shipment.id,
                AdminTask.task_type == AdminTaskType.SHIPMENT_ISSUE,
            )
            .order_by(AdminTask.created_at.desc())
            .limit(1)
        )
        if latest is None or latest.id != task_id:
            raise PreconditionFailed(
                "admin_task_id must name the shipment's current issue task",
                admin_task_id=str(task_id),
            )
        if latest.status is not AdminTaskStatus.RESOLVED:
            raise PreconditionFailed(
                f"Issue task {latest.task_code} is not resolved",
                admin_task_id=str(task_id),
            )
        if latest.resolved_by_type not in _HUMAN_ACTOR_TYPES:
            raise PreconditionFailed(
                f"Issue task {latest.task_code} was not resolved by a person",
                admin_task_id=str(task_id),
            )

    async def _active_leg(
        self, uow: UnitOfWork, shipment: Shipment, leg: AssignmentType
    ) -> DriverAssignment:
        """Active assignment of ``leg`` that is at least ACCEPTED, started on the way."""
        assignment = await self.assignments.active_assignment(uow, shipment.id, leg, lock=True)
        if assignment is None or assignment.status not in (
            AssignmentStatus.ACCEPTED,
            AssignmentStatus.IN_PROGRESS,
        ):
            raise PreconditionFailed(
                f"An accepted {leg.value.lower()} assignment is required",
                shipment_id=str(shipment.id),
                assignment_status=assignment.status.value if assignment else None,
            )
        return assignment

    async def _scan(
        self,
        uow: UnitOfWork,
        shipment: Shipment,
        branch_id: uuid.UUID | None,
        role: WarehouseRole,
        scan_type: ScanType,
        actor: Actor,
    ) -> bool:
        if branch_id is None:
            raise PreconditionFailed(
                f"No branch known for the {role.value.lower()} {scan_type.value.lower()} scan",
                shipment_id=str(shipment.id),
            )
        return await event_log.record_once(
            uow,
            WarehouseScan,
            conflict_on=["shipment_id", "branch_id", "warehouse_role", "scan_type"],
            id=uuid.uuid4(),
            shipment_id=shipment.id,
            branch_id=branch_id,
            warehouse_role=role.value,
            scan_type=scan_type.value,
            scanned_by_type=actor.type.value,
            scanned_by=actor.id,
            scanned_at=uow.now(),
        )

    async def _upsert_pickup_window(
        self,
        uow: UnitOfWork,
        shipment: Shipment,
        ctx: TransitionContext,
        *,
        required: bool,
        reason: str,
    ) -> PickupSchedule | None:
        start = _payload_datetime(ctx, "scheduled_start")
        end = _payload_datetime(ctx, "scheduled_end")
        schedule = await uow.scalar(
            select(PickupSchedule)
            .where(PickupSchedule.shipment_id == shipment.id)
            .with_for_update()
        )

        if start is None and end is None:
            if required and schedule is None:
                raise PreconditionFailed(
                    "A pickup window (scheduled_start, scheduled_end) is required",
                    shipment_id=str(shipment.id),
                )
            return schedule
        if start is None or end is None or end <= start:
            raise PreconditionFailed(
                "Pickup window needs scheduled_start before scheduled_end",
                shipment_id=str(shipment.id),
            )

        old_start = old_end = None
        if schedule is None:
            schedule = PickupSchedule(shipment_id=shipment.id)
            uow.add(schedule)
        else:
            old_start = as_utc(schedule.scheduled_start_at)
            old_end = as_utc(schedule.scheduled_end_at)
            if (old_start, old_end) == (start, end):
                return schedule

        schedule.scheduled_start_at = start
        schedule.scheduled_end_at = end
        schedule.pickup_note = ctx.payload.get("pickup_note", schedule.pickup_note)
        schedule.updated_by_type = ctx.actor.type.value
        schedule.updated_by = ctx.actor.id
        await uow.flush()

        event_log.append(
            uow,
            PickupScheduleHistory,
            time_field="changed_at",
            shipment_id=shipment.id,
            old_start_at=old_start,
            old_end_at=old_end,
            new_start_at=start,
            new_end_at=end,
            reason=ctx.note or reason,
            changed_by_type=ctx.actor.type.value,
            changed_by=ctx.actor.id,
        )
        return schedule

    # ── Side effects per target status ────────

    async def _price_estimated(self, uow, shipment, ctx) -> None:
        quoted = _payload_decimal(ctx, "quoted_amount") or _payload_decimal(ctx, "amount")
        if quoted is not None:
            shipment.quoted_amount = quoted
        if shipment.quoted_amount is None:
            raise PreconditionFailed(
                "A quoted amount is required to estimate the price",
                shipment_id=str(shipment.id),
            )

    async def _branch_assigned(self, uow, shipment, ctx) -> None:
        branch_id = _payload_uuid(ctx, "branch_id", required=True)
        branch = await uow.get(Branch, branch_id)
        if not branch.is_active:
            raise PreconditionFailed(
                f"Branch {branch.code} is inactive", branch_id=str(branch_id)
            )
        shipment.assigned_branch_id = branch.id
        shipment.assigned_at = uow.now()
        shipment.assigned_by = ctx.actor.id or ctx.actor.type.value

    async def _pickup_scheduled(self, uow, shipment, ctx) -> None:
        await self._upsert_pickup_window(
            uow, shipment, ctx, required=True, reason="Pickup scheduled"
        )

    async def _pickup_rescheduled(self, uow, shipment, ctx) -> None:
        await self._upsert_pickup_window(
            uow, shipment, ctx, required=False, reason="Pickup rescheduled"
        )

        call_type = ctx.payload.get("call_type", "PICKUP_CONTACT")
        attempt_no = ctx.payload.get("attempt_no")
        if attempt_no is None:
            previous = await uow.scalar(
                select(func.count(CallLog.id)).where(
                    CallLog.shipment_id == shipment.id, CallLog.call_type == call_type
                )
            )
            attempt_no = (previous or 0) + 1
        await event_log.record_once(
            uow,
            CallLog,
            conflict_on=["shipment_id", "call_type", "attempt_no"],
            id=uuid.uuid4(),
            shipment_id=shipment.id,
            call_type=call_type,
            attempt_no=int(attempt_no),
            outcome=ctx.payload.get("call_outcome", "RESCHEDULED"),
            caller_type=ctx.actor.type.value,
            caller_id=ctx.actor.id,
            note=ctx.note,
            called_at=uow.now(),
        )

        await self.admin_tasks.open_once(
            uow,
            AdminTaskType.PICKUP_RESCHEDULE,
            f"Pickup rescheduled for {shipment.tracking_code}",
            actor=ctx.actor,
            description=ctx.note,
            shipment_id=shipment.id,
            branch_id=shipment.assigned_branch_id,
        )

    async def _on_the_way_pickup(self, uow, shipment, ctx) -> None:
        assignment = await self._active_leg(uow, shipment, AssignmentType.PICKUP)
        if assignment.status is AssignmentStatus.ACCEPTED:
            await self.assignments.start(uow, assignment.id, actor=ctx.actor)
        if assignment.vehicle_id:
            shipment.assigned_vehicle_id = assignment.vehicle_id

    async def _item_measured(self, uow, shipment, ctx) -> None:
        """Record the pickup inspection and carry the measured facts onto the shipment."""
        measured = {
            key: _payload_decimal(ctx, key)
            for key in ("weight_kg", "length_cm", "width_cm", "height_cm", "volume_m3")
        }
        for key, value in measured.items():
            if value is not None and value <= 0:
                raise PreconditionFailed(
                    f"Measured {key} must be positive", field=key, value=str(value)
                )

        weight = measured["weight_kg"]
        length, width, height = measured["length_cm"], measured["width_cm"], measured["height_cm"]
        volume = measured["volume_m3"]
        if volume is None and None not in (length, width, height):
            volume = (length * width * height / CM3_PER_M3).quantize(Decimal("0.001"))

        if weight is not None:
            shipment.total_weight_kg = weight
        if volume is not None:
            shipment.total_volume_m3 = volume
        if length is not None:
            shipment.parcel_length_cm = length
        if width is not None:
            shipment.parcel_width_cm = width
        if height is not None:
            shipment.parcel_height_cm = height

        assignment = await self.assignments.active_assignment(
            uow, shipment.id, AssignmentType.PICKUP
        )
        inspection = await uow.scalar(
            select(GoodsInspection)
            .where(GoodsInspection.shipment_id == shipment.id)
            .with_for_update()
        )
        if inspection is None:
            inspection = GoodsInspection(shipment_id=shipment.id)
            uow.add(inspection)

        inspection.assignment_id = assignment.id if assignment else None
        inspection.driver_id = assignment.driver_id if assignment else None
        inspection.branch_id = shipment.assigned_branch_id
        inspection.actual_weight_kg = shipment.total_weight_kg
        inspection.actual_length_cm = length
        inspection.actual_width_cm = width
        inspection.actual_height_cm = height
        inspection.actual_volume_m3 = volume
        inspection.packaging_condition = ctx.payload.get("packaging_condition")
        inspection.special_handling_flags = ctx.payload.get("special_handling_flags")
        inspection.inspected_by_type = ctx.actor.type.value
        inspection.inspected_by = ctx.actor.id
        inspection.inspected_at = uow.now()
        inspection.note = ctx.note

    async def _price_confirmed(self, uow, shipment, ctx) -> None:
        amount = _payload_decimal(ctx, "amount")
        if amount is None and source_status(shipment) is not S.ADJUST_ITEM:
            amount = shipment.confirmed_amount or shipment.quoted_amount
        if amount is None:
            raise PreconditionFailed(
                "Payload 'amount' is required to fix the price", shipment_id=str(shipment.id)
            )
        shipment.confirmed_amount = amount

    async def _open_intent_from_payload(self, uow, shipment, ctx) -> PaymentIntent:
        amount = _payload_decimal(ctx, "amount")
        if amount is None:
            amount = shipment.confirmed_amount or shipment.quoted_amount
        if amount is None:
            raise PreconditionFailed(
                "No amount to collect; confirm the price first", shipment_id=str(shipment.id)
            )
        return await self.payments.create(
            uow,
            shipment.id,
            PaymentMethod(ctx.payload.get("method", PaymentMethod.CASH.value)),
            amount,
            actor=ctx.actor,
            provider=ctx.payload.get("provider"),
            reference_code=ctx.payload.get("reference_code"),
            raw_payload=ctx.payload.get("provider_payload"),
        )

    async def _pending_payment(self, uow, shipment, ctx) -> None:
        await self._open_intent_from_payload(uow, shipment, ctx)

    async def _confirm_payment(self, uow, shipment, ctx) -> None:
        if await self.payments.open_intent(uow, shipment.id) is not None:
            return
        if await self.payments.confirmed_intent(uow, shipment.id) is not None:
            return
        if "method" in ctx.payload:
            await self._open_intent_from_payload(uow, shipment, ctx)
            return
        raise PreconditionFailed(
            "A pending or confirmed payment intent is required",
            shipment_id=str(shipment.id),
        )

    async def _payment_confirmed(self, uow, shipment, ctx) -> None:
        intent = await self.payments.open_intent(uow, shipment.id)
        if intent is not None:
            await self.payments.confirm(
                uow,
                intent.id,
                actor=ctx.actor,
                provider_txn_id=ctx.payload.get("provider_txn_id"),
                amount_paid=_payload_decimal(ctx, "amount_paid"),
                raw_payload=ctx.payload.get("provider_payload"),
            )
            return
        if await self.payments.confirmed_intent(uow, shipment.id) is None:
            raise PreconditionFailed(
                "No payment intent to confirm", shipment_id=str(shipment.id)
            )

    async def _pickup_complete(self, uow, shipment, ctx) -> None:
        reservations = await self.capacity.reserved_for_shipment(
            uow, shipment.id, ReservationPurpose.PICKUP
        )
        if not reservations:
            raise PreconditionFailed(
                "Pickup requires a reserved vehicle capacity", shipment_id=str(shipment.id)
            )
        assignment = await self.assignments.active_assignment(
            uow, shipment.id, AssignmentType.PICKUP
        )
        if assignment is not None:
            if assignment.status is AssignmentStatus.ACCEPTED:
                await self.assignments.start(uow, assignment.id, actor=ctx.actor)
            await self.assignments.complete(uow, assignment.id, actor=ctx.actor)

    async def _in_origin_warehouse(self, uow, shipment, ctx) -> None:
        if source_status(shipment) is S.RETURNED_TO_ORIGIN:
            hold = await self.returns.latest_hold(uow, shipment.id)
            if hold is None or hold.final_action is not FinalAction.REDELIVERED:
                raise PreconditionFailed(
                    "Redelivery requires a return hold decided as REDELIVERED",
                    shipment_id=str(shipment.id),
                )
        await self.capacity.release_for_shipment(uow, shipment.id, ReservationPurpose.PICKUP)
        branch_id = _payload_uuid(ctx, "branch_id") or shipment.assigned_branch_id
        await self._scan(
            uow, shipment, branch_id, WarehouseRole.ORIGIN, ScanType.INBOUND, ctx.actor
        )

    async def _in_transit(self, uow, shipment, ctx) -> None:
        membership = await self.manifests.active_membership(
            uow,
            shipment.id,
            statuses=frozenset({ManifestStatus.LOADED, ManifestStatus.DEPARTED}),
        )
        if membership is None:
            raise PreconditionFailed(
                "Shipment must be on a loaded or departed manifest",
                shipment_id=str(shipment.id),
            )
        manifest = membership[1]
        shipment.assigned_vehicle_id = manifest.vehicle_id
        await self._scan(
            uow,
            shipment,
            manifest.origin_branch_id,
            WarehouseRole.ORIGIN,
            ScanType.OUTBOUND,
            ctx.actor,
        )

    async def _in_dest_warehouse(self, uow, shipment, ctx) -> None:
        branch_id = _payload_uuid(ctx, "branch_id")
        if branch_id is None:
            manifest = await self.manifests.latest_manifest(uow, shipment.id)
            branch_id = manifest.dest_branch_id if manifest else None
        await self._scan(
            uow, shipment, branch_id, WarehouseRole.DESTINATION, ScanType.INBOUND, ctx.actor
        )

    async def _out_for_delivery(self, uow, shipment, ctx) -> None:
        assignment = await self._active_leg(uow, shipment, AssignmentType.DELIVERY)
        if assignment.status is AssignmentStatus.ACCEPTED:
            await self.assignments.start(uow, assignment.id, actor=ctx.actor)
        if assignment.vehicle_id:
            shipment.assigned_vehicle_id = assignment.vehicle_id

    async def _delivered(self, uow, shipment, ctx) -> None:
        assignment = await self._active_leg(uow, shipment, AssignmentType.DELIVERY)
        if assignment.status is AssignmentStatus.ACCEPTED:
            await self.assignments.start(uow, assignment.id, actor=ctx.actor)
        await self.assignments.complete(uow, assignment.id, actor=ctx.actor)
        await self.capacity.release_for_shipment(uow, shipment.id, ReservationPurpose.DELIVERY)
        shipment.delivered_at = uow.now()

    async def _delivery_failed(self, uow, shipment, ctx) -> None:
        assignment = await self.assignments.active_assignment(
            uow, shipment.id, AssignmentType.DELIVERY
        )
        if assignment is not None:
            await self.assignments.cancel(
                uow, assignment.id, actor=ctx.actor, note=ctx.note or "Delivery failed"
            )
        await self.capacity.release_for_shipment(uow, shipment.id, ReservationPurpose.DELIVERY)
        await self.admin_tasks.open_task(
            uow,
            AdminTaskType.DELIVERY_FAILED,
            f"Delivery failed for {shipment.tracking_code}",
            actor=ctx.actor,
            description=ctx.note,
            payload={"reason_code": ctx.payload.get("reason_code")},
            shipment_id=shipment.id,
            branch_id=shipment.assigned_branch_id,
            driver_id=assignment.driver_id if assignment else None,
        )

    async def _return_created(self, uow, shipment, ctx) -> None:
        await self.returns.open_return(
            uow,
            shipment.id,
            ctx.payload.get("reason_code", "DELIVERY_FAILED"),
            actor=ctx.actor,
            reason_note=ctx.note,
        )

    async def _return_in_transit(self, uow, shipment, ctx) -> None:
        await self.returns.advance(
            uow, shipment.id, ReturnOrderStatus.IN_TRANSIT, actor=ctx.actor
        )

    async def _returned_to_origin(self, uow, shipment, ctx) -> None:
        await self.returns.advance(
            uow,
            shipment.id,
            ReturnOrderStatus.RETURNED,
            actor=ctx.actor,
            branch_id=_payload_uuid(ctx, "branch_id") or shipment.assigned_branch_id,
        )

    async def _return_completed(self, uow, shipment, ctx) -> None:
        await self._require_decision(uow, shipment, FinalAction.RETURNED_TO_ORIGIN)

    async def _disposed(self, uow, shipment, ctx) -> None:
        await self._require_decision(uow, shipment, FinalAction.DISPOSED)

    async def _require_decision(
        self, uow: UnitOfWork, shipment: Shipment, expected: FinalAction
    ) -> None:
        hold = await self.returns.latest_hold(uow, shipment.id)
        if hold is None or hold.final_action is not expected:
            raise PreconditionFailed(
                f"Return hold must be decided as {expected.value}",
                shipment_id=str(shipment.id),
                final_action=hold.final_action.value if hold and hold.final_action else None,
            )

    async def _closed(self, uow, shipment, ctx) -> None:
        blockers = await self.close_blockers(uow, shipment.id)
        if blockers:
            raise PrematureClose(
                f"Shipment {shipment.tracking_code} still has open work",
                shipment_id=str(shipment.id),
                blockers=blockers,
            )
        shipment.closed_at = uow.now()

    async def _issue_raised(self, uow, shipment, ctx) -> None:
        await self.admin_tasks.open_task(
            uow,
            AdminTaskType.SHIPMENT_ISSUE,
            ctx.note or f"Shipment {shipment.tracking_code} needs attention",
            actor=ctx.actor,
            payload={"pre_issue_status": shipment.shipment_status.value, **ctx.payload},
            shipment_id=shipment.id,
            branch_id=shipment.assigned_branch_id,
        )
