"""Payment intent ledger with cash fallback for timed-out online payments."""

from __future__ import annotations

import uuid
from datetime import datetime

import structlog
from sqlalchemy import select

from shipment_engine.core.config import settings
from shipment_engine.core.context import Actor, as_utc
from shipment_engine.core.errors import (
    FallbackCycleDetected,
    IntentAlreadyOpen,
    IntentNotExpired,
    InvalidIntentState,
)
from shipment_engine.core.unit_of_work import UnitOfWork
from shipment_engine.models import (
    AdminTaskType,
    PaymentIntent,
    PaymentIntentStatus,
    PaymentMethod,
    Shipment,
)
from shipment_engine.models.payment import ONLINE_METHODS
from shipment_engine.services import event_log
from shipment_engine.services.admin_tasks import AdminTaskQueue
from shipment_engine.services.capacity import to_decimal

logger = structlog.get_logger()


class PaymentIntentLedger:
    def __init__(self, admin_tasks: AdminTaskQueue):
        self.admin_tasks = admin_tasks

    # ── Queries ───────────────────────────────

    async def open_intent(
        self, uow: UnitOfWork, shipment_id: uuid.UUID, *, lock: bool = False
    ) -> PaymentIntent | None:
        stmt = select(PaymentIntent).where(
            PaymentIntent.shipment_id == shipment_id,
            PaymentIntent.status == PaymentIntentStatus.PENDING,
        )
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return await uow.scalar(stmt)

    async def confirmed_intent(
        self, uow: UnitOfWork, shipment_id: uuid.UUID
    ) -> PaymentIntent | None:
        stmt = (
            select(PaymentIntent)
            .where(
                PaymentIntent.shipment_id == shipment_id,
                PaymentIntent.status == PaymentIntentStatus.CONFIRMED,
            )
            .order_by(PaymentIntent.confirmed_at.desc())
            .limit(1)
        )
        return await uow.scalar(stmt)

    async def fallback_of(
        self, uow: UnitOfWork, intent_id: uuid.UUID
    ) -> PaymentIntent | None:
        """The intent created to replace ``intent_id``, if any."""
        stmt = select(PaymentIntent).where(
            PaymentIntent.fallback_payment_intent_id == intent_id
        )
        return await uow.scalar(stmt)

    async def walk_chain(
        self,
        uow: UnitOfWork,
        intent_id: uuid.UUID,
        *,
        max_hops: int | None = None,
    ) -> list[PaymentIntent]:
        """Follow ``fallback_payment_intent_id`` links from ``intent_id``.

        Returns the chain starting at ``intent_id``. Raises
        ``FallbackCycleDetected`` when a link revisits an intent or the
        chain is longer than ``max_hops``.
        """
        max_hops = settings.payment_fallback_max_hops if max_hops is None else max_hops
        chain: list[PaymentIntent] = []
        seen: set[uuid.UUID] = set()
        current_id: uuid.UUID | None = intent_id

        while current_id is not None:
            if current_id in seen:
                logger.error(
                    "payment_fallback_cycle",
                    intent_id=str(intent_id),
                    revisited=str(current_id),
                )
                raise FallbackCycleDetected(
                    "Payment fallback chain loops back on itself",
                    intent_id=str(intent_id),
                    revisited=str(current_id),
                )
            if len(chain) > max_hops:
                logger.error(
                    "payment_fallback_chain_too_long",
                    intent_id=str(intent_id),
                    max_hops=max_hops,
                )
                raise FallbackCycleDetected(
                    f"Payment fallback chain exceeds {max_hops} hops",
                    intent_id=str(intent_id),
                    max_hops=max_hops,
                )
            seen.add(current_id)
            intent = await uow.get(PaymentIntent, current_id)
            chain.append(intent)
            current_id = intent.fallback_payment_intent_id

        return chain

    async def find_overdue(
        self,
        uow: UnitOfWork,
        now: datetime,
        *,
        limit: int,
        after_id: uuid.UUID | None = None,
    ) -> list[uuid.UUID]:
        """Ids of PENDING online intents past ``expires_at``, in id order."""
        stmt = select(PaymentIntent.id).where(
            PaymentIntent.status == PaymentIntentStatus.PENDING,
            PaymentIntent.method.in_(ONLINE_METHODS),
            PaymentIntent.expires_at.is_not(None),
            PaymentIntent.expires_at <= now,
        )
        if after_id is not None:
            stmt = stmt.where(PaymentIntent.id > after_id)
        stmt = stmt.order_by(PaymentIntent.id).limit(limit)
        return list(await uow.scalars(stmt))

    # ── Commands ──────────────────────────────

    async def create(
        self,
        uow: UnitOfWork,
        shipment_id: uuid.UUID,
        method: PaymentMethod,
        amount,
        *,
        actor: Actor | None = None,
        currency: str | None = None,
        provider: str | None = None,
        reference_code: str | None = None,
        note: str | None = None,
        raw_payload: dict | None = None,
    ) -> PaymentIntent:
        actor = actor or Actor.system()
        method = PaymentMethod(method)
        amount = to_decimal(amount)
        if amount < 0:
            raise InvalidIntentState("Payment amount must be non-negative", amount=str(amount))

        # The shipment row lock serialises intent creation per shipment
        await uow.get(Shipment, shipment_id, lock=True)
        existing = await self.open_intent(uow, shipment_id)
        if existing is not None:
            logger.error(
                "payment_intent_already_open",
                shipment_id=str(shipment_id),
                intent_id=str(existing.id),
            )
            raise IntentAlreadyOpen(
                "Shipment already has a pending payment intent",
                shipment_id=str(shipment_id),
                intent_id=str(existing.id),
            )

        now = uow.now()
        intent = PaymentIntent(
            shipment_id=shipment_id,
            currency=currency or settings.default_currency,
            method=method,
            provider=provider,
            status=PaymentIntentStatus.PENDING,
            amount=amount,
            amount_paid=to_decimal(0),
            reference_code=reference_code,
            expires_at=now + settings.payment_online_ttl if method in ONLINE_METHODS else None,
            note=note,
        )
        uow.add(intent)
        await event_log.payment_changed(
            uow,
            intent=intent,
            event_type="CREATED",
            old_status=None,
            actor=actor,
            raw_payload=raw_payload,
        )
        logger.info(
            "payment_intent_created",
            intent_id=str(intent.id),
            shipment_id=str(shipment_id),
            method=method.value,
            amount=str(amount),
        )
        return intent

    async def _lock_pending(self, uow: UnitOfWork, intent_id: uuid.UUID, action: str) -> PaymentIntent:
        intent = await uow.get(PaymentIntent, intent_id, lock=True)
        if intent.status is not PaymentIntentStatus.PENDING:
            logger.error(
                "payment_intent_invalid_state",
                intent_id=str(intent_id),
                status=intent.status.value,
                action=action,
            )
            raise InvalidIntentState(
                f"Cannot {action} a {intent.status.value} payment intent",
                intent_id=str(intent_id),
                status=intent.status.value,
            )
        return intent

    async def confirm(
        self,
        uow: UnitOfWork,
        intent_id: uuid.UUID,
        *,
        actor: Actor | None = None,
        provider_txn_id: str | None = None,
        amount_paid=None,
        raw_payload: dict | None = None,
    ) -> PaymentIntent:
        """Mark a PENDING intent paid. Confirming a CONFIRMED intent is a no-op."""
        actor = actor or Actor.system()
        intent = await uow.get(PaymentIntent, intent_id, lock=True)
        if intent.status is PaymentIntentStatus.CONFIRMED:
            return intent
        intent = await self._lock_pending(uow, intent_id, "confirm")

        intent.status = PaymentIntentStatus.CONFIRMED
        intent.confirmed_at = uow.now()
        intent.amount_paid = to_decimal(amount_paid) if amount_paid is not None else intent.amount
        if provider_txn_id:
            intent.provider_txn_id = provider_txn_id
        await event_log.payment_changed(
            uow,
            intent=intent,
            event_type="CONFIRMED",
            old_status=PaymentIntentStatus.PENDING.value,
            actor=actor,
            raw_payload=raw_payload,
        )
        logger.info(
            "payment_intent_confirmed",
            intent_id=str(intent.id),
            shipment_id=str(intent.shipment_id),
            amount_paid=str(intent.amount_paid),
        )
        return intent

    async def fail(
        self,
        uow: UnitOfWork,
        intent_id: uuid.UUID,
        reason: str,
        *,
        actor: Actor | None = None,
        raw_payload: dict | None = None,
    ) -> PaymentIntent:
        actor = actor or Actor.system()
        intent = await self._lock_pending(uow, intent_id, "fail")
        intent.status = PaymentIntentStatus.FAILED
        intent.failed_at = uow.now()
        intent.note = reason
        await event_log.payment_changed(
            uow,
            intent=intent,
            event_type="FAILED",
            old_status=PaymentIntentStatus.PENDING.value,
            actor=actor,
            message=reason,
            raw_payload=raw_payload,
        )
        logger.warning(
            "payment_intent_failed", intent_id=str(intent.id), reason=reason
        )
        return intent

    async def cancel(
        self,
        uow: UnitOfWork,
        intent_id: uuid.UUID,
        *,
        actor: Actor | None = None,
        note: str | None = None,
    ) -> PaymentIntent:
        actor = actor or Actor.system()
        intent = await self._lock_pending(uow, intent_id, "cancel")
        intent.status = PaymentIntentStatus.CANCELLED
        if note:
            intent.note = note
        await event_log.payment_changed(
            uow,
            intent=intent,
            event_type="CANCELLED",
            old_status=PaymentIntentStatus.PENDING.value,
            actor=actor,
            message=note,
        )
        return intent

    async def expire(
        self,
        uow: UnitOfWork,
        intent_id: uuid.UUID,
        *,
        actor: Actor | None = None,
        raw_payload: dict | None = None,
    ) -> PaymentIntent:
        """Expire a timed-out online intent and return its cash fallback.

        Calling this again for an already expired intent returns the
        existing fallback without further side effects.
        """
        actor = actor or Actor.system()
        intent = await uow.get(PaymentIntent, intent_id, lock=True)

        if intent.status is PaymentIntentStatus.EXPIRED:
            fallback = await self.fallback_of(uow, intent.id)
            if fallback is None:
                raise InvalidIntentState(
                    "Expired payment intent has no fallback", intent_id=str(intent_id)
                )
            return fallback

        if intent.method not in ONLINE_METHODS:
            raise InvalidIntentState(
                f"{intent.method.value} payment intents do not expire",
                intent_id=str(intent_id),
                method=intent.method.value,
            )
        if intent.status is not PaymentIntentStatus.PENDING:
            raise InvalidIntentState(
                f"Cannot expire a {intent.status.value} payment intent",
                intent_id=str(intent_id),
                status=intent.status.value,
            )

        now = uow.now()
        expires_at = as_utc(intent.expires_at)
        if expires_at is None or now < expires_at:
            raise IntentNotExpired(
                "Payment intent has not reached its expiry",
                intent_id=str(intent_id),
                expires_at=expires_at.isoformat() if expires_at else None,
            )

        # The new link must keep the chain finite and acyclic
        await self.walk_chain(uow, intent.id)

        intent.status = PaymentIntentStatus.EXPIRED
        await event_log.payment_changed(
            uow,
            intent=intent,
            event_type="EXPIRED",
            old_status=PaymentIntentStatus.PENDING.value,
            actor=actor,
            raw_payload=raw_payload,
        )
        # Frees the one-PENDING-per-shipment slot for the fallback
        await uow.flush()

        fallback = PaymentIntent(
            shipment_id=intent.shipment_id,
            currency=intent.currency,
            method=PaymentMethod.CASH,
            status=PaymentIntentStatus.PENDING,
            amount=intent.amount,
            amount_paid=to_decimal(0),
            fallback_payment_intent_id=intent.id,
            note=f"Cash fallback for expired {intent.method.value} intent",
        )
        uow.add(fallback)
        await event_log.payment_changed(
            uow,
            intent=fallback,
            event_type="FALLBACK_CREATED",
            old_status=None,
            actor=actor,
            message=f"Replaces {intent.id}",
        )

        await self.admin_tasks.open_task(
            uow,
            AdminTaskType.PAYMENT_TIMEOUT,
            f"Online payment timed out for shipment {intent.shipment_id}",
            actor=actor,
            description="Collect cash on pickup/delivery or contact the customer.",
            shipment_id=intent.shipment_id,
            payment_intent_id=intent.id,
        )

        logger.warning(
            "payment_intent_expired",
            intent_id=str(intent.id),
            fallback_intent_id=str(fallback.id),
            shipment_id=str(intent.shipment_id),
        )
        return fallback
