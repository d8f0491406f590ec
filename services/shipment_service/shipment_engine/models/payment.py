"""Payment intent models."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    Uuid,
    text,
)

from shipment_engine.core.database import Base
from shipment_engine.models.columns import (
    JSONType,
    created_at_column,
    pk_column,
    status_type,
    updated_at_column,
)


class PaymentMethod(str, enum.Enum):
    CASH = "CASH"
    COD = "COD"
    ONLINE = "ONLINE"
    BANK_TRANSFER = "BANK_TRANSFER"


# Methods that settle through a provider and can time out
ONLINE_METHODS = frozenset({PaymentMethod.ONLINE, PaymentMethod.BANK_TRANSFER})


class PaymentIntentStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class PaymentIntent(Base):
    """One attempt to collect payment for a shipment.

    ``fallback_payment_intent_id`` on a cash fallback points back at the
    expired online intent it replaces.
    """

    __tablename__ = "payment_intents"

    id: uuid.UUID = pk_column()
    shipment_id: uuid.UUID = Column(
        Uuid, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    currency: str = Column(String(3), nullable=False, default="VND")
    method: PaymentMethod = Column(
        status_type(PaymentMethod, "payment_method"), nullable=False
    )
    provider: str | None = Column(String(50), nullable=True)
    status: PaymentIntentStatus = Column(
        status_type(PaymentIntentStatus, "payment_intent_status"),
        nullable=False,
        default=PaymentIntentStatus.PENDING,
    )
    amount: Decimal = Column(Numeric(12, 2), nullable=False)
    amount_paid: Decimal = Column(Numeric(12, 2), nullable=False, default=0)
    reference_code: str | None = Column(String(100), nullable=True)
    provider_txn_id: str | None = Column(String(200), nullable=True)
    expires_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    confirmed_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    failed_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    fallback_payment_intent_id: uuid.UUID | None = Column(
        Uuid,
        ForeignKey("payment_intents.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    note: str | None = Column(Text, nullable=True)
    created_at: datetime = created_at_column()
    updated_at: datetime = updated_at_column()

    __table_args__ = (
        Index(
            "uq_payment_intents_open_per_shipment",
            "shipment_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
        Index("ix_payment_intents_status_expires", "status", "expires_at"),
    )


class PaymentEventLog(Base):
    """Append-only payment history, raw provider payload included."""

    __tablename__ = "payment_event_log"

    id: uuid.UUID = pk_column()
    payment_intent_id: uuid.UUID = Column(
        Uuid,
        ForeignKey("payment_intents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    shipment_id: uuid.UUID = Column(
        Uuid, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_type: str = Column(String(50), nullable=False)
    old_status: str | None = Column(String(30), nullable=True)
    new_status: str | None = Column(String(30), nullable=True)
    actor_type: str | None = Column(String(20), nullable=True)
    actor_id: str | None = Column(String(100), nullable=True)
    message: str | None = Column(Text, nullable=True)
    raw_payload: dict | None = Column(JSONType, nullable=True)
    event_at: datetime = Column(DateTime(timezone=True), nullable=False, index=True)
