"""Return order, policy hold and return event models."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, String, Text, Uuid

from shipment_engine.core.database import Base
from shipment_engine.models.columns import (
    JSONType,
    created_at_column,
    pk_column,
    status_type,
    updated_at_column,
)


class ReturnOrderStatus(str, enum.Enum):
    CREATED = "CREATED"
    IN_TRANSIT = "IN_TRANSIT"
    RETURNED = "RETURNED"
    ON_HOLD = "ON_HOLD"
    COMPLETED = "COMPLETED"


class FinalAction(str, enum.Enum):
    RETURNED_TO_ORIGIN = "RETURNED_TO_ORIGIN"
    DISPOSED = "DISPOSED"
    REDELIVERED = "REDELIVERED"


class ReturnOrder(Base):
    __tablename__ = "return_orders"

    id: uuid.UUID = pk_column()
    original_shipment_id: uuid.UUID = Column(
        Uuid, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    return_shipment_id: uuid.UUID | None = Column(
        Uuid, ForeignKey("shipments.id", ondelete="SET NULL"), nullable=True, index=True
    )
    reason_code: str = Column(String(30), nullable=False)
    reason_note: str | None = Column(Text, nullable=True)
    route_scope: str | None = Column(String(30), nullable=True)
    origin_branch_id: uuid.UUID | None = Column(
        Uuid, ForeignKey("branches.id", ondelete="CASCADE"), nullable=True
    )
    current_branch_id: uuid.UUID | None = Column(
        Uuid, ForeignKey("branches.id", ondelete="SET NULL"), nullable=True
    )
    status: ReturnOrderStatus = Column(
        status_type(ReturnOrderStatus, "return_order_status"),
        nullable=False,
        default=ReturnOrderStatus.CREATED,
        index=True,
    )
    created_by_type: str | None = Column(String(20), nullable=True)
    created_by: str | None = Column(String(100), nullable=True)
    created_at: datetime = created_at_column()
    updated_at: datetime = updated_at_column()


class ReturnPolicyHold(Base):
    """Waiting period before a returned shipment's disposition is decided."""

    __tablename__ = "return_policy_holds"

    id: uuid.UUID = pk_column()
    return_order_id: uuid.UUID = Column(
        Uuid,
        ForeignKey("return_orders.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    original_shipment_id: uuid.UUID = Column(
        Uuid, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    policy: str = Column(String(30), nullable=False)
    hold_start_at: datetime = Column(DateTime(timezone=True), nullable=False)
    hold_until_at: datetime = Column(DateTime(timezone=True), nullable=False)
    pickup_by_customer_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    disposed_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    final_action: FinalAction | None = Column(
        status_type(FinalAction, "return_final_action"), nullable=True
    )
    decided_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    decided_by_type: str | None = Column(String(20), nullable=True)
    decided_by: str | None = Column(String(100), nullable=True)
    note: str | None = Column(Text, nullable=True)


class ReturnEventLog(Base):
    __tablename__ = "return_event_log"

    id: uuid.UUID = pk_column()
    return_order_id: uuid.UUID = Column(
        Uuid,
        ForeignKey("return_orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    original_shipment_id: uuid.UUID = Column(
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
