"""Shipment SQLAlchemy models and the canonical status vocabulary."""

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
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)

from shipment_engine.core.database import Base
from shipment_engine.models.columns import (
    JSONType,
    created_at_column,
    pk_column,
    status_type,
    updated_at_column,
)


class ShipmentStatus(str, enum.Enum):
    """Shipment lifecycle states, persisted verbatim.

    ``PICKUP_COMPLETE``/``PICKUP_COMPLETED`` and ``CONFIRM_PAYMENT``/
    ``PAYMENT_CONFIRMED`` are distinct states; do not merge them.
    """

    # Intake
    BOOKED = "BOOKED"
    PRICE_ESTIMATED = "PRICE_ESTIMATED"
    BRANCH_ASSIGNED = "BRANCH_ASSIGNED"

    # Pickup scheduling
    PICKUP_SCHEDULED = "PICKUP_SCHEDULED"
    PICKUP_RESCHEDULED = "PICKUP_RESCHEDULED"

    # Pickup
    ON_THE_WAY_PICKUP = "ON_THE_WAY_PICKUP"
    VERIFIED_ITEM = "VERIFIED_ITEM"
    ADJUST_ITEM = "ADJUST_ITEM"
    CONFIRMED_PRICE = "CONFIRMED_PRICE"
    ADJUSTED_PRICE = "ADJUSTED_PRICE"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    CONFIRM_PAYMENT = "CONFIRM_PAYMENT"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    PICKUP_COMPLETE = "PICKUP_COMPLETE"
    PICKUP_COMPLETED = "PICKUP_COMPLETED"

    # Warehouses / transit
    IN_ORIGIN_WAREHOUSE = "IN_ORIGIN_WAREHOUSE"
    IN_TRANSIT = "IN_TRANSIT"
    IN_DEST_WAREHOUSE = "IN_DEST_WAREHOUSE"

    # Delivery
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERY_FAILED = "DELIVERY_FAILED"
    DELIVERED_SUCCESS = "DELIVERED_SUCCESS"

    # Returns / close
    RETURN_CREATED = "RETURN_CREATED"
    RETURN_IN_TRANSIT = "RETURN_IN_TRANSIT"
    RETURNED_TO_ORIGIN = "RETURNED_TO_ORIGIN"
    RETURN_COMPLETED = "RETURN_COMPLETED"
    DISPOSED = "DISPOSED"
    CLOSED = "CLOSED"

    # Exception
    ISSUE = "ISSUE"


# Pre-canonical values still found in older rows and client payloads
LEGACY_STATUS_ALIASES: dict[str, ShipmentStatus] = {
    "CREATED": ShipmentStatus.BOOKED,
    "PRICE_ADJUSTMENT_PENDING": ShipmentStatus.ADJUSTED_PRICE,
    "DRIVER_ASSIGNED": ShipmentStatus.ON_THE_WAY_PICKUP,
    "PICKUP_FAILED_CONTACT": ShipmentStatus.PICKUP_RESCHEDULED,
    "WEIGHT_CONFIRMED": ShipmentStatus.VERIFIED_ITEM,
    "PICKED_UP": ShipmentStatus.PICKUP_COMPLETED,
    "DELIVERED": ShipmentStatus.DELIVERED_SUCCESS,
    "CANCELLED": ShipmentStatus.DISPOSED,
}


def normalize_status(raw: str) -> ShipmentStatus:
    """Translate an inbound status string to the canonical enum.

    Only ingestion code (API schemas, backfill jobs) calls this; the state
    machine itself only ever sees canonical values.
    """
    value = (raw or "").strip().upper()
    try:
        return ShipmentStatus(value)
    except ValueError:
        pass
    try:
        return LEGACY_STATUS_ALIASES[value]
    except KeyError:
        raise ValueError(f"Unknown shipment status {raw!r}") from None


class Shipment(Base):
    """The unit of delivery tracked end-to-end. Closed, never deleted."""

    __tablename__ = "shipments"

    id: uuid.UUID = pk_column()
    tracking_code: str = Column(String(50), nullable=False, unique=True)

    # Sender / receiver snapshot
    sender_name: str | None = Column(String(120), nullable=True)
    sender_phone: str | None = Column(String(20), nullable=True)
    sender_address_text: str = Column(Text, nullable=False)
    sender_province_code: str | None = Column(String(10), nullable=True)
    receiver_name: str | None = Column(String(120), nullable=True)
    receiver_phone: str | None = Column(String(20), nullable=True)
    receiver_address_text: str = Column(Text, nullable=False)
    receiver_province_code: str | None = Column(String(10), nullable=True)

    # Goods
    service_type: str = Column(String(30), nullable=False, default="STANDARD")
    goods_type: str = Column(String(50), nullable=False, default="GENERAL")
    declared_value: Decimal = Column(Numeric(12, 2), nullable=False, default=0)
    total_weight_kg: Decimal = Column(Numeric(10, 2), nullable=False)
    total_volume_m3: Decimal | None = Column(Numeric(10, 3), nullable=True)
    parcel_length_cm: Decimal | None = Column(Numeric(10, 2), nullable=True)
    parcel_width_cm: Decimal | None = Column(Numeric(10, 2), nullable=True)
    parcel_height_cm: Decimal | None = Column(Numeric(10, 2), nullable=True)

    route_scope: str = Column(String(30), nullable=False)
    shipment_status: ShipmentStatus = Column(
        status_type(ShipmentStatus, "shipment_status"),
        nullable=False,
        default=ShipmentStatus.BOOKED,
    )
    pre_issue_status: ShipmentStatus | None = Column(
        status_type(ShipmentStatus, "shipment_status"), nullable=True
    )

    assigned_branch_id: uuid.UUID | None = Column(
        Uuid, ForeignKey("branches.id", ondelete="SET NULL"), nullable=True, index=True
    )
    assigned_vehicle_id: uuid.UUID | None = Column(
        Uuid, ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True, index=True
    )
    assigned_by: str | None = Column(String(100), nullable=True)
    assigned_at: datetime | None = Column(DateTime(timezone=True), nullable=True)

    # Pricing results (computed by the pricing service, stored here)
    quoted_amount: Decimal | None = Column(Numeric(12, 2), nullable=True)
    confirmed_amount: Decimal | None = Column(Numeric(12, 2), nullable=True)

    delivered_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    closed_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    created_at: datetime = created_at_column()
    updated_at: datetime = updated_at_column()
    version: int = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_shipments_status", "shipment_status"),
        Index("ix_shipments_created_at", "created_at"),
    )


class ShipmentStatusHistory(Base):
    """Append-only audit trail of shipment transitions."""

    __tablename__ = "shipment_status_history"

    id: uuid.UUID = pk_column()
    shipment_id: uuid.UUID = Column(
        Uuid,
        ForeignKey("shipments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    old_status: str | None = Column(String(30), nullable=True)
    new_status: str = Column(String(30), nullable=False)
    actor_type: str = Column(String(20), nullable=False)
    actor_id: str | None = Column(String(100), nullable=True)
    message: str | None = Column(Text, nullable=True)
    payload: dict | None = Column(JSONType, nullable=True)
    event_at: datetime = Column(DateTime(timezone=True), nullable=False, index=True)
