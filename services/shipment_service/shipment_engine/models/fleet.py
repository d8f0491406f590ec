"""Branch network, vehicles, drivers and vehicle capacity accounting."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)

from shipment_engine.core.database import Base
from shipment_engine.models.columns import (
    created_at_column,
    pk_column,
    status_type,
    updated_at_column,
)


class Branch(Base):
    __tablename__ = "branches"

    id: uuid.UUID = pk_column()
    code: str = Column(String(30), nullable=False, unique=True)
    name: str = Column(String(120), nullable=False)
    province_code: str | None = Column(String(10), nullable=True, index=True)
    is_active: bool = Column(Boolean, nullable=False, default=True)
    created_at: datetime = created_at_column()


class Vehicle(Base):
    __tablename__ = "vehicles"

    id: uuid.UUID = pk_column()
    code: str = Column(String(30), nullable=False, unique=True)
    vehicle_type: str = Column(String(50), nullable=False)
    max_load_kg: Decimal = Column(Numeric(10, 2), nullable=False)
    max_volume_m3: Decimal | None = Column(Numeric(10, 3), nullable=True)
    route_scope: str | None = Column(String(30), nullable=True)
    is_active: bool = Column(Boolean, nullable=False, default=True)
    created_at: datetime = created_at_column()


class Driver(Base):
    __tablename__ = "drivers"

    id: uuid.UUID = pk_column()
    code: str = Column(String(30), nullable=False, unique=True)
    full_name: str = Column(String(120), nullable=False)
    phone_number: str | None = Column(String(20), nullable=True)
    branch_id: uuid.UUID | None = Column(
        Uuid, ForeignKey("branches.id", ondelete="CASCADE"), nullable=True, index=True
    )
    vehicle_id: uuid.UUID | None = Column(
        Uuid, ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True, index=True
    )
    max_active_orders: int = Column(Integer, nullable=False, default=3)
    is_active: bool = Column(Boolean, nullable=False, default=True)
    created_at: datetime = created_at_column()


class VehicleLoadTracking(Base):
    """Live load counters for one vehicle.

    Only ``CapacityTracker`` writes these columns; they must equal the sum
    of the vehicle's RESERVED reservations whenever no transaction is open.
    """

    __tablename__ = "vehicle_load_tracking"

    vehicle_id: uuid.UUID = Column(
        Uuid, ForeignKey("vehicles.id", ondelete="CASCADE"), primary_key=True
    )
    current_load_kg: Decimal = Column(Numeric(10, 2), nullable=False, default=0)
    current_volume_m3: Decimal = Column(Numeric(10, 3), nullable=False, default=0)
    current_order_count: int = Column(Integer, nullable=False, default=0)
    updated_at: datetime = updated_at_column()
    version: int = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


class ReservationPurpose(str, enum.Enum):
    PICKUP = "PICKUP"
    DELIVERY = "DELIVERY"
    MANIFEST = "MANIFEST"


class ReservationStatus(str, enum.Enum):
    RESERVED = "RESERVED"
    RELEASED = "RELEASED"


class CapacityReservation(Base):
    """A reservation token: one shipment's share of a vehicle's budget."""

    __tablename__ = "capacity_reservations"

    id: uuid.UUID = pk_column()
    vehicle_id: uuid.UUID = Column(
        Uuid, ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    shipment_id: uuid.UUID = Column(
        Uuid, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    purpose: ReservationPurpose = Column(
        status_type(ReservationPurpose, "reservation_purpose"), nullable=False
    )
    load_kg: Decimal = Column(Numeric(10, 2), nullable=False)
    volume_m3: Decimal = Column(Numeric(10, 3), nullable=False, default=0)
    status: ReservationStatus = Column(
        status_type(ReservationStatus, "reservation_status"),
        nullable=False,
        default=ReservationStatus.RESERVED,
    )
    reserved_at: datetime = Column(DateTime(timezone=True), nullable=False)
    released_at: datetime | None = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_capacity_reservations_status", "vehicle_id", "status"),)


class ShipmentVehicleAssignmentLog(Base):
    """Idempotent log of shipment-to-vehicle bindings."""

    __tablename__ = "shipment_vehicle_assignment_logs"

    id: uuid.UUID = pk_column()
    shipment_id: uuid.UUID = Column(
        Uuid, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    vehicle_id: uuid.UUID = Column(
        Uuid, ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    branch_id: uuid.UUID | None = Column(
        Uuid, ForeignKey("branches.id", ondelete="CASCADE"), nullable=True
    )
    purpose: str = Column(String(20), nullable=False)
    assigned_by: str | None = Column(String(100), nullable=True)
    assigned_at: datetime = Column(DateTime(timezone=True), nullable=False)
    note: str | None = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "shipment_id",
            "vehicle_id",
            "branch_id",
            "assigned_at",
            name="uq_sval_shipment_vehicle_branch_assigned_at",
        ),
    )
