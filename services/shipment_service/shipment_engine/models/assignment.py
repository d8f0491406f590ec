"""Driver assignment models (pickup and delivery legs)."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    Uuid,
    text,
)

from shipment_engine.core.database import Base
from shipment_engine.models.columns import (
    created_at_column,
    pk_column,
    status_type,
    updated_at_column,
)


class AssignmentType(str, enum.Enum):
    PICKUP = "PICKUP"
    DELIVERY = "DELIVERY"


class AssignmentStatus(str, enum.Enum):
    ASSIGNED = "ASSIGNED"
    ACCEPTED = "ACCEPTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


# Statuses that count against a driver's max_active_orders
OPEN_ASSIGNMENT_STATUSES = frozenset(
    {AssignmentStatus.ASSIGNED, AssignmentStatus.ACCEPTED, AssignmentStatus.IN_PROGRESS}
)


class DriverAssignment(Base):
    """Binding of a driver to one leg of a shipment.

    Superseded rows are deactivated, never deleted. The partial unique index
    backs the in-transaction check: one active row per (shipment, leg).
    """

    __tablename__ = "driver_assignments"

    id: uuid.UUID = pk_column()
    shipment_id: uuid.UUID = Column(
        Uuid, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    assignment_type: AssignmentType = Column(
        status_type(AssignmentType, "assignment_type"), nullable=False
    )
    branch_id: uuid.UUID | None = Column(
        Uuid, ForeignKey("branches.id", ondelete="SET NULL"), nullable=True
    )
    driver_id: uuid.UUID = Column(
        Uuid, ForeignKey("drivers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    vehicle_id: uuid.UUID | None = Column(
        Uuid, ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True
    )
    reservation_id: uuid.UUID | None = Column(
        Uuid, ForeignKey("capacity_reservations.id", ondelete="SET NULL"), nullable=True
    )
    status: AssignmentStatus = Column(
        status_type(AssignmentStatus, "assignment_status"),
        nullable=False,
        default=AssignmentStatus.ASSIGNED,
    )
    assigned_by_type: str = Column(String(20), nullable=False, default="SYSTEM")
    assigned_by: str | None = Column(String(100), nullable=True)
    assigned_at: datetime = Column(DateTime(timezone=True), nullable=False)
    accepted_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    started_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    completed_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    cancelled_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    note: str | None = Column(Text, nullable=True)
    is_active: bool = Column(Boolean, nullable=False, default=True)
    created_at: datetime = created_at_column()
    updated_at: datetime = updated_at_column()

    __table_args__ = (
        Index(
            "uq_driver_assignments_active_leg",
            "shipment_id",
            "assignment_type",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_driver_assignments_driver_status", "driver_id", "status"),
    )


class DriverAssignmentHistory(Base):
    """Append-only record of every assignment change, reassignment included."""

    __tablename__ = "driver_assignment_history"

    id: uuid.UUID = pk_column()
    assignment_id: uuid.UUID = Column(
        Uuid,
        ForeignKey("driver_assignments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    shipment_id: uuid.UUID = Column(
        Uuid, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    assignment_type: str = Column(String(20), nullable=False)
    old_driver_id: uuid.UUID | None = Column(Uuid, nullable=True)
    new_driver_id: uuid.UUID | None = Column(Uuid, nullable=True)
    old_status: str | None = Column(String(30), nullable=True)
    new_status: str | None = Column(String(30), nullable=True)
    change_action: str = Column(String(50), nullable=False)
    changed_by_type: str = Column(String(20), nullable=False)
    changed_by: str | None = Column(String(100), nullable=True)
    changed_at: datetime = Column(DateTime(timezone=True), nullable=False, index=True)
    note: str | None = Column(Text, nullable=True)
