"""Operational records: admin tasks, pickup windows, call logs, inspections and scans."""

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
    UniqueConstraint,
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


class AdminTaskType(str, enum.Enum):
    SHIPMENT_ISSUE = "SHIPMENT_ISSUE"
    PICKUP_RESCHEDULE = "PICKUP_RESCHEDULE"
    DELIVERY_FAILED = "DELIVERY_FAILED"
    PAYMENT_TIMEOUT = "PAYMENT_TIMEOUT"
    LOAD_MISMATCH = "LOAD_MISMATCH"
    MANUAL = "MANUAL"


class AdminTaskStatus(str, enum.Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"


class AdminTask(Base):
    """Work item raised for a person to investigate and resolve."""

    __tablename__ = "admin_tasks"

    id: uuid.UUID = pk_column()
    task_code: str = Column(String(40), nullable=False, unique=True)
    task_type: AdminTaskType = Column(
        status_type(AdminTaskType, "admin_task_type"), nullable=False, index=True
    )
    priority: int = Column(Integer, nullable=False, default=50)
    status: AdminTaskStatus = Column(
        status_type(AdminTaskStatus, "admin_task_status"),
        nullable=False,
        default=AdminTaskStatus.OPEN,
    )
    shipment_id: uuid.UUID | None = Column(
        Uuid, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=True, index=True
    )
    branch_id: uuid.UUID | None = Column(
        Uuid, ForeignKey("branches.id", ondelete="SET NULL"), nullable=True
    )
    driver_id: uuid.UUID | None = Column(
        Uuid, ForeignKey("drivers.id", ondelete="SET NULL"), nullable=True
    )
    vehicle_id: uuid.UUID | None = Column(
        Uuid, ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True
    )
    manifest_id: uuid.UUID | None = Column(
        Uuid, ForeignKey("transit_manifests.id", ondelete="SET NULL"), nullable=True
    )
    return_order_id: uuid.UUID | None = Column(
        Uuid, ForeignKey("return_orders.id", ondelete="SET NULL"), nullable=True
    )
    payment_intent_id: uuid.UUID | None = Column(
        Uuid, ForeignKey("payment_intents.id", ondelete="SET NULL"), nullable=True
    )
    title: str = Column(String(200), nullable=False)
    description: str | None = Column(Text, nullable=True)
    due_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    created_by_type: str = Column(String(20), nullable=False, default="SYSTEM")
    created_by: str | None = Column(String(100), nullable=True)
    resolved_by_type: str | None = Column(String(20), nullable=True)
    resolved_by: str | None = Column(String(100), nullable=True)
    resolved_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    resolution_code: str | None = Column(String(50), nullable=True)
    resolution_note: str | None = Column(Text, nullable=True)
    created_at: datetime = created_at_column()
    updated_at: datetime = updated_at_column()

    __table_args__ = (Index("ix_admin_tasks_status_type", "status", "task_type"),)


class AdminTaskEvent(Base):
    __tablename__ = "admin_task_events"

    id: uuid.UUID = pk_column()
    task_id: uuid.UUID = Column(
        Uuid, ForeignKey("admin_tasks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_type: str = Column(String(30), nullable=False)
    old_status: str | None = Column(String(30), nullable=True)
    new_status: str | None = Column(String(30), nullable=True)
    actor_type: str | None = Column(String(20), nullable=True)
    actor_id: str | None = Column(String(100), nullable=True)
    note: str | None = Column(Text, nullable=True)
    payload: dict | None = Column(JSONType, nullable=True)
    event_at: datetime = Column(DateTime(timezone=True), nullable=False, index=True)


class PickupSchedule(Base):
    """Current pickup window for a shipment; one row per shipment."""

    __tablename__ = "pickup_schedules"

    id: uuid.UUID = pk_column()
    shipment_id: uuid.UUID = Column(
        Uuid,
        ForeignKey("shipments.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    scheduled_start_at: datetime = Column(DateTime(timezone=True), nullable=False)
    scheduled_end_at: datetime = Column(DateTime(timezone=True), nullable=False)
    timezone: str = Column(String(50), nullable=False, default="Asia/Ho_Chi_Minh")
    pickup_note: str | None = Column(Text, nullable=True)
    updated_by_type: str | None = Column(String(20), nullable=True)
    updated_by: str | None = Column(String(100), nullable=True)
    created_at: datetime = created_at_column()
    updated_at: datetime = updated_at_column()


class PickupScheduleHistory(Base):
    __tablename__ = "pickup_schedule_history"

    id: uuid.UUID = pk_column()
    shipment_id: uuid.UUID = Column(
        Uuid, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    old_start_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    old_end_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    new_start_at: datetime = Column(DateTime(timezone=True), nullable=False)
    new_end_at: datetime = Column(DateTime(timezone=True), nullable=False)
    reason: str | None = Column(Text, nullable=True)
    changed_by_type: str = Column(String(20), nullable=False)
    changed_by: str | None = Column(String(100), nullable=True)
    changed_at: datetime = Column(DateTime(timezone=True), nullable=False, index=True)


class CallLog(Base):
    """Contact attempt with sender or receiver; attempts are numbered per call type."""

    __tablename__ = "call_logs"

    id: uuid.UUID = pk_column()
    shipment_id: uuid.UUID = Column(
        Uuid, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    call_type: str = Column(String(30), nullable=False)
    attempt_no: int = Column(Integer, nullable=False)
    outcome: str = Column(String(30), nullable=False)
    caller_type: str | None = Column(String(20), nullable=True)
    caller_id: str | None = Column(String(100), nullable=True)
    note: str | None = Column(Text, nullable=True)
    called_at: datetime = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "shipment_id", "call_type", "attempt_no", name="uq_call_logs_attempt"
        ),
    )


class GoodsInspection(Base):
    """What the driver measured at pickup; one row per shipment, rewritten on re-check."""

    __tablename__ = "goods_inspections"

    id: uuid.UUID = pk_column()
    shipment_id: uuid.UUID = Column(
        Uuid,
        ForeignKey("shipments.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    assignment_id: uuid.UUID | None = Column(
        Uuid, ForeignKey("driver_assignments.id", ondelete="SET NULL"), nullable=True, index=True
    )
    driver_id: uuid.UUID | None = Column(
        Uuid, ForeignKey("drivers.id", ondelete="SET NULL"), nullable=True, index=True
    )
    branch_id: uuid.UUID | None = Column(
        Uuid, ForeignKey("branches.id", ondelete="SET NULL"), nullable=True, index=True
    )
    actual_weight_kg: Decimal = Column(Numeric(10, 2), nullable=False)
    actual_length_cm: Decimal | None = Column(Numeric(10, 2), nullable=True)
    actual_width_cm: Decimal | None = Column(Numeric(10, 2), nullable=True)
    actual_height_cm: Decimal | None = Column(Numeric(10, 2), nullable=True)
    actual_volume_m3: Decimal | None = Column(Numeric(10, 3), nullable=True)
    packaging_condition: str | None = Column(String(30), nullable=True)
    special_handling_flags: str | None = Column(String(100), nullable=True)
    inspected_by_type: str | None = Column(String(20), nullable=True)
    inspected_by: str | None = Column(String(100), nullable=True)
    inspected_at: datetime = Column(DateTime(timezone=True), nullable=False)
    note: str | None = Column(Text, nullable=True)
    created_at: datetime = created_at_column()


class WarehouseRole(str, enum.Enum):
    ORIGIN = "ORIGIN"
    DESTINATION = "DESTINATION"


class ScanType(str, enum.Enum):
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"


class WarehouseScan(Base):
    __tablename__ = "warehouse_scans"

    id: uuid.UUID = pk_column()
    shipment_id: uuid.UUID = Column(
        Uuid, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    branch_id: uuid.UUID = Column(
        Uuid, ForeignKey("branches.id", ondelete="CASCADE"), nullable=False, index=True
    )
    warehouse_role: str = Column(String(20), nullable=False)
    scan_type: str = Column(String(20), nullable=False)
    scanned_by_type: str | None = Column(String(20), nullable=True)
    scanned_by: str | None = Column(String(100), nullable=True)
    scanned_at: datetime = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "shipment_id",
            "branch_id",
            "warehouse_role",
            "scan_type",
            name="uq_warehouse_scans_natural_key",
        ),
    )
