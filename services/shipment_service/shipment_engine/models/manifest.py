"""Transit manifest models: inter-branch batches carried by one vehicle."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, Text, Uuid

from shipment_engine.core.database import Base
from shipment_engine.models.columns import created_at_column, pk_column, status_type


class ManifestStatus(str, enum.Enum):
    OPEN = "OPEN"
    LOADED = "LOADED"
    DEPARTED = "DEPARTED"
    ARRIVED = "ARRIVED"
    CLOSED = "CLOSED"


class ManifestItemStatus(str, enum.Enum):
    ADDED = "ADDED"
    REMOVED = "REMOVED"


class TransitManifest(Base):
    __tablename__ = "transit_manifests"

    id: uuid.UUID = pk_column()
    manifest_code: str = Column(String(50), nullable=False, unique=True)
    vehicle_id: uuid.UUID = Column(
        Uuid, ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    driver_id: uuid.UUID | None = Column(
        Uuid, ForeignKey("drivers.id", ondelete="CASCADE"), nullable=True, index=True
    )
    origin_branch_id: uuid.UUID = Column(
        Uuid, ForeignKey("branches.id", ondelete="CASCADE"), nullable=False, index=True
    )
    dest_branch_id: uuid.UUID = Column(
        Uuid, ForeignKey("branches.id", ondelete="CASCADE"), nullable=False, index=True
    )
    route_scope: str = Column(String(30), nullable=False)
    status: ManifestStatus = Column(
        status_type(ManifestStatus, "manifest_status"),
        nullable=False,
        default=ManifestStatus.OPEN,
        index=True,
    )
    created_by_type: str | None = Column(String(20), nullable=True)
    created_by: str | None = Column(String(100), nullable=True)
    created_at: datetime = created_at_column()
    loaded_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    departed_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    arrived_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    closed_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    note: str | None = Column(Text, nullable=True)


class TransitManifestItem(Base):
    __tablename__ = "transit_manifest_items"

    id: uuid.UUID = pk_column()
    manifest_id: uuid.UUID = Column(
        Uuid,
        ForeignKey("transit_manifests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    shipment_id: uuid.UUID = Column(
        Uuid, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    reservation_id: uuid.UUID | None = Column(
        Uuid, ForeignKey("capacity_reservations.id", ondelete="SET NULL"), nullable=True
    )
    item_status: ManifestItemStatus = Column(
        status_type(ManifestItemStatus, "manifest_item_status"),
        nullable=False,
        default=ManifestItemStatus.ADDED,
    )
    added_at: datetime = Column(DateTime(timezone=True), nullable=False)
    removed_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    note: str | None = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_transit_manifest_items_shipment_status", "shipment_id", "item_status"),
    )


class TransitManifestEvent(Base):
    __tablename__ = "transit_manifest_events"

    id: uuid.UUID = pk_column()
    manifest_id: uuid.UUID = Column(
        Uuid,
        ForeignKey("transit_manifests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_type: str = Column(String(50), nullable=False)
    old_status: str | None = Column(String(30), nullable=True)
    new_status: str | None = Column(String(30), nullable=True)
    actor_type: str | None = Column(String(20), nullable=True)
    actor_id: str | None = Column(String(100), nullable=True)
    message: str | None = Column(Text, nullable=True)
    event_at: datetime = Column(DateTime(timezone=True), nullable=False, index=True)
