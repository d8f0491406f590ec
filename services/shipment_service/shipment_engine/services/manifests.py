"""Transit manifest consolidation.

A manifest batches shipments travelling between two branches on one
vehicle: OPEN -> LOADED -> DEPARTED -> ARRIVED -> CLOSED. A shipment is a
member of at most one manifest that is not yet CLOSED, and every member
holds a MANIFEST capacity reservation on the manifest's vehicle until it is
removed or the manifest closes.
"""

from __future__ import annotations

import secrets
import uuid

import structlog
from sqlalchemy import func, select

from shipment_engine.core.context import Actor
from shipment_engine.core.errors import AlreadyManifested, ManifestStateError, NotFound
from shipment_engine.core.unit_of_work import UnitOfWork
from shipment_engine.models import (
    ManifestItemStatus,
    ManifestStatus,
    ReservationPurpose,
    Shipment,
    TransitManifest,
    TransitManifestItem,
)
from shipment_engine.services import event_log
from shipment_engine.services.capacity import CapacityTracker

logger = structlog.get_logger()

_NEXT_STATUS = {
    ManifestStatus.OPEN: ManifestStatus.LOADED,
    ManifestStatus.LOADED: ManifestStatus.DEPARTED,
    ManifestStatus.DEPARTED: ManifestStatus.ARRIVED,
    ManifestStatus.ARRIVED: ManifestStatus.CLOSED,
}

_TIMESTAMP_FIELDS = {
    ManifestStatus.LOADED: "loaded_at",
    ManifestStatus.DEPARTED: "departed_at",
    ManifestStatus.ARRIVED: "arrived_at",
    ManifestStatus.CLOSED: "closed_at",
}

_EDITABLE = frozenset({ManifestStatus.OPEN, ManifestStatus.LOADED})


class ManifestConsolidator:
    def __init__(self, capacity: CapacityTracker):
        self.capacity = capacity

    # ── Queries ───────────────────────────────

    async def active_membership(
        self,
        uow: UnitOfWork,
        shipment_id: uuid.UUID,
        statuses: frozenset[ManifestStatus] | None = None,
    ) -> tuple[TransitManifestItem, TransitManifest] | None:
        """The shipment's ADDED item on a manifest that is not CLOSED."""
        stmt = (
            select(TransitManifestItem, TransitManifest)
            .join(TransitManifest, TransitManifest.id == TransitManifestItem.manifest_id)
            .where(
                TransitManifestItem.shipment_id == shipment_id,
                TransitManifestItem.item_status == ManifestItemStatus.ADDED,
                TransitManifest.status != ManifestStatus.CLOSED,
            )
            .order_by(TransitManifestItem.added_at.desc())
            .limit(1)
        )
        if statuses:
            stmt = stmt.where(TransitManifest.status.in_(statuses))
        row = (await uow.execute(stmt)).first()
        return (row[0], row[1]) if row else None

    async def latest_manifest(
        self, uow: UnitOfWork, shipment_id: uuid.UUID
    ) -> TransitManifest | None:
        """Most recent manifest that carried the shipment, closed or not."""
        stmt = (
            select(TransitManifest)
            .join(TransitManifestItem, TransitManifest.id == TransitManifestItem.manifest_id)
            .where(
                TransitManifestItem.shipment_id == shipment_id,
                TransitManifestItem.item_status == ManifestItemStatus.ADDED,
            )
            .order_by(TransitManifestItem.added_at.desc())
            .limit(1)
        )
        return await uow.scalar(stmt)

    async def active_item_count(self, uow: UnitOfWork, manifest_id: uuid.UUID) -> int:
        stmt = select(func.count(TransitManifestItem.id)).where(
            TransitManifestItem.manifest_id == manifest_id,
            TransitManifestItem.item_status == ManifestItemStatus.ADDED,
        )
        return (await uow.scalar(stmt)) or 0

    async def _active_items(
        self, uow: UnitOfWork, manifest_id: uuid.UUID
    ) -> list[TransitManifestItem]:
        stmt = select(TransitManifestItem).where(
            TransitManifestItem.manifest_id == manifest_id,
            TransitManifestItem.item_status == ManifestItemStatus.ADDED,
        )
        return list(await uow.scalars(stmt))

    # ── Commands ──────────────────────────────

    async def create_manifest(
        self,
        uow: UnitOfWork,
        *,
        vehicle_id: uuid.UUID,
        origin_branch_id: uuid.UUID,
        dest_branch_id: uuid.UUID,
        route_scope: str,
        driver_id: uuid.UUID | None = None,
        actor: Actor | None = None,
        note: str | None = None,
    ) -> TransitManifest:
        actor = actor or Actor.system()
        if origin_branch_id == dest_branch_id:
            raise ManifestStateError("Origin and destination branch must differ")

        now = uow.now()
        manifest = TransitManifest(
            manifest_code=f"MF-{now:%Y%m%d}-{secrets.token_hex(3).upper()}",
            vehicle_id=vehicle_id,
            driver_id=driver_id,
            origin_branch_id=origin_branch_id,
            dest_branch_id=dest_branch_id,
            route_scope=route_scope,
            status=ManifestStatus.OPEN,
            created_by_type=actor.type.value,
            created_by=actor.id,
            note=note,
        )
        uow.add(manifest)
        await event_log.manifest_changed(
            uow, manifest=manifest, event_type="CREATED", actor=actor
        )
        logger.info(
            "manifest_created",
            manifest_id=str(manifest.id),
            manifest_code=manifest.manifest_code,
            vehicle_id=str(vehicle_id),
        )
        return manifest

    async def add_item(
        self,
        uow: UnitOfWork,
        manifest_id: uuid.UUID,
        shipment_id: uuid.UUID,
        *,
        actor: Actor | None = None,
    ) -> TransitManifestItem:
        """Put a shipment on a manifest. Re-adding to the same manifest is a no-op."""
        actor = actor or Actor.system()
        manifest = await uow.get(TransitManifest, manifest_id, lock=True)
        # Locking the shipment serialises concurrent adds to different manifests
        shipment = await uow.get(Shipment, shipment_id, lock=True)

        membership = await self.active_membership(uow, shipment_id)
        if membership is not None:
            item, current = membership
            if current.id == manifest_id:
                return item
            raise AlreadyManifested(
                f"Shipment {shipment.tracking_code} is already on manifest "
                f"{current.manifest_code}",
                shipment_id=str(shipment_id),
                manifest_id=str(current.id),
            )

        if manifest.status not in _EDITABLE:
            raise ManifestStateError(
                f"Cannot add items to a {manifest.status.value} manifest",
                manifest_id=str(manifest_id),
                status=manifest.status.value,
            )

        reservation = await self.capacity.reserve(
            uow,
            manifest.vehicle_id,
            shipment.total_weight_kg,
            shipment.total_volume_m3,
            shipment_id=shipment_id,
            purpose=ReservationPurpose.MANIFEST,
            branch_id=manifest.origin_branch_id,
            actor=actor,
        )
        item = TransitManifestItem(
            manifest_id=manifest_id,
            shipment_id=shipment_id,
            reservation_id=reservation.id,
            item_status=ManifestItemStatus.ADDED,
            added_at=uow.now(),
        )
        uow.add(item)
        await event_log.manifest_changed(
            uow,
            manifest=manifest,
            event_type="ITEM_ADDED",
            actor=actor,
            message=f"Shipment {shipment.tracking_code} added",
        )
        logger.info(
            "manifest_item_added",
            manifest_id=str(manifest_id),
            shipment_id=str(shipment_id),
        )
        return item

    async def remove_item(
        self,
        uow: UnitOfWork,
        manifest_id: uuid.UUID,
        shipment_id: uuid.UUID,
        *,
        actor: Actor | None = None,
        note: str | None = None,
    ) -> TransitManifestItem:
        actor = actor or Actor.system()
        manifest = await uow.get(TransitManifest, manifest_id, lock=True)
        if manifest.status not in _EDITABLE:
            raise ManifestStateError(
                f"Cannot remove items from a {manifest.status.value} manifest",
                manifest_id=str(manifest_id),
                status=manifest.status.value,
            )

        stmt = (
            select(TransitManifestItem)
            .where(
                TransitManifestItem.manifest_id == manifest_id,
                TransitManifestItem.shipment_id == shipment_id,
                TransitManifestItem.item_status == ManifestItemStatus.ADDED,
            )
            .with_for_update()
        )
        item = await uow.scalar(stmt)
        if item is None:
            raise NotFound(
                "Shipment is not on this manifest",
                manifest_id=str(manifest_id),
                shipment_id=str(shipment_id),
            )

        item.item_status = ManifestItemStatus.REMOVED
        item.removed_at = uow.now()
        if note:
            item.note = note
        if item.reservation_id:
            await self.capacity.release(uow, item.reservation_id)

        await event_log.manifest_changed(
            uow,
            manifest=manifest,
            event_type="ITEM_REMOVED",
            actor=actor,
            message=note,
        )
        logger.info(
            "manifest_item_removed",
            manifest_id=str(manifest_id),
            shipment_id=str(shipment_id),
        )
        return item

    async def transition(
        self,
        uow: UnitOfWork,
        manifest_id: uuid.UUID,
        status: ManifestStatus,
        *,
        actor: Actor | None = None,
    ) -> TransitManifest:
        actor = actor or Actor.system()
        status = ManifestStatus(status)
        manifest = await uow.get(TransitManifest, manifest_id, lock=True)
        current = manifest.status

        if _NEXT_STATUS.get(current) is not status:
            raise ManifestStateError(
                f"Manifest cannot move from {current.value} to {status.value}",
                manifest_id=str(manifest_id),
                current=current.value,
                target=status.value,
            )
        if status is ManifestStatus.DEPARTED:
            if await self.active_item_count(uow, manifest_id) == 0:
                raise ManifestStateError(
                    "An empty manifest cannot depart", manifest_id=str(manifest_id)
                )

        if status is ManifestStatus.CLOSED:
            for item in await self._active_items(uow, manifest_id):
                if item.reservation_id:
                    await self.capacity.release(uow, item.reservation_id)

        manifest.status = status
        setattr(manifest, _TIMESTAMP_FIELDS[status], uow.now())
        await event_log.manifest_changed(
            uow,
            manifest=manifest,
            event_type="STATUS_CHANGED",
            actor=actor,
            old_status=current.value,
        )
        logger.info(
            "manifest_transitioned",
            manifest_id=str(manifest_id),
            old_status=current.value,
            new_status=status.value,
        )
        return manifest
