"""Post-commit notification dispatch for shipment status changes."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Protocol

import structlog

from courierx_shared.messaging import EventPublisher

logger = structlog.get_logger()

STATUS_CHANGED_ROUTING_KEY = "shipment.status_changed"


@dataclass(frozen=True)
class StatusChanged:
    shipment_id: uuid.UUID
    tracking_code: str
    old_status: str | None
    new_status: str
    actor_type: str
    actor_id: str | None
    event_at: datetime


class NotificationDispatcher(Protocol):
    async def status_changed(self, event: StatusChanged) -> None: ...


class RabbitNotificationDispatcher:
    """Publishes status changes to the events exchange.

    Delivery is best effort: when the broker is unreachable the event is
    logged and dropped, the committed transition stands.
    """

    def __init__(self, publisher: EventPublisher):
        self._publisher = publisher

    async def status_changed(self, event: StatusChanged) -> None:
        if not self._publisher.is_connected:
            logger.warning(
                "notification_dropped",
                reason="broker_unavailable",
                shipment_id=str(event.shipment_id),
                new_status=event.new_status,
            )
            return
        try:
            await self._publisher.publish_event(
                STATUS_CHANGED_ROUTING_KEY,
                asdict(event),
                headers={"tracking_code": event.tracking_code},
            )
        except Exception as exc:
            logger.warning(
                "notification_dropped",
                reason="publish_failed",
                shipment_id=str(event.shipment_id),
                new_status=event.new_status,
                error=str(exc),
            )
