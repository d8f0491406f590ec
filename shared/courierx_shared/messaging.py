"""Topic-exchange publisher for CourierX domain events (aio-pika)."""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timezone
from typing import Any

import aio_pika
import structlog

logger = structlog.get_logger()

EVENT_VERSION = "1.0"


class EventPublisher:
    """Publishes JSON events with correlation headers to a durable topic exchange.

    The publisher is deliberately one-way: consumers of these events
    (notification delivery, reporting) live in other services.
    """

    def __init__(
        self,
        url: str,
        *,
        exchange_name: str = "courierx.events",
        service_name: str = "unknown",
        connect_retries: int = 30,
        retry_delay_seconds: float = 2.0,
    ):
        self._url = url
        self._exchange_name = exchange_name
        self._service_name = service_name
        self._connect_retries = connect_retries
        self._retry_delay_seconds = retry_delay_seconds
        self._connection: aio_pika.abc.AbstractRobustConnection | None = None
        self._channel: aio_pika.abc.AbstractChannel | None = None
        self._exchange: aio_pika.abc.AbstractExchange | None = None

    @property
    def is_connected(self) -> bool:
        return self._exchange is not None and not (
            self._connection is None or self._connection.is_closed
        )

    async def connect(self) -> None:
        """Connect with bounded retries and declare the exchange."""
        for attempt in range(1, self._connect_retries + 1):
            try:
                self._connection = await aio_pika.connect_robust(self._url)
                break
            except Exception as exc:
                logger.warning(
                    "rabbitmq_connect_retry",
                    attempt=attempt,
                    retries=self._connect_retries,
                    error=str(exc),
                )
                if attempt == self._connect_retries:
                    raise
                await asyncio.sleep(self._retry_delay_seconds)

        self._channel = await self._connection.channel(publisher_confirms=True)
        self._exchange = await self._channel.declare_exchange(
            self._exchange_name,
            aio_pika.ExchangeType.TOPIC,
            durable=True,
        )
        logger.info("rabbitmq_connected", exchange=self._exchange_name)

    async def close(self) -> None:
        if self._connection and not self._connection.is_closed:
            await self._connection.close()
            logger.info("rabbitmq_disconnected", exchange=self._exchange_name)
        self._exchange = None
        self._channel = None

    async def publish_event(
        self,
        routing_key: str,
        body: dict[str, Any],
        *,
        correlation_id: str | None = None,
        headers: dict[str, Any] | None = None,
    ) -> str:
        """Publish ``body`` under ``routing_key`` and return the correlation id.

        ``correlation_id`` is generated when absent. Every message carries
        ``timestamp``, ``event_version`` and ``source_service`` headers.
        """
        if self._exchange is None:
            raise RuntimeError("EventPublisher not connected; call connect() first")

        cid = correlation_id or str(uuid.uuid4())
        message_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)

        message = aio_pika.Message(
            body=json.dumps(body, default=str).encode(),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            correlation_id=cid,
            message_id=message_id,
            timestamp=now,
            headers={
                "correlation_id": cid,
                "timestamp": now.isoformat(),
                "event_version": EVENT_VERSION,
                "source_service": self._service_name,
                **(headers or {}),
            },
        )
        await self._exchange.publish(message, routing_key=routing_key)
        logger.debug(
            "rabbitmq_published",
            routing_key=routing_key,
            correlation_id=cid,
            message_id=message_id,
        )
        return cid
