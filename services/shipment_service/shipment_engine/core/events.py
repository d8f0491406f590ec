"""Shipment Service: application lifespan (startup / shutdown hooks)."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from shipment_engine.core.config import settings

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Connect the event publisher on startup; release every resource on shutdown.

    A broker that cannot be reached does not stop the service: status
    notifications are then logged and dropped.
    """
    log.info("shipment_service_starting", db_url=settings.database_url.split("@")[-1])

    publisher = app.state.publisher
    if publisher is not None:
        try:
            await publisher.connect()
        except Exception as exc:
            log.warning("rabbitmq_unavailable", error=str(exc))

    yield

    log.info("shipment_service_shutting_down")
    if publisher is not None:
        await publisher.close()
    for client in app.state.collaborators:
        await client.aclose()
    if app.state.engine is not None:
        await app.state.engine.dispose()
