"""Shipment Service: health endpoints with a database readiness check."""

from __future__ import annotations

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courierx_shared.health import create_health_router
from shipment_engine.core.config import settings


def build_health_router(session_factory: async_sessionmaker[AsyncSession]) -> APIRouter:
    async def database() -> bool:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        return True

    return create_health_router(
        {"database": database}, service_name=settings.service_name
    )
