"""Shared fixtures: an in-memory SQLite database per test and a wired engine."""

from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

import shipment_engine.models  # noqa: F401
from shipment_engine.core.database import Base, build_session_factory
from shipment_engine.services.notifications import StatusChanged
from shipment_engine.services.state_machine import ShipmentStateMachine
from tests.factories import (
    FakeClock,
    make_branch,
    make_draft,
    make_driver,
    make_vehicle,
    persist,
)


class RecordingDispatcher:
    def __init__(self):
        self.events: list[StatusChanged] = []

    async def status_changed(self, change: StatusChanged) -> None:
        self.events.append(change)


class FakeGeography:
    def __init__(self, valid: bool = True):
        self.valid = valid
        self.calls: list[dict] = []

    async def validate_route_scope(self, **kwargs) -> bool:
        self.calls.append(kwargs)
        return self.valid


class FakePricing:
    def __init__(self, amount=None):
        self.amount = amount
        self.calls: list[dict] = []

    async def quote(self, shipment):
        self.calls.append(shipment)
        return self.amount


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def machine(session_factory, clock, dispatcher):
    return ShipmentStateMachine(session_factory, dispatcher=dispatcher, clock=clock)


@pytest.fixture
def run(machine):
    """Run a coroutine function inside one unit of work on the test clock."""
    return machine.run


@pytest_asyncio.fixture
async def world(session_factory):
    """Two branches, a truck, a van and two drivers."""
    origin = make_branch("HCM01", province_code="79")
    dest = make_branch("HAN01", province_code="01")
    truck = make_vehicle("TRK-01", max_load_kg="500", max_volume_m3="5")
    van = make_vehicle("VAN-01", max_load_kg="40")
    driver = make_driver("DRV-01", vehicle_id=truck.id, branch_id=origin.id)
    other = make_driver("DRV-02", vehicle_id=van.id, branch_id=origin.id)
    await persist(session_factory, origin, dest, truck, van, driver, other)
    return SimpleNamespace(
        origin=origin, dest=dest, truck=truck, van=van, driver=driver, other=other
    )


@pytest_asyncio.fixture
async def shipment(machine):
    return await machine.book(make_draft())
