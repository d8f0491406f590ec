"""HTTP surface: routing, actor headers and engine error mapping."""

from __future__ import annotations

import uuid

import httpx
import pytest
import pytest_asyncio

from shipment_engine.core.errors import (
    AlreadyManifested,
    CollaboratorUnavailable,
    Conflict,
    InvalidTransition,
    NotFound,
)
from shipment_engine.main import create_app, status_for

BOOKING = {
    "sender_address_text": "12 Nguyen Hue, District 1",
    "receiver_address_text": "8 Trang Tien, Hoan Kiem",
    "total_weight_kg": "10",
    "route_scope": "INTER_PROVINCE",
    "quoted_amount": "35000",
}
AGENT_HEADERS = {"X-Actor-Type": "agent", "X-Actor-ID": "agent-7"}


@pytest_asyncio.fixture
async def client(machine):
    app = create_app(state_machine=machine)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


async def _book(client) -> dict:
    response = await client.post("/api/shipments", json=BOOKING, headers=AGENT_HEADERS)
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_book_then_read_back_with_history(client):
    booked = await _book(client)
    assert booked["shipment_status"] == "BOOKED"
    assert booked["tracking_code"].startswith("CX")

    fetched = await client.get(f"/api/shipments/{booked['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["id"] == booked["id"]

    history = await client.get(f"/api/shipments/{booked['id']}/history")
    assert [(h["new_status"], h["actor_type"], h["actor_id"]) for h in history.json()] == [
        ("BOOKED", "AGENT", "agent-7")
    ]


@pytest.mark.asyncio
async def test_transition_accepts_legacy_names_and_records_the_actor(client, world):
    booked = await _book(client)

    response = await client.post(
        f"/api/shipments/{booked['id']}/transitions",
        json={"status": "BRANCH_ASSIGNED", "payload": {"branch_id": str(world.origin.id)}},
        headers={"X-Actor-Type": "ADMIN", "X-Actor-ID": "admin-1"},
    )
    assert response.status_code == 200, response.text
    assert response.json()["assigned_branch_id"] == str(world.origin.id)

    history = (await client.get(f"/api/shipments/{booked['id']}/history")).json()
    assert history[-1]["actor_type"] == "ADMIN"
    assert history[-1]["payload"] == {"branch_id": str(world.origin.id)}


@pytest.mark.asyncio
async def test_engine_errors_map_to_status_codes(client):
    booked = await _book(client)

    missing = await client.get(f"/api/shipments/{uuid.uuid4()}")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"

    invalid = await client.post(
        f"/api/shipments/{booked['id']}/transitions", json={"status": "IN_TRANSIT"}
    )
    assert invalid.status_code == 422
    assert invalid.json()["error"]["code"] == "INVALID_TRANSITION"
    assert invalid.json()["error"]["details"]["current"] == "BOOKED"

    unknown_status = await client.post(
        f"/api/shipments/{booked['id']}/transitions", json={"status": "TELEPORTED"}
    )
    assert unknown_status.status_code == 422


@pytest.mark.asyncio
async def test_unknown_actor_type_is_rejected(client):
    response = await client.post(
        "/api/shipments", json=BOOKING, headers={"X-Actor-Type": "ROBOT"}
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_second_active_assignment_is_a_conflict(client, world):
    booked = await _book(client)
    body = {"assignment_type": "PICKUP", "driver_id": str(world.driver.id)}

    first = await client.post(f"/api/shipments/{booked['id']}/assignments", json=body)
    assert first.status_code == 201
    assert first.json()["vehicle_id"] == str(world.truck.id)

    body["driver_id"] = str(world.other.id)
    second = await client.post(f"/api/shipments/{booked['id']}/assignments", json=body)
    assert second.status_code == 409
    assert second.json()["error"]["code"] == "ASSIGNMENT_ALREADY_ACTIVE"


@pytest.mark.asyncio
async def test_admin_task_resolution_requires_a_person(client):
    booked = await _book(client)
    await client.post(
        f"/api/shipments/{booked['id']}/transitions",
        json={"status": "ISSUE", "note": "Label torn"},
        headers=AGENT_HEADERS,
    )
    issue = await client.get(f"/api/shipments/{booked['id']}")
    assert issue.json()["pre_issue_status"] == "BOOKED"

    blocked = await client.post(
        f"/api/shipments/{booked['id']}/transitions",
        json={"status": "BOOKED", "payload": {"admin_task_id": str(uuid.uuid4())}},
    )
    assert blocked.status_code == 422
    assert blocked.json()["error"]["code"] == "PRECONDITION_FAILED"


@pytest.mark.asyncio
async def test_manifest_endpoints(client, world):
    booked = await _book(client)
    created = await client.post(
        "/api/manifests",
        json={
            "vehicle_id": str(world.truck.id),
            "origin_branch_id": str(world.origin.id),
            "dest_branch_id": str(world.dest.id),
            "route_scope": "INTER_PROVINCE",
        },
        headers=AGENT_HEADERS,
    )
    assert created.status_code == 201
    manifest = created.json()
    assert manifest["status"] == "OPEN"

    added = await client.post(
        f"/api/manifests/{manifest['id']}/items", json={"shipment_id": booked["id"]}
    )
    assert added.status_code == 201

    removed = await client.delete(f"/api/manifests/{manifest['id']}/items/{booked['id']}")
    assert removed.status_code == 204

    skipped = await client.post(
        f"/api/manifests/{manifest['id']}/transitions", json={"status": "DEPARTED"}
    )
    assert skipped.status_code == 422
    assert skipped.json()["error"]["code"] == "MANIFEST_STATE_ERROR"


@pytest.mark.asyncio
async def test_health_endpoints(client):
    live = await client.get("/health/live")
    assert live.json()["status"] == "alive"

    ready = await client.get("/health/ready")
    assert ready.status_code == 200
    assert ready.json()["checks"] == {"database": "ok"}


def test_status_mapping():
    assert status_for(NotFound("x")) == 404
    assert status_for(Conflict("x")) == 409
    assert status_for(AlreadyManifested("x")) == 409
    assert status_for(CollaboratorUnavailable("x")) == 503
    assert status_for(InvalidTransition("x")) == 422
