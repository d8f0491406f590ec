"""ManifestConsolidator: membership, departure rules, capacity on the vehicle."""

from __future__ import annotations

from decimal import Decimal

import pytest

from shipment_engine.core.errors import AlreadyManifested, ManifestStateError
from shipment_engine.models import ManifestItemStatus, ManifestStatus, VehicleLoadTracking
from tests.factories import AGENT


async def _manifest(machine, world):
    return await machine.run(
        lambda uow: machine.manifests.create_manifest(
            uow,
            vehicle_id=world.truck.id,
            origin_branch_id=world.origin.id,
            dest_branch_id=world.dest.id,
            route_scope="INTER_PROVINCE",
            actor=AGENT,
        )
    )


async def _move(machine, manifest_id, status):
    return await machine.run(
        lambda uow: machine.manifests.transition(uow, manifest_id, status, actor=AGENT)
    )


async def _add(machine, manifest_id, shipment_id):
    return await machine.run(
        lambda uow: machine.manifests.add_item(uow, manifest_id, shipment_id, actor=AGENT)
    )


@pytest.mark.asyncio
async def test_empty_manifest_cannot_depart_until_an_item_is_added(machine, world, shipment):
    manifest = await _manifest(machine, world)
    assert manifest.manifest_code.startswith("MF-")
    await _move(machine, manifest.id, ManifestStatus.LOADED)

    with pytest.raises(ManifestStateError):
        await _move(machine, manifest.id, ManifestStatus.DEPARTED)

    await _add(machine, manifest.id, shipment.id)
    departed = await _move(machine, manifest.id, ManifestStatus.DEPARTED)
    assert departed.status is ManifestStatus.DEPARTED
    assert departed.departed_at is not None


@pytest.mark.asyncio
async def test_shipment_sits_on_one_open_manifest_at_a_time(machine, world, shipment):
    first = await _manifest(machine, world)
    second = await _manifest(machine, world)

    item = await _add(machine, first.id, shipment.id)
    again = await _add(machine, first.id, shipment.id)
    assert again.id == item.id

    with pytest.raises(AlreadyManifested):
        await _add(machine, second.id, shipment.id)


@pytest.mark.asyncio
async def test_items_reserve_and_release_vehicle_capacity(machine, run, world, shipment):
    manifest = await _manifest(machine, world)
    await _add(machine, manifest.id, shipment.id)

    load = await run(lambda uow: uow.get(VehicleLoadTracking, world.truck.id))
    assert load.current_load_kg == Decimal("10")

    removed = await run(
        lambda uow: machine.manifests.remove_item(
            uow, manifest.id, shipment.id, actor=AGENT, note="Wrong truck"
        )
    )
    assert removed.item_status is ManifestItemStatus.REMOVED
    load = await run(lambda uow: uow.get(VehicleLoadTracking, world.truck.id))
    assert load.current_load_kg == Decimal("0")
    assert await run(lambda uow: machine.manifests.active_membership(uow, shipment.id)) is None


@pytest.mark.asyncio
async def test_items_are_frozen_after_departure(machine, world, shipment):
    manifest = await _manifest(machine, world)
    await _add(machine, manifest.id, shipment.id)
    await _move(machine, manifest.id, ManifestStatus.LOADED)
    await _move(machine, manifest.id, ManifestStatus.DEPARTED)

    with pytest.raises(ManifestStateError):
        await machine.run(
            lambda uow: machine.manifests.remove_item(uow, manifest.id, shipment.id)
        )


@pytest.mark.asyncio
async def test_closing_releases_capacity_and_frees_the_shipment(machine, run, world, shipment):
    manifest = await _manifest(machine, world)
    await _add(machine, manifest.id, shipment.id)
    for status in (
        ManifestStatus.LOADED,
        ManifestStatus.DEPARTED,
        ManifestStatus.ARRIVED,
        ManifestStatus.CLOSED,
    ):
        await _move(machine, manifest.id, status)

    load = await run(lambda uow: uow.get(VehicleLoadTracking, world.truck.id))
    assert load.current_load_kg == Decimal("0")

    onward = await _manifest(machine, world)
    item = await _add(machine, onward.id, shipment.id)
    assert item.manifest_id == onward.id


@pytest.mark.asyncio
async def test_manifest_statuses_only_move_forward_one_step(machine, world):
    manifest = await _manifest(machine, world)

    with pytest.raises(ManifestStateError):
        await _move(machine, manifest.id, ManifestStatus.DEPARTED)
    with pytest.raises(ManifestStateError):
        await _move(machine, manifest.id, ManifestStatus.CLOSED)


@pytest.mark.asyncio
async def test_manifest_needs_distinct_branches(machine, world):
    with pytest.raises(ManifestStateError):
        await machine.run(
            lambda uow: machine.manifests.create_manifest(
                uow,
                vehicle_id=world.truck.id,
                origin_branch_id=world.origin.id,
                dest_branch_id=world.origin.id,
                route_scope="INTRA_PROVINCE",
            )
        )
