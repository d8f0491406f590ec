"""Shipment API routes."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, status

from shipment_engine.core.context import Actor, TransitionContext
from shipment_engine.models import Shipment
from shipment_engine.routers.deps import get_actor, get_state_machine
from shipment_engine.schemas.shipment import (
    AssignmentResponse,
    AssignRequest,
    ReassignRequest,
    ShipmentBook,
    ShipmentResponse,
    StatusHistoryItem,
    TransitionRequest,
)
from shipment_engine.services.state_machine import ShipmentDraft, ShipmentStateMachine

router = APIRouter(prefix="/api/shipments", tags=["Shipments"])


@router.post("", response_model=ShipmentResponse, status_code=status.HTTP_201_CREATED)
async def book_shipment(
    payload: ShipmentBook,
    actor: Actor = Depends(get_actor),
    machine: ShipmentStateMachine = Depends(get_state_machine),
) -> ShipmentResponse:
    """Book a shipment; route scope and price are checked before it is stored."""
    shipment = await machine.book(ShipmentDraft(**payload.model_dump()), actor)
    return ShipmentResponse.model_validate(shipment)


@router.get("/{shipment_id}", response_model=ShipmentResponse)
async def get_shipment(
    shipment_id: uuid.UUID,
    machine: ShipmentStateMachine = Depends(get_state_machine),
) -> ShipmentResponse:
    shipment = await machine.run(lambda uow: uow.get(Shipment, shipment_id))
    return ShipmentResponse.model_validate(shipment)


@router.get("/{shipment_id}/history", response_model=list[StatusHistoryItem])
async def get_history(
    shipment_id: uuid.UUID,
    machine: ShipmentStateMachine = Depends(get_state_machine),
) -> list[StatusHistoryItem]:
    async def work(uow):
        await uow.get(Shipment, shipment_id)
        return await machine.history(uow, shipment_id)

    rows = await machine.run(work)
    return [StatusHistoryItem.model_validate(row) for row in rows]


@router.post("/{shipment_id}/transitions", response_model=ShipmentResponse)
async def transition_shipment(
    shipment_id: uuid.UUID,
    payload: TransitionRequest,
    actor: Actor = Depends(get_actor),
    machine: ShipmentStateMachine = Depends(get_state_machine),
) -> ShipmentResponse:
    """Move a shipment to ``payload.status``; side effects commit atomically."""
    shipment = await machine.transition(
        shipment_id,
        payload.status,
        TransitionContext(actor=actor, payload=payload.payload, note=payload.note),
    )
    return ShipmentResponse.model_validate(shipment)


@router.post(
    "/{shipment_id}/assignments",
    response_model=AssignmentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def assign_driver(
    shipment_id: uuid.UUID,
    payload: AssignRequest,
    actor: Actor = Depends(get_actor),
    machine: ShipmentStateMachine = Depends(get_state_machine),
) -> AssignmentResponse:
    assignment = await machine.run(
        lambda uow: machine.assignments.assign(
            uow,
            shipment_id,
            payload.assignment_type,
            payload.driver_id,
            payload.vehicle_id,
            actor=actor,
            branch_id=payload.branch_id,
            note=payload.note,
        )
    )
    return AssignmentResponse.model_validate(assignment)


@router.post("/{shipment_id}/assignments/reassign", response_model=AssignmentResponse)
async def reassign_driver(
    shipment_id: uuid.UUID,
    payload: ReassignRequest,
    actor: Actor = Depends(get_actor),
    machine: ShipmentStateMachine = Depends(get_state_machine),
) -> AssignmentResponse:
    assignment = await machine.run(
        lambda uow: machine.assignments.reassign(
            uow,
            shipment_id,
            payload.assignment_type,
            payload.driver_id,
            vehicle_id=payload.vehicle_id,
            actor=actor,
            note=payload.note,
        )
    )
    return AssignmentResponse.model_validate(assignment)
