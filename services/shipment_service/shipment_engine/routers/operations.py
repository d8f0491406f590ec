"""Back-office routes: driver acceptance, admin tasks, return holds, manifests."""

from __future__ import annotations

import uuid
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, status

from shipment_engine.core.context import Actor, TransitionContext
from shipment_engine.routers.deps import get_actor, get_state_machine
from shipment_engine.schemas.shipment import (
    AdminTaskResponse,
    AssignmentResponse,
    HoldDecision,
    HoldStart,
    ManifestCreate,
    ManifestItemAdd,
    ManifestResponse,
    ManifestTransition,
    ReturnHoldResponse,
    TaskResolve,
)
from shipment_engine.services.state_machine import ShipmentStateMachine

router = APIRouter(prefix="/api", tags=["Operations"])


# ── Assignments ───────────────────────────────


@router.post("/assignments/{assignment_id}/accept", response_model=AssignmentResponse)
async def accept_assignment(
    assignment_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    machine: ShipmentStateMachine = Depends(get_state_machine),
) -> AssignmentResponse:
    assignment = await machine.run(
        lambda uow: machine.assignments.accept(uow, assignment_id, actor=actor)
    )
    return AssignmentResponse.model_validate(assignment)


@router.post("/assignments/{assignment_id}/cancel", response_model=AssignmentResponse)
async def cancel_assignment(
    assignment_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    machine: ShipmentStateMachine = Depends(get_state_machine),
) -> AssignmentResponse:
    assignment = await machine.run(
        lambda uow: machine.assignments.cancel(uow, assignment_id, actor=actor)
    )
    return AssignmentResponse.model_validate(assignment)


# ── Admin tasks ───────────────────────────────


@router.post("/admin-tasks/{task_id}/start", response_model=AdminTaskResponse)
async def start_task(
    task_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    machine: ShipmentStateMachine = Depends(get_state_machine),
) -> AdminTaskResponse:
    task = await machine.run(lambda uow: machine.admin_tasks.start(uow, task_id, actor))
    return AdminTaskResponse.model_validate(task)


@router.post("/admin-tasks/{task_id}/resolve", response_model=AdminTaskResponse)
async def resolve_task(
    task_id: uuid.UUID,
    payload: TaskResolve,
    actor: Actor = Depends(get_actor),
    machine: ShipmentStateMachine = Depends(get_state_machine),
) -> AdminTaskResponse:
    """Resolve a task; automated callers are refused."""
    task = await machine.run(
        lambda uow: machine.admin_tasks.resolve(
            uow, task_id, actor, payload.resolution_code, payload.note
        )
    )
    return AdminTaskResponse.model_validate(task)


# ── Returns ───────────────────────────────────


@router.post(
    "/returns/{return_order_id}/hold",
    response_model=ReturnHoldResponse,
    status_code=status.HTTP_201_CREATED,
)
async def start_hold(
    return_order_id: uuid.UUID,
    payload: HoldStart,
    actor: Actor = Depends(get_actor),
    machine: ShipmentStateMachine = Depends(get_state_machine),
) -> ReturnHoldResponse:
    if (payload.policy is None) == (payload.hours is None):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Give exactly one of 'policy' or 'hours'",
        )
    duration = payload.policy or timedelta(hours=payload.hours)
    hold = await machine.run(
        lambda uow: machine.returns.start_hold(uow, return_order_id, duration, actor=actor)
    )
    return ReturnHoldResponse.model_validate(hold)


@router.post("/returns/{return_order_id}/customer-pickup", response_model=ReturnHoldResponse)
async def record_customer_pickup(
    return_order_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    machine: ShipmentStateMachine = Depends(get_state_machine),
) -> ReturnHoldResponse:
    hold = await machine.run(
        lambda uow: machine.returns.record_customer_pickup(uow, return_order_id, actor=actor)
    )
    return ReturnHoldResponse.model_validate(hold)


@router.post("/returns/{return_order_id}/decision", response_model=ReturnHoldResponse)
async def decide_return(
    return_order_id: uuid.UUID,
    payload: HoldDecision,
    actor: Actor = Depends(get_actor),
    machine: ShipmentStateMachine = Depends(get_state_machine),
) -> ReturnHoldResponse:
    """Decide the hold; the original shipment moves in the same transaction."""
    hold = await machine.decide_return(
        return_order_id,
        payload.final_action,
        TransitionContext(actor=actor, note=payload.note),
    )
    return ReturnHoldResponse.model_validate(hold)


# ── Manifests ─────────────────────────────────


@router.post("/manifests", response_model=ManifestResponse, status_code=status.HTTP_201_CREATED)
async def create_manifest(
    payload: ManifestCreate,
    actor: Actor = Depends(get_actor),
    machine: ShipmentStateMachine = Depends(get_state_machine),
) -> ManifestResponse:
    manifest = await machine.run(
        lambda uow: machine.manifests.create_manifest(
            uow, actor=actor, **payload.model_dump()
        )
    )
    return ManifestResponse.model_validate(manifest)


@router.post("/manifests/{manifest_id}/items", status_code=status.HTTP_201_CREATED)
async def add_manifest_item(
    manifest_id: uuid.UUID,
    payload: ManifestItemAdd,
    actor: Actor = Depends(get_actor),
    machine: ShipmentStateMachine = Depends(get_state_machine),
) -> dict:
    item = await machine.run(
        lambda uow: machine.manifests.add_item(
            uow, manifest_id, payload.shipment_id, actor=actor
        )
    )
    return {"item_id": str(item.id), "shipment_id": str(item.shipment_id)}


@router.delete(
    "/manifests/{manifest_id}/items/{shipment_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def remove_manifest_item(
    manifest_id: uuid.UUID,
    shipment_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    machine: ShipmentStateMachine = Depends(get_state_machine),
) -> None:
    await machine.run(
        lambda uow: machine.manifests.remove_item(uow, manifest_id, shipment_id, actor=actor)
    )


@router.post("/manifests/{manifest_id}/transitions", response_model=ManifestResponse)
async def transition_manifest(
    manifest_id: uuid.UUID,
    payload: ManifestTransition,
    actor: Actor = Depends(get_actor),
    machine: ShipmentStateMachine = Depends(get_state_machine),
) -> ManifestResponse:
    manifest = await machine.run(
        lambda uow: machine.manifests.transition(
            uow, manifest_id, payload.status, actor=actor
        )
    )
    return ManifestResponse.model_validate(manifest)
