"""Shared FastAPI dependencies: the engine instance and the calling actor."""

from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from courierx_shared.middleware import ACTOR_ID_HEADER, ACTOR_TYPE_HEADER
from shipment_engine.core.context import Actor, ActorType
from shipment_engine.services.state_machine import ShipmentStateMachine


def get_state_machine(request: Request) -> ShipmentStateMachine:
    return request.app.state.state_machine


def get_actor(
    actor_type: str | None = Header(None, alias=ACTOR_TYPE_HEADER),
    actor_id: str | None = Header(None, alias=ACTOR_ID_HEADER),
) -> Actor:
    """Actor named by the gateway headers; SYSTEM when none is given."""
    if not actor_type:
        return Actor.system()
    try:
        return Actor(ActorType(actor_type.upper()), actor_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown actor type {actor_type!r}",
        ) from None
