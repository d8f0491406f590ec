"""Shipment Service: FastAPI application factory.

Exposes the shipment lifecycle engine over HTTP. Engine errors map to
status codes in one place so routes stay free of try/except.
"""

from __future__ import annotations

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from courierx_shared.logging import setup_logging
from courierx_shared.messaging import EventPublisher
from courierx_shared.middleware import RequestContextMiddleware
from shipment_engine.core.config import settings
from shipment_engine.core.database import async_session_factory, engine
from shipment_engine.core.events import lifespan
from shipment_engine.core.errors import (
    AlreadyManifested,
    AssignmentAlreadyActive,
    CollaboratorUnavailable,
    Conflict,
    EngineError,
    NotFound,
)
from shipment_engine.routers.health import build_health_router
from shipment_engine.routers.operations import router as operations_router
from shipment_engine.routers.shipments import router as shipments_router
from shipment_engine.services.collaborators import GeographyClient, PricingClient
from shipment_engine.services.notifications import RabbitNotificationDispatcher
from shipment_engine.services.state_machine import ShipmentStateMachine

_STATUS_BY_ERROR: list[tuple[type[EngineError], int]] = [
    (NotFound, status.HTTP_404_NOT_FOUND),
    (Conflict, status.HTTP_409_CONFLICT),
    (AlreadyManifested, status.HTTP_409_CONFLICT),
    (AssignmentAlreadyActive, status.HTTP_409_CONFLICT),
    (CollaboratorUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_for(exc: EngineError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_422_UNPROCESSABLE_ENTITY


async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    return JSONResponse(status_code=status_for(exc), content={"error": exc.to_dict()})


def create_app(state_machine: ShipmentStateMachine | None = None) -> FastAPI:
    """Construct the application.

    Without an explicit ``state_machine`` the production wiring is built:
    the configured database, HTTP collaborators and the RabbitMQ publisher.
    """
    setup_logging(
        log_level=settings.log_level,
        json_logs=settings.json_logs,
        service_name=settings.service_name,
    )

    application = FastAPI(
        title="CourierX Shipment Service",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    application.state.publisher = None
    application.state.collaborators = []
    application.state.engine = None
    if state_machine is None:
        publisher = EventPublisher(
            settings.rabbitmq_url,
            exchange_name=settings.events_exchange,
            service_name=settings.service_name,
            connect_retries=settings.rabbitmq_connect_retries,
        )
        geography, pricing = GeographyClient(), PricingClient()
        state_machine = ShipmentStateMachine(
            async_session_factory,
            dispatcher=RabbitNotificationDispatcher(publisher),
            geography=geography,
            pricing=pricing,
        )
        application.state.publisher = publisher
        application.state.collaborators = [geography, pricing]
        application.state.engine = engine
    application.state.state_machine = state_machine

    application.add_middleware(RequestContextMiddleware)
    application.add_exception_handler(EngineError, engine_error_handler)
    application.include_router(build_health_router(state_machine.session_factory))
    application.include_router(shipments_router)
    application.include_router(operations_router)

    return application


app = create_app()
