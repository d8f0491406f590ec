"""Liveness and readiness checks shared by CourierX services.

``/health/live`` answers as long as the process serves requests.
``/health/ready`` runs every registered dependency check and reports 503
when any of them fails or raises.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import structlog
from fastapi import APIRouter, Response, status

logger = structlog.get_logger()

HealthCheck = Callable[[], Awaitable[bool]]


def create_health_router(
    readiness_checks: Mapping[str, HealthCheck] | None = None,
    *,
    service_name: str = "courierx",
) -> APIRouter:
    """Build the health router.

    Args:
        readiness_checks: Dependency name -> async callable returning True
            when the dependency is usable.
        service_name: Echoed in the response bodies.
    """
    router = APIRouter(prefix="/health", tags=["health"])
    checks = dict(readiness_checks or {})

    @router.get("/live", summary="Liveness check")
    async def liveness() -> dict[str, str]:
        return {"status": "alive", "service": service_name}

    @router.get("/ready", summary="Readiness check")
    async def readiness(response: Response) -> dict[str, Any]:
        results: dict[str, str] = {}
        for name, check in checks.items():
            try:
                results[name] = "ok" if await check() else "failing"
            except Exception as exc:
                logger.warning("readiness_check_failed", check=name, error=str(exc))
                results[name] = f"error: {exc}"

        ready = all(result == "ok" for result in results.values())
        if not ready:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {
            "status": "ready" if ready else "unavailable",
            "service": service_name,
            "checks": results,
        }

    return router
