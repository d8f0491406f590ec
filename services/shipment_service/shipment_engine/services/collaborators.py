"""Clients for the geography and pricing services.

Both are called before a unit of work opens, never while row locks are held.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Protocol

import httpx
import structlog

from shipment_engine.core.config import settings
from shipment_engine.core.errors import CollaboratorUnavailable

logger = structlog.get_logger()


class GeographyService(Protocol):
    async def validate_route_scope(
        self,
        *,
        sender_province_code: str | None,
        receiver_province_code: str | None,
        route_scope: str,
    ) -> bool: ...


class PricingService(Protocol):
    async def quote(self, shipment: dict[str, Any]) -> Decimal | None: ...


class _ServiceClient:
    def __init__(self, base_url: str, *, http_client: httpx.AsyncClient | None = None):
        self._base_url = base_url.rstrip("/")
        self._http_client = http_client or httpx.AsyncClient(
            timeout=settings.collaborator_timeout_seconds
        )

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            response = await self._http_client.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("collaborator_call_failed", url=url, error=str(exc))
            raise CollaboratorUnavailable(
                f"Call to {url} failed", url=url, error=str(exc)
            ) from exc
        return response.json()

    async def aclose(self) -> None:
        await self._http_client.aclose()


class GeographyClient(_ServiceClient):
    def __init__(self, base_url: str | None = None, **kwargs):
        super().__init__(base_url or settings.geography_service_url, **kwargs)

    async def validate_route_scope(
        self,
        *,
        sender_province_code: str | None,
        receiver_province_code: str | None,
        route_scope: str,
    ) -> bool:
        """Ask the geography service whether the route scope fits both provinces."""
        data = await self._post(
            "/api/route-scope/validate",
            {
                "sender_province_code": sender_province_code,
                "receiver_province_code": receiver_province_code,
                "route_scope": route_scope,
            },
        )
        valid = bool(data.get("valid"))
        logger.info("route_scope_validated", route_scope=route_scope, valid=valid)
        return valid


class PricingClient(_ServiceClient):
    def __init__(self, base_url: str | None = None, **kwargs):
        super().__init__(base_url or settings.pricing_service_url, **kwargs)

    async def quote(self, shipment: dict[str, Any]) -> Decimal | None:
        data = await self._post("/api/quotes", shipment)
        amount = data.get("amount")
        if amount is None:
            return None
        logger.info("pricing_quote_received", amount=str(amount))
        return Decimal(str(amount))
