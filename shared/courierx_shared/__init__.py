"""CourierX shared utilities package."""

from courierx_shared.config import BaseServiceSettings
from courierx_shared.logging import setup_logging, shipment_context
from courierx_shared.messaging import EventPublisher

__all__ = ["setup_logging", "shipment_context", "BaseServiceSettings", "EventPublisher"]
