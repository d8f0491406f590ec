"""structlog setup for CourierX services.

Every record, whether it comes from structlog or from a stdlib logger such
as SQLAlchemy or aio-pika, passes through one processor chain:

* request and shipment context bound in contextvars is merged in;
* engine values (UUIDs, Decimals, enum members, datetimes) are rendered as
  plain strings so call sites can log ``shipment_id=shipment.id`` directly;
* customer phone numbers from sender/receiver snapshots are masked.
"""

from __future__ import annotations

import datetime as dt
import enum
import logging
import sys
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from decimal import Decimal
from typing import Any

import structlog

PHONE_FIELDS = frozenset({"sender_phone", "receiver_phone", "phone_number"})

DEFAULT_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aio_pika", "aiormq", "httpx")


def setup_logging(
    *,
    log_level: str = "INFO",
    json_logs: bool = False,
    service_name: str = "courierx",
    quiet_loggers: Iterable[str] = DEFAULT_QUIET_LOGGERS,
) -> None:
    """Route structlog and stdlib logging through the shared chain.

    Args:
        log_level: Root log level name.
        json_logs: One JSON object per line instead of console output.
        service_name: Stamped on every record as ``service``.
        quiet_loggers: Library loggers held at WARNING.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.ExtraAdder(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        stamp_service(service_name),
        render_engine_values,
        mask_phone_numbers,
    ]

    rendering: list[structlog.types.Processor]
    if json_logs:
        rendering = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        rendering = [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *rendering,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level.upper())

    for name in quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)


def stamp_service(service_name: str) -> structlog.types.Processor:
    def processor(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict

    return processor


def _plain(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, (dt.datetime, dt.date)):
        return value.isoformat()
    return value


def render_engine_values(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Turn identifiers, amounts, statuses and timestamps into strings."""
    return {key: _plain(value) for key, value in event_dict.items()}


def mask_phone_numbers(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Keep only the last three digits of customer phone numbers."""
    for key in PHONE_FIELDS & event_dict.keys():
        value = event_dict[key]
        if isinstance(value, str) and len(value) > 3:
            event_dict[key] = "*" * (len(value) - 3) + value[-3:]
    return event_dict


@contextmanager
def shipment_context(shipment_id: Any, **extra: Any) -> Iterator[None]:
    """Bind ``shipment_id`` (and ``extra``) onto every record logged inside the block."""
    with structlog.contextvars.bound_contextvars(shipment_id=_plain(shipment_id), **extra):
        yield
