"""Actors and per-call context passed into engine operations."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


class ActorType(str, enum.Enum):
    SYSTEM = "SYSTEM"
    JOB = "JOB"
    ADMIN = "ADMIN"
    AGENT = "AGENT"
    DRIVER = "DRIVER"
    CUSTOMER = "CUSTOMER"


_AUTOMATED = frozenset({ActorType.SYSTEM, ActorType.JOB})


@dataclass(frozen=True)
class Actor:
    """Who is asking for a change: an automated component or a person."""

    type: ActorType
    id: str | None = None

    @property
    def is_human(self) -> bool:
        return self.type not in _AUTOMATED

    @classmethod
    def system(cls) -> "Actor":
        return cls(ActorType.SYSTEM)

    @classmethod
    def job(cls, name: str) -> "Actor":
        return cls(ActorType.JOB, name)


@dataclass
class TransitionContext:
    actor: Actor
    payload: dict[str, Any] = field(default_factory=dict)
    note: str | None = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
