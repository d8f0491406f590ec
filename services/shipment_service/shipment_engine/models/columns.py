"""Column helpers shared by the ORM models."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Enum, Uuid
from sqlalchemy.dialects.postgresql import JSONB

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def pk_column() -> Column:
    return Column(Uuid, primary_key=True, default=uuid.uuid4)


def status_type(enum_cls: type[enum.Enum], name: str) -> Enum:
    """Statuses persist as short strings, not database enum types."""
    return Enum(enum_cls, name=name, native_enum=False, length=30)


def created_at_column() -> Column:
    return Column(DateTime(timezone=True), nullable=False, default=_now)


def updated_at_column() -> Column:
    return Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)
