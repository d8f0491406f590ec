"""Explicit transactional scope for engine operations.

Every component call receives a ``UnitOfWork`` instead of reaching for an
implicit global transaction. The contract:

* clean exit of ``async with uow`` commits; any exception, including
  ``asyncio.CancelledError`` raised before the commit point, rolls back;
* rows read with ``lock=True`` are selected ``FOR UPDATE`` and refreshed
  from the database even if already present in the identity map;
* ``after_commit`` callbacks run only once the commit succeeded and never
  inside the transaction, so network I/O stays outside it.

``run_in_transaction`` adds the retry policy: one retry with backoff on
lock waits, serialization failures, stale versions and unique violations,
then ``Conflict``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime
from typing import Any, TypeVar

import structlog
from sqlalchemy import Select, select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from shipment_engine.core.config import settings
from shipment_engine.core.context import utcnow
from shipment_engine.core.errors import Conflict, NotFound

logger = structlog.get_logger()

T = TypeVar("T")

# serialization_failure, deadlock_detected, lock_not_available, unique_violation
_TRANSIENT_SQLSTATES = frozenset({"40001", "40P01", "55P03", "23505"})


class UnitOfWork:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._after_commit: list[Callable[[], Awaitable[None]]] = []
        self.session: AsyncSession | None = None
        self.committed = False

    async def __aenter__(self) -> "UnitOfWork":
        self.session = self._session_factory()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc_type is None:
                await self.session.commit()
                self.committed = True
            else:
                await self.session.rollback()
        except BaseException:
            await self.session.rollback()
            raise
        finally:
            await self.session.close()
        return False

    def now(self) -> datetime:
        return self._clock()

    def add(self, instance: Any) -> None:
        self.session.add(instance)

    async def flush(self) -> None:
        await self.session.flush()

    async def get(
        self,
        model: type[T],
        ident: Any,
        *,
        lock: bool = False,
        missing_ok: bool = False,
    ) -> T | None:
        """Load ``model`` by primary key, optionally ``FOR UPDATE``."""
        pk = model.__mapper__.primary_key[0]
        stmt = select(model).where(pk == ident)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        instance = (await self.session.execute(stmt)).scalar_one_or_none()
        if instance is None and not missing_ok:
            raise NotFound(
                f"{model.__name__} {ident} not found",
                entity=model.__tablename__,
                id=str(ident),
            )
        return instance

    async def scalar(self, stmt: Select) -> Any:
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def scalars(self, stmt: Select) -> Sequence[Any]:
        return (await self.session.execute(stmt)).scalars().all()

    async def execute(self, stmt: Any):
        return await self.session.execute(stmt)

    @property
    def dialect_name(self) -> str:
        return self.session.get_bind().dialect.name

    def after_commit(self, callback: Callable[[], Awaitable[None]]) -> None:
        self._after_commit.append(callback)

    async def run_after_commit(self) -> None:
        if not self.committed:
            return
        callbacks, self._after_commit = self._after_commit, []
        for callback in callbacks:
            try:
                await callback()
            except Exception:
                # Post-commit work is fire-and-forget; the commit already stands
                logger.exception("after_commit_callback_failed")


def is_transient(exc: BaseException) -> bool:
    """True for collisions that a fresh attempt of the same work may not hit."""
    if isinstance(exc, StaleDataError):
        return True
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate is not None:
        return sqlstate in _TRANSIENT_SQLSTATES
    message = str(orig).lower()
    if isinstance(exc, IntegrityError):
        return "unique" in message
    if isinstance(exc, OperationalError):
        return "locked" in message or "deadlock" in message
    return False


async def run_in_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    work: Callable[[UnitOfWork], Awaitable[T]],
    *,
    retries: int | None = None,
    backoff_ms: int | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> T:
    """Run ``work`` in a fresh unit of work, retrying transient conflicts."""
    retries = settings.conflict_retries if retries is None else retries
    backoff = (settings.conflict_backoff_ms if backoff_ms is None else backoff_ms) / 1000

    attempt = 0
    while True:
        uow = UnitOfWork(session_factory, clock=clock)
        try:
            async with uow:
                result = await work(uow)
        except (DBAPIError, StaleDataError) as exc:
            if not is_transient(exc):
                raise
            if attempt >= retries:
                logger.warning(
                    "transaction_conflict", attempts=attempt + 1, error=str(exc)
                )
                raise Conflict(
                    "Concurrent update collided; retry the request",
                    attempts=attempt + 1,
                ) from exc
            attempt += 1
            logger.info("transaction_retry", attempt=attempt, error=str(exc))
            await asyncio.sleep(backoff * attempt)
            continue

        await uow.run_after_commit()
        return result
