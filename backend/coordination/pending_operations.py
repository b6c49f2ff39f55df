"""
Pending-operation tracker.

Marks a long-running asynchronous action (CI validation, CSV export) as in
flight for an entity key so duplicate requests are rejected. Entries expire
a fixed TTL after their last update; expiry is detected on the next access,
at which point the entry is removed and the cleanup registered for its
action runs (e.g. deleting a half-written export file).
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from enum import Enum

import structlog
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import get_settings
from core.retry import RetryPolicy
from db.models import PendingOperation

logger = structlog.get_logger()

CleanupCallback = Callable[[str], Awaitable[None]]


class PendingAction(str, Enum):
    VALIDATE = "validate"
    GENERATE_CSV = "generate_csv"
    EXPORT_CSV = "export_csv"


def _action_key(action: str | Enum) -> str:
    return action.value if isinstance(action, Enum) else str(action)


class PendingOperationTracker:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl: timedelta | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.sessions = session_factory
        self.ttl = ttl or timedelta(minutes=get_settings().pending_operation_ttl_minutes)
        self.retry_policy = retry_policy or RetryPolicy()
        self._now = clock
        self._cleanups: dict[str, CleanupCallback] = {}

    def register_cleanup(self, action: str | Enum, callback: CleanupCallback) -> None:
        self._cleanups[_action_key(action)] = callback

    def is_expired(self, row: PendingOperation) -> bool:
        return row.updated_at + self.ttl <= self._now()

    async def start(self, key: str, action: str | Enum) -> PendingOperation | None:
        """
        Register ``action`` for ``key``.

        Returns ``None`` when a live entry already exists: an identical
        operation is in flight and the caller should report "already in
        progress" instead of starting a duplicate.
        """
        return await self.retry_policy.call(self._start_once, key, _action_key(action))

    async def _start_once(self, key: str, action: str) -> PendingOperation | None:
        async with self.sessions() as db:
            existing = await db.get(PendingOperation, key)
            if existing is not None:
                if not self.is_expired(existing):
                    logger.info("pending_op.in_progress", key=key, action=existing.action)
                    return None
                await self._expire(db, existing)

            row = PendingOperation(key=key, action=action, updated_at=self._now())
            db.add(row)
            try:
                await db.commit()
            except IntegrityError:
                # Lost the insert race to a concurrent start.
                await db.rollback()
                return None
            logger.info("pending_op.started", key=key, action=action)
            return row

    async def check(self, key: str) -> str | None:
        """Return the live action for ``key``, clearing an expired entry."""
        return await self.retry_policy.call(self._check_once, key)

    async def _check_once(self, key: str) -> str | None:
        async with self.sessions() as db:
            row = await db.get(PendingOperation, key)
            if row is None:
                return None
            if not self.is_expired(row):
                return row.action
            await self._expire(db, row)
            return None

    async def stop(self, key: str) -> None:
        await self.retry_policy.call(self._stop_once, key)

    async def _stop_once(self, key: str) -> None:
        async with self.sessions() as db:
            await db.execute(
                delete(PendingOperation)
                .where(PendingOperation.key == key)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        logger.debug("pending_op.stopped", key=key)

    async def _expire(self, db: AsyncSession, row: PendingOperation) -> None:
        key, action = row.key, row.action
        await db.delete(row)
        await db.commit()
        logger.warning("pending_op.expired", key=key, action=action, ttl_minutes=self.ttl.total_seconds() / 60)
        cleanup = self._cleanups.get(action)
        if cleanup is not None:
            await cleanup(key)
