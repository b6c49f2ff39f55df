"""
Row-backed mutex serializing writes to a remote system per environment.

Cooperative and best-effort, not a fencing protocol: it assumes the remote
mutations it protects take seconds. A row older than the staleness
threshold is treated as abandoned by a crashed holder and taken over, so
the worst-case blocking after a crash is threshold + time until the next
acquire attempt.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from enum import Enum

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import get_settings
from core.errors import RemoteBusyError
from core.retry import RetryPolicy
from db.models import RemoteLock

logger = structlog.get_logger()


def _key(value: str | Enum) -> str:
    return value.value if isinstance(value, Enum) else str(value)


def _label(system: str | Enum) -> str:
    return getattr(system, "label", None) or _key(system)


class RemoteMutex:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        stale_after: timedelta | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.sessions = session_factory
        self.stale_after = stale_after or timedelta(seconds=get_settings().remote_lock_stale_seconds)
        self.retry_policy = retry_policy or RetryPolicy()
        self._now = clock

    async def acquire(self, system: str | Enum, env: str | Enum) -> None:
        """Take the lock or raise ``RemoteBusyError``; busy is never retried here."""
        await self.retry_policy.call(self._acquire_once, system, env)
        logger.debug("remote_lock.acquired", system=_key(system), env=_key(env))

    async def _acquire_once(self, system: str | Enum, env: str | Enum) -> None:
        sys_key, env_key = _key(system), _key(env)
        async with self.sessions() as db:
            held_since = (
                await db.execute(
                    select(RemoteLock.updated_at).where(
                        RemoteLock.system == sys_key,
                        RemoteLock.env == env_key,
                    )
                )
            ).scalar_one_or_none()
            now = self._now()

            if held_since is not None:
                if now - held_since <= self.stale_after:
                    raise RemoteBusyError(
                        f"{_label(system)} is busy on {env_key.upper()}, please try again shortly",
                        remote_system=sys_key,
                    )
                logger.warning(
                    "remote_lock.stale_takeover",
                    system=sys_key,
                    env=env_key,
                    held_since=held_since.isoformat(),
                )
                # Only remove the exact row we judged stale; a fresh holder survives.
                removed = await db.execute(
                    delete(RemoteLock)
                    .where(
                        RemoteLock.system == sys_key,
                        RemoteLock.env == env_key,
                        RemoteLock.updated_at == held_since,
                    )
                    .execution_options(synchronize_session=False)
                )
                if removed.rowcount == 0:
                    await db.rollback()
                    raise RemoteBusyError(
                        f"{_label(system)} is busy on {env_key.upper()}, please try again shortly",
                        remote_system=sys_key,
                    )

            db.add(RemoteLock(system=sys_key, env=env_key, updated_at=now))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise RemoteBusyError(
                    f"{_label(system)} is busy on {env_key.upper()}, please try again shortly",
                    remote_system=sys_key,
                ) from None

    async def release(self, system: str | Enum, env: str | Enum) -> None:
        """Drop the lock row. Releasing a lock nobody holds is a no-op."""
        await self.retry_policy.call(self._release_once, _key(system), _key(env))
        logger.debug("remote_lock.released", system=_key(system), env=_key(env))

    async def _release_once(self, sys_key: str, env_key: str) -> None:
        async with self.sessions() as db:
            await db.execute(
                delete(RemoteLock)
                .where(RemoteLock.system == sys_key, RemoteLock.env == env_key)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    @asynccontextmanager
    async def hold(self, system: str | Enum, env: str | Enum) -> AsyncIterator[None]:
        await self.acquire(system, env)
        try:
            yield
        finally:
            await self.release(system, env)
