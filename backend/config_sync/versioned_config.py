"""
Versioned Config Sync

Pushes a named document to the remote config service (staging first, then
production) and rolls it back by re-activating version N-1. The local
``versioned_configs`` row remembers the version OfferOps itself last wrote
in each environment. It is only trusted while it matches the live version:
as soon as the config service reports anything else, someone changed the
document outside OfferOps and the row is destroyed instead of acted on.

Lifecycle of the row:
  NEW  --push stg-->  STG  --push prod-->  PROD  --push stg--> (fresh) STG
  STG/PROD  --rollback-->  (deleted)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import IntEnum
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coordination import RemoteMutex
from core.config import get_settings
from core.errors import StaleStateError, ValidationError, raise_remote_error
from core.retry import RetryPolicy
from db.models import VersionedConfig
from integrations.base import Env, RemoteSystem
from integrations.config_service import ConfigServiceClient, build_update, parse_value

logger = structlog.get_logger()

CONFIG_SERVICE = RemoteSystem.CONFIG_SERVICE.value


class ConfigStatus(IntEnum):
    NEW = 0
    STG = 1
    PROD = 2


@dataclass
class ConfigState:
    name: str
    stg_version: int
    prod_version: int
    status: int = ConfigStatus.NEW
    updated_by: str | None = None
    updated_at: datetime | None = None
    can_retire: bool = False
    error_message: str | None = None

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> "ConfigState":
        return cls(
            name=name,
            stg_version=int(data["stg_version"]),
            prod_version=int(data.get("prod_version") or 0),
            status=int(data.get("status", ConfigStatus.NEW)),
            updated_by=data.get("updated_by"),
        )

    def to_dict(self) -> dict[str, Any]:
        body = asdict(self)
        body["status"] = ConfigStatus(self.status).name
        body["status_id"] = int(self.status)
        return body


class VersionedConfigSync:
    def __init__(
        self,
        name: str,
        session_factory: async_sessionmaker[AsyncSession],
        client: ConfigServiceClient,
        *,
        mutex: RemoteMutex | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        settings = get_settings()
        self.name = name
        self.sessions = session_factory
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy()
        self.mutex = mutex or RemoteMutex(session_factory, retry_policy=self.retry_policy)
        self.base_env = Env(settings.translations_base_env)
        self.stg_env = Env(settings.translations_stg_env)
        self.prod_env = Env(settings.translations_prod_env)
        self.log = logger.bind(config=name)

    # ── Local row ─────────────────────────────────────────────────────────

    async def _load_row(self) -> VersionedConfig | None:
        async def _get():
            async with self.sessions() as db:
                return await db.get(VersionedConfig, self.name)

        return await self.retry_policy.call(_get)

    async def _delete_row(self) -> None:
        async def _delete():
            async with self.sessions() as db:
                row = await db.get(VersionedConfig, self.name)
                if row is not None:
                    await db.delete(row)
                    await db.commit()

        await self.retry_policy.call(_delete)

    async def _save_row(self, *, status: ConfigStatus, stg_version: int, prod_version: int, actor: str | None) -> None:
        async def _save():
            async with self.sessions() as db:
                row = await db.get(VersionedConfig, self.name)
                if row is None:
                    row = VersionedConfig(name=self.name)
                    db.add(row)
                row.status_id = int(status)
                row.stg_rollback_version = stg_version
                row.prod_rollback_version = prod_version
                row.created_by = actor
                row.created_at = datetime.utcnow()
                await db.commit()

        await self.retry_policy.call(_save)

    # ── Remote reads ──────────────────────────────────────────────────────

    async def _live_version(self, env: Env) -> int:
        try:
            return await self.client.current_version(env, self.name)
        except Exception as exc:
            raise_remote_error(exc, CONFIG_SERVICE, context=f"Reading {self.name} on {env.value.upper()}")

    @staticmethod
    def _matches_live(row: VersionedConfig, stg_version: int, prod_version: int) -> bool:
        if row.status_id == ConfigStatus.STG:
            return row.stg_rollback_version == stg_version
        if row.status_id == ConfigStatus.PROD:
            return row.prod_rollback_version == prod_version and row.stg_rollback_version == stg_version
        return False

    # ── Operations ────────────────────────────────────────────────────────

    async def read(self) -> ConfigState:
        """
        Current state: the cached rollback record combined with the live
        STG and PROD versions. A cached record that no longer matches the
        live versions is destroyed and reported through ``error_message``.
        """
        row = await self._load_row()
        stg_version = await self._live_version(self.stg_env)
        prod_version = await self._live_version(self.prod_env)
        state = ConfigState(name=self.name, stg_version=stg_version, prod_version=prod_version)
        if row is None:
            return state

        if self._matches_live(row, stg_version, prod_version):
            state.status = row.status_id
            state.updated_by = row.created_by
            state.updated_at = row.created_at
            state.can_retire = True
            return state

        env = "STG" if row.stg_rollback_version != stg_version else "PROD"
        state.error_message = f"Configuration {self.name} was updated on {env} outside OfferOps, please check it"
        self.log.warning(
            "config_sync.stale_record",
            cached_status=ConfigStatus(row.status_id).name,
            cached_stg_version=row.stg_rollback_version,
            cached_prod_version=row.prod_rollback_version,
            live_stg_version=stg_version,
            live_prod_version=prod_version,
        )
        await self._delete_row()
        return state

    async def load(self) -> dict[str, Any]:
        """State plus the document: the staged copy while a change is on STG, else the base env."""
        state = await self.read()
        env = self.stg_env if state.status == ConfigStatus.STG else self.base_env
        try:
            config = await self.client.get_config(env, self.name)
        except Exception as exc:
            raise_remote_error(exc, CONFIG_SERVICE, context=f"Loading {self.name} from {env.value.upper()}")
        return {"state": state, "document": parse_value(config), "env": env.value}

    async def _check_expected(self, row: VersionedConfig | None, expected: ConfigState) -> None:
        if row is not None and row.status_id != ConfigStatus.NEW:
            modified = (
                row.status_id != expected.status
                or row.stg_rollback_version != expected.stg_version
                or (row.status_id == ConfigStatus.PROD and row.prod_rollback_version != expected.prod_version)
            )
            if modified:
                raise StaleStateError(
                    f"Configuration {self.name} was modified by another user ({row.created_by})",
                    400,
                    remote_system=CONFIG_SERVICE,
                )
        live_stg = await self._live_version(self.stg_env)
        if live_stg != expected.stg_version:
            if row is not None:
                await self._delete_row()
            raise StaleStateError(
                f"Configuration {self.name} was modified on STG",
                400,
                remote_system=CONFIG_SERVICE,
                data={"live_stg_version": live_stg, "expected_stg_version": expected.stg_version},
            )

    async def push(
        self,
        document: Any,
        target_env: Env | str,
        actor: str | None,
        expected_state: ConfigState | None = None,
    ) -> ConfigState:
        env = Env(target_env)
        if env not in (Env.STG, Env.PROD):
            raise ValidationError(f"Configurations are pushed to STG or PROD, not {env.value.upper()}", 400)
        is_prod = env == Env.PROD

        expected = expected_state or await self.read()
        if is_prod and expected.status != ConfigStatus.STG:
            raise ValidationError(
                f"Workflow violation - push {self.name} to STG before publishing to PROD",
                400,
            )

        row = await self._load_row()
        staged = row if row is not None and row.status_id == ConfigStatus.STG else None
        await self._check_expected(staged, expected)

        fresh_cycle = row is None or row.status_id == ConfigStatus.PROD
        stg_version = 0 if fresh_cycle else row.stg_rollback_version
        prod_version = 0 if fresh_cycle else row.prod_rollback_version

        if is_prod and self.stg_env == self.prod_env:
            # Staging and production share one config service: nothing new to write.
            await self._save_row(
                status=ConfigStatus.PROD, stg_version=stg_version, prod_version=stg_version, actor=actor
            )
        else:
            remote_env = self.prod_env if is_prod else self.stg_env
            version = await self._commit(document, remote_env, actor)
            if is_prod:
                await self._save_row(
                    status=ConfigStatus.PROD, stg_version=stg_version, prod_version=version, actor=actor
                )
            else:
                await self._save_row(status=ConfigStatus.STG, stg_version=version, prod_version=0, actor=actor)

        self.log.info("config_sync.pushed", env=env.value, actor=actor)
        return await self.read()

    async def _commit(self, document: Any, env: Env, actor: str | None) -> int:
        try:
            current = await self.client.get_config(env, self.name)
            payload = build_update(current, document, comment=f"Updated by {actor or 'unknown'}")
            async with self.mutex.hold(RemoteSystem.CONFIG_SERVICE, env):
                await self.client.validate_update(env, self.name, payload)
                return await self.client.commit_update(env, self.name, payload)
        except Exception as exc:
            raise_remote_error(exc, CONFIG_SERVICE, context=f"Pushing {self.name} to {env.value.upper()}")

    async def rollback(self, expected_state: ConfigState | None = None) -> None:
        """
        Re-activate version N-1 in every environment OfferOps last wrote to,
        then drop the local record. A second call finds no record and fails
        cleanly instead of decrementing the remote version again.
        """
        row = await self._load_row()
        if row is None or row.status_id == ConfigStatus.NEW:
            raise ValidationError(f"Configuration {self.name} has no change to roll back", 400)

        if expected_state is None:
            expected_state = await self.read()
            if expected_state.error_message:
                raise StaleStateError(expected_state.error_message, 400, remote_system=CONFIG_SERVICE)
        await self._check_expected(row, expected_state)

        if self.stg_env != self.prod_env and row.status_id == ConfigStatus.PROD:
            await self._rollback_env(self.prod_env, row.prod_rollback_version - 1)
            # Production is restored; a failure below leaves only the STG change outstanding.
            await self._save_row(
                status=ConfigStatus.STG,
                stg_version=row.stg_rollback_version,
                prod_version=0,
                actor=row.created_by,
            )
        await self._rollback_env(self.stg_env, row.stg_rollback_version - 1)
        await self._delete_row()
        self.log.info("config_sync.rolled_back", status=ConfigStatus(row.status_id).name)

    async def _rollback_env(self, env: Env, version: int) -> None:
        try:
            async with self.mutex.hold(RemoteSystem.CONFIG_SERVICE, env):
                await self.client.rollback_to_version(env, self.name, version)
        except Exception as exc:
            raise_remote_error(exc, CONFIG_SERVICE, context=f"Rolling back {self.name} on {env.value.upper()}")
