"""
Entity persistence for the promotion state machine.

Status changes never write back the in-memory object a request has been
holding for seconds while remote calls ran. Instead the latest committed
row is reloaded, only the fields this request changed are reapplied onto
it, and the save is guarded by the row's ``version`` column. A concurrent
writer in the reload/save window is detected (``StaleDataError``) and the
reapply is repeated against the newer row.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from core.errors import NotFoundError, StaleStateError, ValidationError
from core.retry import RetryPolicy
from db.models import EntityHistory, PromotableEntity
from promotion.entities import EntityType
from promotion.status import status_name

logger = structlog.get_logger()

MAX_REAPPLY_ATTEMPTS = 3


class EntityRepository:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retry_policy: RetryPolicy | None = None,
    ):
        self.sessions = session_factory
        self.retry_policy = retry_policy or RetryPolicy()

    # ── Reads ─────────────────────────────────────────────────────────────

    async def get(self, store_code: str, entity_code: str, *, include_deleted: bool = False) -> PromotableEntity:
        entity = await self.retry_policy.call(self._get_once, store_code, entity_code)
        if entity is None or (entity.is_deleted and not include_deleted):
            raise NotFoundError(f"Entity {entity_code} not found in store {store_code}")
        return entity

    async def _get_once(self, store_code: str, entity_code: str) -> PromotableEntity | None:
        async with self.sessions() as db:
            return await db.get(PromotableEntity, (store_code, entity_code))

    async def find_by_build_key(self, build_key: str) -> PromotableEntity | None:
        """Entity awaiting the CI build ``build_key``, in any store or environment."""

        async def _find():
            async with self.sessions() as db:
                result = await db.execute(select(PromotableEntity).where(PromotableEntity.ci_build_key == build_key))
                return result.scalars().first()

        return await self.retry_policy.call(_find)

    async def has_dependents(self, store_code: str, plan_code: str) -> bool:
        """True when a live offer still references ``plan_code``."""

        async def _count():
            async with self.sessions() as db:
                result = await db.execute(
                    select(PromotableEntity.entity_code)
                    .where(
                        PromotableEntity.store_code == store_code,
                        PromotableEntity.plan_code == plan_code,
                        PromotableEntity.entity_type != EntityType.PLAN.value,
                        PromotableEntity.deleted_at.is_(None),
                    )
                    .limit(1)
                )
                return result.first() is not None

        return await self.retry_policy.call(_count)

    async def history(self, store_code: str, entity_code: str) -> list[EntityHistory]:
        async def _load():
            async with self.sessions() as db:
                result = await db.execute(
                    select(EntityHistory)
                    .where(
                        EntityHistory.store_code == store_code,
                        EntityHistory.entity_code == entity_code,
                    )
                    .order_by(EntityHistory.created_at)
                )
                return list(result.scalars().all())

        return await self.retry_policy.call(_load)

    # ── Writes ────────────────────────────────────────────────────────────

    async def create(self, entity: PromotableEntity, *, actor: str | None = None) -> PromotableEntity:
        entity.created_by = actor
        entity.last_modified_by = actor

        async def _insert():
            async with self.sessions() as db:
                db.add(entity)
                try:
                    await db.flush()
                except IntegrityError:
                    await db.rollback()
                    raise ValidationError(
                        f"Entity {entity.entity_code} already exists in store {entity.store_code}", 406
                    ) from None
                db.add(
                    EntityHistory(
                        store_code=entity.store_code,
                        entity_code=entity.entity_code,
                        from_status=None,
                        to_status=entity.status_id,
                        actor=actor,
                        message="Created",
                    )
                )
                await db.commit()
                await db.refresh(entity)
                return entity

        created = await self.retry_policy.call(_insert)
        logger.info("entity.created", store_code=entity.store_code, entity_code=entity.entity_code)
        return created

    async def apply_changes(
        self,
        entity: PromotableEntity,
        changes: dict[str, Any],
        *,
        actor: str | None = None,
        message: str | None = None,
        expect_status: int | None = None,
    ) -> PromotableEntity:
        """
        Reapply ``changes`` onto the latest committed row and save it.

        With ``expect_status`` the save is refused (``StaleStateError``) when
        another request has moved the entity to a different status since it
        was loaded, so a slow request never drags the status backwards.
        """
        for attempt in range(1, MAX_REAPPLY_ATTEMPTS + 1):
            try:
                return await self.retry_policy.call(self._apply_once, entity, changes, actor, message, expect_status)
            except StaleDataError:
                logger.info(
                    "entity.concurrent_write",
                    store_code=entity.store_code,
                    entity_code=entity.entity_code,
                    attempt=attempt,
                )
        raise StaleStateError(
            f"Entity {entity.entity_code} was modified by another process, please reload and try again"
        )

    async def _apply_once(
        self,
        entity: PromotableEntity,
        changes: dict[str, Any],
        actor: str | None,
        message: str | None,
        expect_status: int | None,
    ) -> PromotableEntity:
        async with self.sessions() as db:
            latest = await db.get(
                PromotableEntity,
                (entity.store_code, entity.entity_code),
                populate_existing=True,
            )
            if latest is None:
                raise NotFoundError(f"Entity {entity.entity_code} not found in store {entity.store_code}")
            from_status = latest.status_id
            if expect_status is not None and from_status != expect_status:
                raise StaleStateError(
                    f"Entity {entity.entity_code} moved to {status_name(from_status)} while this request ran, "
                    "please reload and try again"
                )
            for field, value in changes.items():
                setattr(latest, field, value)
            if actor is not None:
                latest.last_modified_by = actor
            to_status = latest.status_id
            if to_status != from_status:
                db.add(
                    EntityHistory(
                        store_code=latest.store_code,
                        entity_code=latest.entity_code,
                        from_status=from_status,
                        to_status=to_status,
                        actor=actor,
                        message=message,
                    )
                )
            try:
                await db.commit()
            except StaleDataError:
                await db.rollback()
                raise
        if to_status != from_status:
            logger.info(
                "entity.status_changed",
                store_code=latest.store_code,
                entity_code=latest.entity_code,
                from_status=status_name(from_status),
                to_status=status_name(to_status),
                actor=actor,
            )
        return latest

    async def claim_build_key(self, entity: PromotableEntity, build_key: str) -> bool:
        """
        Clear ``build_key`` from the entity iff nobody else has since.

        Exactly one of several concurrent deliveries of the same webhook
        wins; the others see zero affected rows and back off.
        """

        async def _claim():
            async with self.sessions() as db:
                result = await db.execute(
                    update(PromotableEntity)
                    .where(
                        PromotableEntity.store_code == entity.store_code,
                        PromotableEntity.entity_code == entity.entity_code,
                        PromotableEntity.ci_build_key == build_key,
                        PromotableEntity.version == entity.version,
                    )
                    .values(ci_build_key=None, version=entity.version + 1, updated_at=datetime.utcnow())
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                return result.rowcount == 1

        return await self.retry_policy.call(_claim)

    async def restore_build_key(self, entity: PromotableEntity, build_key: str) -> bool:
        """Put back a claimed ``build_key`` while the entity still has the status it was claimed at."""

        async def _restore():
            async with self.sessions() as db:
                result = await db.execute(
                    update(PromotableEntity)
                    .where(
                        PromotableEntity.store_code == entity.store_code,
                        PromotableEntity.entity_code == entity.entity_code,
                        PromotableEntity.ci_build_key.is_(None),
                        PromotableEntity.status_id == entity.status_id,
                    )
                    .values(ci_build_key=build_key, version=PromotableEntity.version + 1, updated_at=datetime.utcnow())
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                return result.rowcount == 1

        return await self.retry_policy.call(_restore)

    async def hard_delete(self, entity: PromotableEntity) -> None:
        async def _delete():
            async with self.sessions() as db:
                await db.execute(
                    delete(EntityHistory)
                    .where(
                        EntityHistory.store_code == entity.store_code,
                        EntityHistory.entity_code == entity.entity_code,
                    )
                    .execution_options(synchronize_session=False)
                )
                await db.execute(
                    delete(PromotableEntity)
                    .where(
                        PromotableEntity.store_code == entity.store_code,
                        PromotableEntity.entity_code == entity.entity_code,
                    )
                    .execution_options(synchronize_session=False)
                )
                await db.commit()

        await self.retry_policy.call(_delete)
        logger.info("entity.deleted", store_code=entity.store_code, entity_code=entity.entity_code, hard=True)
