"""
Promotion State Machine

Drives a plan or offer through draft -> staging -> production:

  promote           remote create under the billing mutex, cache clear, -> *_PENDING
  start_validation  queue a CI build, remember its key, -> *_VALIDATING
  webhook           CI verdict: *_VALID, or revert remote + *_VALIDATION_FAILED
  rollback          revert remote for the current band, -> DRAFT / STG_VALID
  retire            hard delete below production, soft delete in production

Status only moves after the remote mutation it depends on has succeeded.
Every collaborator failure is classified once here (``wrap_remote_error``)
so callers only ever see ``AppError`` kinds. A failed compensation is
recorded on the entity as ``*_ROLLBACK_FAILED`` and raised as
``RollbackFailedError``; it is never retried inside the same request.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coordination import PendingAction, PendingOperationTracker, RemoteMutex
from core.config import get_settings
from core.errors import (
    AppError,
    RemoteOperationError,
    RollbackFailedError,
    ValidationError,
    raise_remote_error,
)
from core.retry import RetryPolicy
from db.models import PromotableEntity
from integrations.base import Env, RemoteSystem
from integrations.billing import BillingClient
from integrations.ci_pipeline import CIPipelineClient
from integrations.content_cache import ContentCacheClient
from promotion.entities import EntityHandler, get_handler
from promotion.progress import NullProgressSink, ProgressSink
from promotion.repository import EntityRepository
from promotion.status import (
    VALIDATABLE,
    Status,
    next_promotion_env,
    rollback_status,
    status_for,
    status_name,
    target_env as status_env,
)
from promotion.webhook import WebhookResult, is_success

logger = structlog.get_logger()


def _with_error_message(entity: PromotableEntity, message: str | None) -> dict:
    draft = dict(entity.draft_data or {})
    if message:
        draft["errMessage"] = message
    else:
        draft.pop("errMessage", None)
    return draft


def entity_event(entity: PromotableEntity) -> dict[str, Any]:
    return {
        "store_code": entity.store_code,
        "entity_code": entity.entity_code,
        "entity_type": entity.entity_type,
        "status_id": entity.status_id,
        "status": status_name(entity.status_id),
    }


class PromotionStateMachine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        billing: BillingClient,
        cache: ContentCacheClient,
        ci: CIPipelineClient,
        mutex: RemoteMutex | None = None,
        pending: PendingOperationTracker | None = None,
        retry_policy: RetryPolicy | None = None,
        progress: ProgressSink | None = None,
        disable_rollback: bool | None = None,
    ):
        self.retry_policy = retry_policy or RetryPolicy()
        self.repo = EntityRepository(session_factory, self.retry_policy)
        self.mutex = mutex or RemoteMutex(session_factory, retry_policy=self.retry_policy)
        self.pending = pending or PendingOperationTracker(session_factory, retry_policy=self.retry_policy)
        self.billing = billing
        self.cache = cache
        self.ci = ci
        self.progress = progress or NullProgressSink()
        self.disable_rollback = get_settings().disable_rollback if disable_rollback is None else disable_rollback

    def handler_for(self, entity: PromotableEntity) -> EntityHandler:
        return get_handler(entity.entity_type, self.billing)

    async def _notify(self, entity: PromotableEntity) -> None:
        await self.progress.publish("entity_status", entity_event(entity))

    async def _say(self, entity: PromotableEntity, text: str) -> None:
        await self.progress.publish(
            "progress",
            {"store_code": entity.store_code, "entity_code": entity.entity_code, "text": text},
        )

    # ── Remote steps ──────────────────────────────────────────────────────

    async def _apply_remote(self, entity: PromotableEntity, handler: EntityHandler, env: Env) -> str | None:
        if not handler.touches_billing:
            return None
        try:
            async with self.mutex.hold(RemoteSystem.BILLING, env):
                return await handler.apply(entity, env)
        except Exception as exc:
            raise_remote_error(
                exc,
                RemoteSystem.BILLING.value,
                context=f"Promoting {entity.entity_code} to {env.value.upper()}",
            )

    async def _revert_remote(
        self,
        entity: PromotableEntity,
        handler: EntityHandler,
        env: Env,
        *,
        clear_cache: bool = True,
    ) -> None:
        if handler.touches_billing:
            try:
                async with self.mutex.hold(RemoteSystem.BILLING, env):
                    await handler.revert(entity, env)
            except Exception as exc:
                raise_remote_error(
                    exc,
                    RemoteSystem.BILLING.value,
                    context=f"Reverting {entity.entity_code} on {env.value.upper()}",
                )
        if clear_cache:
            await self._clear_cache(entity, env)

    async def _clear_cache(self, entity: PromotableEntity, env: Env) -> None:
        try:
            await self.cache.clear(env)
        except Exception as exc:
            raise_remote_error(
                exc,
                RemoteSystem.CONTENT_CACHE.value,
                context=f"Clearing cache for {entity.entity_code}",
            )

    async def _mark_rollback_failed(
        self,
        entity: PromotableEntity,
        env: Env,
        original: str | None,
        failure: AppError,
        actor: str | None,
    ) -> tuple[PromotableEntity, RollbackFailedError]:
        message = (
            f"Rollback of {entity.entity_code} on {env.value.upper()} failed, "
            f"manual cleanup required: {failure.message}"
        )
        logger.error(
            "promotion.rollback_failed",
            store_code=entity.store_code,
            entity_code=entity.entity_code,
            env=env.value,
            original_error=original,
            rollback_error=failure.message,
        )
        updated = await self.repo.apply_changes(
            entity,
            {
                "status_id": int(status_for(env, "rollback_failed")),
                "ci_build_key": None,
                "draft_data": _with_error_message(entity, message),
            },
            actor=actor,
            message=message,
        )
        await self._notify(updated)
        return updated, RollbackFailedError(
            message,
            original_error=original,
            rollback_error=failure.message,
            remote_system=failure.remote_system,
            data={"store_code": entity.store_code, "entity_code": entity.entity_code, "env": env.value},
        )

    # ── Operations ────────────────────────────────────────────────────────

    async def promote(
        self,
        store_code: str,
        code: str,
        target_env: Env | str | None = None,
        actor: str | None = None,
    ) -> PromotableEntity:
        entity = await self.repo.get(store_code, code)
        current = entity.status_id
        env = next_promotion_env(current)
        requested = Env(target_env) if target_env is not None else env
        if env is None or requested != env:
            wanted = requested.value.upper() if requested else "the next environment"
            raise ValidationError(
                f"Invalid status for promotion: {code} is {status_name(current)} and cannot be promoted to {wanted}",
                406,
            )

        log = logger.bind(store_code=store_code, entity_code=code, env=env.value)
        handler = self.handler_for(entity)
        await self._say(entity, f"Creating {code} on {env.value.upper()}...")
        remote_id = await self._apply_remote(entity, handler, env)

        await self._say(entity, f"Clearing {env.value.upper()} cache...")
        try:
            await self._clear_cache(entity, env)
        except AppError as exc:
            log.warning("promotion.cache_clear_failed", error=exc.message)
            if handler.touches_billing:
                try:
                    await self._revert_remote(entity, handler, env, clear_cache=False)
                except AppError as rollback_exc:
                    _, error = await self._mark_rollback_failed(entity, env, exc.message, rollback_exc, actor)
                    raise error from rollback_exc
            raise

        updated = await self.repo.apply_changes(
            entity,
            {
                "status_id": int(status_for(env, "pending")),
                "remote_id": remote_id or entity.remote_id,
                "ci_build_key": None,
                "draft_data": _with_error_message(entity, None),
            },
            actor=actor,
            message=f"Promoted to {env.value.upper()}",
            expect_status=current,
        )
        log.info("promotion.promoted", status=status_name(updated.status_id))
        await self._notify(updated)
        return updated

    async def retire(self, store_code: str, code: str, actor: str | None = None) -> dict[str, Any]:
        entity = await self.repo.get(store_code, code)
        if entity.entity_type == "plan" and await self.repo.has_dependents(store_code, code):
            raise ValidationError(f"Plan {code} is still referenced by offers and cannot be deleted", 406)
        if await self.pending.check(code) == PendingAction.VALIDATE.value:
            raise ValidationError(f"Validation for {code} is in progress, it cannot be deleted now", 406)

        env = status_env(entity.status_id)
        if env != Env.DB:
            await self._revert_remote(entity, self.handler_for(entity), env)

        if env == Env.PROD:
            updated = await self.repo.apply_changes(
                entity,
                {
                    "status_id": int(Status.PROD_RETIRED),
                    "deleted_at": datetime.utcnow(),
                    "ci_build_key": None,
                },
                actor=actor,
                message="Retired from PROD",
            )
            await self._notify(updated)
        else:
            await self.repo.hard_delete(entity)

        logger.info("promotion.retired", store_code=store_code, entity_code=code, env=env.value, soft=env == Env.PROD)
        return {"store_code": store_code, "entity_code": code, "env": env.value, "soft_deleted": env == Env.PROD}

    async def start_validation(
        self,
        store_code: str,
        code: str,
        correlation_token: str | None = None,
        actor: str | None = None,
    ) -> PromotableEntity:
        entity = await self.repo.get(store_code, code)
        current = entity.status_id
        if current not in VALIDATABLE:
            raise ValidationError(f"{code} cannot be validated while {status_name(current)}", 406)
        env = status_env(current)

        if await self.pending.start(code, PendingAction.VALIDATE) is None:
            raise ValidationError(f"Validation for {code} is already in progress", 406)

        try:
            await self._say(entity, "Triggering CI validation...")
            try:
                build = await self.ci.trigger_build(
                    env=env,
                    entity_type=entity.entity_type,
                    code=code,
                    region_code=entity.store.region_code,
                )
            except Exception as exc:
                raise_remote_error(
                    exc,
                    RemoteSystem.CI.value,
                    context=f"Validation for {code} was not started on {env.value.upper()}",
                )

            token = correlation_token or build.get("buildResultKey")
            if not token:
                message = f"CI did not return a build key for {code}"
                failed = await self.repo.apply_changes(
                    entity,
                    {
                        "status_id": int(status_for(env, "validation_failed")),
                        "draft_data": _with_error_message(entity, message),
                    },
                    actor=actor,
                    message=message,
                    expect_status=current,
                )
                await self._notify(failed)
                raise RemoteOperationError(message, remote_system=RemoteSystem.CI.value)

            updated = await self.repo.apply_changes(
                entity,
                {
                    "status_id": int(status_for(env, "validating")),
                    "ci_build_key": token,
                    "draft_data": _with_error_message(entity, None),
                },
                actor=actor,
                message=f"Validation started on {env.value.upper()} ({token})",
                expect_status=current,
            )
        except Exception:
            await self.pending.stop(code)
            raise

        logger.info(
            "promotion.validation_started",
            store_code=store_code, entity_code=code, env=env.value, build_key=token,
        )
        await self._notify(updated)
        return updated

    async def on_validation_webhook(self, build_key: str, outcome: str, actor: str | None = None) -> WebhookResult:
        entity = await self.repo.find_by_build_key(build_key)
        if entity is None or entity.is_deleted:
            logger.info("promotion.webhook.ignored", build_key=build_key, reason="unknown_build_key")
            return WebhookResult(status="ignored", build_key=build_key, outcome=outcome, reason="unknown_build_key")

        if not await self.repo.claim_build_key(entity, build_key):
            logger.info("promotion.webhook.ignored", build_key=build_key, reason="already_resolved")
            return WebhookResult(status="ignored", build_key=build_key, outcome=outcome, reason="already_resolved")

        env = status_env(entity.status_id)
        log = logger.bind(
            store_code=entity.store_code, entity_code=entity.entity_code,
            env=env.value, build_key=build_key,
        )
        try:
            if is_success(outcome):
                updated = await self.repo.apply_changes(
                    entity,
                    {"status_id": int(status_for(env, "valid"))},
                    actor=actor,
                    message=f"Validation passed on {env.value.upper()} ({build_key})",
                    expect_status=entity.status_id,
                )
            else:
                updated = await self._fail_validation(entity, env, build_key, outcome, actor)
        except Exception:
            # Hand the key back so a redelivery of this webhook can finish the transition.
            restored = await self.repo.restore_build_key(entity, build_key)
            log.error("promotion.webhook.transition_failed", outcome=outcome, build_key_restored=restored)
            raise
        await self.pending.stop(entity.entity_code)

        log.info("promotion.webhook.processed", outcome=outcome, status=status_name(updated.status_id))
        await self._notify(updated)
        return WebhookResult(
            status="processed",
            build_key=build_key,
            outcome=outcome,
            store_code=updated.store_code,
            entity_code=updated.entity_code,
            entity_status=status_name(updated.status_id),
        )

    async def _fail_validation(
        self,
        entity: PromotableEntity,
        env: Env,
        build_key: str,
        outcome: str,
        actor: str | None,
    ) -> PromotableEntity:
        reason = f"Validation failed on {env.value.upper()} ({build_key}: {outcome})"
        if self.disable_rollback:
            logger.warning("promotion.rollback_disabled", entity_code=entity.entity_code, env=env.value)
        else:
            try:
                await self._revert_remote(entity, self.handler_for(entity), env)
            except AppError as exc:
                updated, _ = await self._mark_rollback_failed(entity, env, reason, exc, actor)
                return updated
        return await self.repo.apply_changes(
            entity,
            {
                "status_id": int(status_for(env, "validation_failed")),
                "draft_data": _with_error_message(entity, reason),
            },
            actor=actor,
            message=reason,
            expect_status=entity.status_id,
        )

    async def rollback(
        self,
        store_code: str,
        code: str,
        actor: str | None = None,
        reason: str | None = None,
    ) -> PromotableEntity:
        entity = await self.repo.get(store_code, code)
        env = status_env(entity.status_id)
        if env == Env.DB:
            raise ValidationError(f"{code} is {status_name(entity.status_id)} and has nothing to roll back", 406)

        await self._say(entity, f"Rolling back {code} on {env.value.upper()}...")
        try:
            await self._revert_remote(entity, self.handler_for(entity), env)
        except AppError as exc:
            _, error = await self._mark_rollback_failed(entity, env, reason, exc, actor)
            raise error from exc

        restored = rollback_status(env)
        try:
            updated = await self.repo.apply_changes(
                entity,
                {
                    "status_id": int(restored),
                    "ci_build_key": None,
                    "draft_data": _with_error_message(entity, reason),
                },
                actor=actor,
                message=f"Rolled back from {env.value.upper()}" + (f": {reason}" if reason else ""),
            )
        finally:
            await self.pending.stop(code)

        logger.info(
            "promotion.rolled_back",
            store_code=store_code, entity_code=code, env=env.value, status=restored.name,
        )
        await self._notify(updated)
        return updated
