"""
Entities Router — plans and offers moving draft -> STG -> PROD.

Every write goes through the PromotionStateMachine; this router only
shapes requests and responses. Failures surface as ``AppError`` and are
rendered by the handler registered in ``api.main``.
"""

from datetime import datetime
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import actor_of, get_current_user, get_db, get_pending_tracker, get_state_machine
from coordination import PendingAction, PendingOperationTracker
from core.errors import NotFoundError, ValidationError
from db.models import PromotableEntity, Store
from integrations.base import Env
from promotion import EntityType, PromotionStateMachine, Status
from promotion.status import status_name
from workers.celery_app import celery_app
from workers.exports import export_path

router = APIRouter(prefix="/api/v1/stores/{store_code}/entities", tags=["entities"])

EXPORT_TASK = "workers.exports.export_unique_codes"


# ─── Schemas ────────────────────────────────────────────────────────────────


class EntityCreate(BaseModel):
    entity_code: str = Field(..., min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_\-]+$")
    entity_type: EntityType
    name: str | None = None
    plan_code: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    draft_data: dict[str, Any] | None = None


class EntityUpdate(BaseModel):
    name: str | None = None
    plan_code: str | None = None
    payload: dict[str, Any] | None = None
    draft_data: dict[str, Any] | None = None


class EntityResponse(BaseModel):
    store_code: str
    entity_code: str
    entity_type: str
    status_id: int
    status: str | None
    name: str | None
    plan_code: str | None
    payload: dict[str, Any]
    draft_data: dict[str, Any] | None
    remote_id: str | None
    ci_build_key: str | None
    created_by: str | None
    last_modified_by: str | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None


class HistoryResponse(BaseModel):
    from_status: str | None
    to_status: str | None
    actor: str | None
    message: str | None
    created_at: datetime


class PromoteRequest(BaseModel):
    target_env: Env | None = None


class ValidateRequest(BaseModel):
    correlation_token: str | None = None


class RollbackRequest(BaseModel):
    reason: str | None = None


class ExportRequest(BaseModel):
    env: Env = Env.STG


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/", response_model=EntityResponse, status_code=201)
async def create_entity(
    store_code: str,
    body: EntityCreate,
    db: AsyncSession = Depends(get_db),
    machine: PromotionStateMachine = Depends(get_state_machine),
    user: dict = Depends(get_current_user),
):
    """Create a draft. Nothing is sent to a remote system until promotion."""
    if await db.get(Store, store_code) is None:
        raise NotFoundError(f"Store {store_code} not found")
    entity = PromotableEntity(
        store_code=store_code,
        entity_code=body.entity_code,
        entity_type=body.entity_type.value,
        status_id=int(Status.DRAFT),
        name=body.name,
        plan_code=body.plan_code,
        payload=body.payload,
        draft_data=body.draft_data,
    )
    created = await machine.repo.create(entity, actor=actor_of(user))
    return _serialize_entity(created)


@router.get("/{code}", response_model=EntityResponse)
async def get_entity(
    store_code: str,
    code: str,
    machine: PromotionStateMachine = Depends(get_state_machine),
    _user: dict = Depends(get_current_user),
):
    return _serialize_entity(await machine.repo.get(store_code, code))


@router.get("/{code}/history", response_model=list[HistoryResponse])
async def get_entity_history(
    store_code: str,
    code: str,
    machine: PromotionStateMachine = Depends(get_state_machine),
    _user: dict = Depends(get_current_user),
):
    rows = await machine.repo.history(store_code, code)
    return [
        {
            "from_status": status_name(row.from_status),
            "to_status": status_name(row.to_status),
            "actor": row.actor,
            "message": row.message,
            "created_at": row.created_at,
        }
        for row in rows
    ]


@router.patch("/{code}", response_model=EntityResponse)
async def update_draft(
    store_code: str,
    code: str,
    update: EntityUpdate,
    machine: PromotionStateMachine = Depends(get_state_machine),
    user: dict = Depends(get_current_user),
):
    """Edit a draft. Anything already promoted is changed through promotion only."""
    entity = await machine.repo.get(store_code, code)
    if entity.status_id != Status.DRAFT:
        raise ValidationError(f"{code} is {status_name(entity.status_id)}; only drafts can be edited", 406)

    changes = update.model_dump(exclude_unset=True)
    if "payload" in changes and changes["payload"] is None:
        raise ValidationError("payload cannot be null; send {} to clear it", 406)
    if not changes:
        return _serialize_entity(entity)
    updated = await machine.repo.apply_changes(
        entity,
        changes,
        actor=actor_of(user),
        message="Draft updated",
        expect_status=int(Status.DRAFT),
    )
    return _serialize_entity(updated)


@router.post("/{code}/promote", response_model=EntityResponse)
async def promote_entity(
    store_code: str,
    code: str,
    request: PromoteRequest | None = None,
    machine: PromotionStateMachine = Depends(get_state_machine),
    user: dict = Depends(get_current_user),
):
    target = request.target_env if request else None
    updated = await machine.promote(store_code, code, target, actor=actor_of(user))
    return _serialize_entity(updated)


@router.post("/{code}/validate", response_model=EntityResponse, status_code=202)
async def validate_entity(
    store_code: str,
    code: str,
    request: ValidateRequest | None = None,
    machine: PromotionStateMachine = Depends(get_state_machine),
    user: dict = Depends(get_current_user),
):
    """Start CI validation. The result arrives later on ``/api/v1/ci/webhook``."""
    token = request.correlation_token if request else None
    updated = await machine.start_validation(store_code, code, token, actor=actor_of(user))
    return _serialize_entity(updated)


@router.post("/{code}/rollback", response_model=EntityResponse)
async def rollback_entity(
    store_code: str,
    code: str,
    request: RollbackRequest | None = None,
    machine: PromotionStateMachine = Depends(get_state_machine),
    user: dict = Depends(get_current_user),
):
    reason = request.reason if request else None
    updated = await machine.rollback(store_code, code, actor=actor_of(user), reason=reason)
    return _serialize_entity(updated)


@router.delete("/{code}")
async def retire_entity(
    store_code: str,
    code: str,
    machine: PromotionStateMachine = Depends(get_state_machine),
    user: dict = Depends(get_current_user),
):
    """Hard-delete below PROD; soft-delete (PROD_RETIRED) once in production."""
    return await machine.retire(store_code, code, actor=actor_of(user))


# ─── Unique-code exports ────────────────────────────────────────────────────


@router.post("/{code}/exports", status_code=202)
async def start_export(
    store_code: str,
    code: str,
    request: ExportRequest,
    machine: PromotionStateMachine = Depends(get_state_machine),
    pending: PendingOperationTracker = Depends(get_pending_tracker),
):
    """Queue a CSV export of the offer's unique codes on the billing provider."""
    entity = await machine.repo.get(store_code, code)
    if entity.entity_type == EntityType.PLAN.value:
        raise ValidationError("Plans have no unique codes to export", 406)
    if request.env == Env.DB:
        raise ValidationError("Unique codes exist on STG or PROD only", 406)

    if await pending.start(code, PendingAction.EXPORT_CSV) is None:
        raise ValidationError(f"Another operation is in progress for {code}", 406)

    try:
        celery_app.send_task(
            EXPORT_TASK,
            kwargs={"store_code": store_code, "code": code, "env": request.env.value},
        )
    except Exception:
        await pending.stop(code)
        raise
    return {"status": "queued", "store_code": store_code, "entity_code": code, "env": request.env.value}


@router.get("/{code}/exports")
async def export_status(
    store_code: str,
    code: str,
    env: Env = Query(Env.STG),
    pending: PendingOperationTracker = Depends(get_pending_tracker),
    _user: dict = Depends(get_current_user),
):
    action = await pending.check(code)
    if action == PendingAction.EXPORT_CSV.value:
        return {"status": "running", "entity_code": code, "env": env.value}

    path = export_path(store_code, code, env)
    if not path.exists():
        return {"status": "missing", "entity_code": code, "env": env.value}
    return {
        "status": "ready",
        "entity_code": code,
        "env": env.value,
        "size_bytes": path.stat().st_size,
    }


@router.get("/{code}/exports/download")
async def download_export(
    store_code: str,
    code: str,
    env: Env = Query(Env.STG),
    _user: dict = Depends(get_current_user),
):
    path: Path = export_path(store_code, code, env)
    if not path.exists():
        raise HTTPException(status_code=404, detail="Export not found")
    return FileResponse(path, media_type="text/csv", filename=path.name)


def _serialize_entity(entity: PromotableEntity) -> dict:
    return {
        "store_code": entity.store_code,
        "entity_code": entity.entity_code,
        "entity_type": entity.entity_type,
        "status_id": entity.status_id,
        "status": status_name(entity.status_id),
        "name": entity.name,
        "plan_code": entity.plan_code,
        "payload": entity.payload or {},
        "draft_data": entity.draft_data,
        "remote_id": entity.remote_id,
        "ci_build_key": entity.ci_build_key,
        "created_by": entity.created_by,
        "last_modified_by": entity.last_modified_by,
        "created_at": entity.created_at,
        "updated_at": entity.updated_at,
        "deleted_at": entity.deleted_at,
    }
