"""
Configs Router — versioned configuration documents (translations, feature flags).

The client echoes back the ``state`` it last read; a push or rollback
against a state that no longer matches is refused as stale.
"""

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from api.deps import actor_of, get_config_sync_factory, get_current_user
from config_sync import ConfigState
from integrations.base import Env

router = APIRouter(prefix="/api/v1/configs", tags=["configs"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class ExpectedState(BaseModel):
    stg_version: int
    prod_version: int = 0
    status_id: int = 0
    updated_by: str | None = None

    def to_state(self, name: str) -> ConfigState:
        return ConfigState.from_dict(name, {**self.model_dump(), "status": self.status_id})


class ConfigPush(BaseModel):
    document: Any
    target_env: Env
    expected_state: ExpectedState | None = None


class ConfigRollback(BaseModel):
    expected_state: ExpectedState | None = None


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/{name}")
async def get_config(
    name: str,
    sync_for=Depends(get_config_sync_factory),
    _user: dict = Depends(get_current_user),
):
    """Document plus its rollback state."""
    loaded = await sync_for(name).load()
    return {"state": loaded["state"].to_dict(), "document": loaded["document"], "env": loaded["env"]}


@router.put("/{name}")
async def push_config(
    name: str,
    body: ConfigPush,
    sync_for=Depends(get_config_sync_factory),
    user: dict = Depends(get_current_user),
):
    expected = body.expected_state.to_state(name) if body.expected_state else None
    state = await sync_for(name).push(body.document, body.target_env, actor_of(user), expected_state=expected)
    return {"state": state.to_dict()}


@router.post("/{name}/rollback")
async def rollback_config(
    name: str,
    body: ConfigRollback | None = None,
    sync_for=Depends(get_config_sync_factory),
    _user: dict = Depends(get_current_user),
):
    expected = body.expected_state.to_state(name) if body and body.expected_state else None
    sync = sync_for(name)
    await sync.rollback(expected_state=expected)
    return {"state": (await sync.read()).to_dict()}
