"""
Stores Router — storefronts and their billing-provider credentials.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_db
from core.security import encrypt
from db.models import Store

router = APIRouter(prefix="/api/v1/stores", tags=["stores"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class StoreCreate(BaseModel):
    store_code: str = Field(..., min_length=1, max_length=64, pattern=r"^[A-Za-z0-9-]+$")
    region_code: str = Field(..., min_length=2, max_length=8)
    name: str | None = None
    billing_subdomain_stg: str | None = None
    billing_subdomain_prod: str | None = None
    billing_api_key_stg: str | None = None
    billing_api_key_prod: str | None = None


class StoreResponse(BaseModel):
    store_code: str
    region_code: str
    name: str | None
    billing_subdomain_stg: str | None
    billing_subdomain_prod: str | None
    has_stg_credentials: bool
    has_prod_credentials: bool
    created_at: datetime
    updated_at: datetime


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[StoreResponse])
async def list_stores(db: AsyncSession = Depends(get_db), _user: dict = Depends(get_current_user)):
    result = await db.execute(select(Store).order_by(Store.store_code))
    return [_serialize_store(store) for store in result.scalars().all()]


@router.get("/{store_code}", response_model=StoreResponse)
async def get_store(
    store_code: str,
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(get_current_user),
):
    store = await db.get(Store, store_code)
    if not store:
        raise HTTPException(status_code=404, detail="Store not found")
    return _serialize_store(store)


@router.post("/", response_model=StoreResponse, status_code=201)
async def create_store(
    payload: StoreCreate,
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(get_current_user),
):
    """Create a store. API keys are stored Fernet-encrypted and never returned."""
    if await db.get(Store, payload.store_code):
        raise HTTPException(status_code=409, detail="Store already exists")

    data = payload.model_dump(exclude={"billing_api_key_stg", "billing_api_key_prod"})
    store = Store(
        **data,
        billing_api_key_stg_encrypted=encrypt(payload.billing_api_key_stg) if payload.billing_api_key_stg else None,
        billing_api_key_prod_encrypted=encrypt(payload.billing_api_key_prod) if payload.billing_api_key_prod else None,
    )
    db.add(store)
    await db.commit()
    await db.refresh(store)
    return _serialize_store(store)


def _serialize_store(store: Store) -> dict:
    return {
        "store_code": store.store_code,
        "region_code": store.region_code,
        "name": store.name,
        "billing_subdomain_stg": store.billing_subdomain_stg,
        "billing_subdomain_prod": store.billing_subdomain_prod,
        "has_stg_credentials": bool(store.billing_api_key_stg_encrypted),
        "has_prod_credentials": bool(store.billing_api_key_prod_encrypted),
        "created_at": store.created_at,
        "updated_at": store.updated_at,
    }
