"""
OfferOps API Dependencies

Dependency injection for DB sessions, auth, and the promotion core.
Routers never build collaborators themselves so tests can override any of
them through ``app.dependency_overrides``.
"""

from collections.abc import AsyncGenerator

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config_sync import VersionedConfigSync
from coordination import PendingOperationTracker
from core.config import get_settings
from db.session import AsyncSessionLocal
from integrations import BillingClient, CIPipelineClient, ConfigServiceClient, ContentCacheClient
from promotion import PromotionStateMachine
from promotion.progress import ProgressSink, RedisProgressSink
from workers.exports import register_export_cleanup

settings = get_settings()
security = HTTPBearer(auto_error=False)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return AsyncSessionLocal


async def get_db(
    sessions: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with sessions() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict:
    """Decode JWT and return user payload. Bypassed in debug mode."""
    if settings.debug:
        return {"sub": "dev-user", "email": "dev@offerops.local"}

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    from core.security import decode_access_token

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return payload


def actor_of(user: dict) -> str:
    return user.get("email") or user.get("sub") or "unknown"


def get_progress_sink() -> ProgressSink:
    return RedisProgressSink()


def get_pending_tracker(
    sessions: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> PendingOperationTracker:
    return register_export_cleanup(PendingOperationTracker(sessions))


def get_state_machine(
    sessions: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    pending: PendingOperationTracker = Depends(get_pending_tracker),
    progress: ProgressSink = Depends(get_progress_sink),
) -> PromotionStateMachine:
    return PromotionStateMachine(
        sessions,
        billing=BillingClient(),
        cache=ContentCacheClient(),
        ci=CIPipelineClient(),
        pending=pending,
        progress=progress,
    )


def get_config_service() -> ConfigServiceClient:
    return ConfigServiceClient()


def get_config_sync_factory(
    sessions: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    client: ConfigServiceClient = Depends(get_config_service),
):
    """Return a callable building the sync for one named configuration."""

    def _build(name: str) -> VersionedConfigSync:
        return VersionedConfigSync(name, sessions, client)

    return _build
