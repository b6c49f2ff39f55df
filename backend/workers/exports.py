"""
Unique-Code Export Worker

Bulk coupons on the billing provider carry thousands of generated unique
codes. Operators download them as CSV; fetching them takes minutes, so the
export runs on a Celery worker while a ``pending_operations`` row
(action ``export_csv``) keeps duplicate requests out.

Files land at ``CSV_ROOT/<store>_<code>_<env>.csv``. When a worker dies
mid-export the pending row eventually expires and its cleanup callback
removes the half-written file.
"""

import csv
import re
from pathlib import Path

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coordination import PendingAction, PendingOperationTracker
from core.config import get_settings
from integrations.base import Env
from integrations.billing import BillingClient
from promotion.repository import EntityRepository
from workers.celery_app import celery_app

logger = structlog.get_logger()

CSV_FIELDS = ["code", "state", "bulk_coupon_code", "created_at", "redeemed_at", "expired_at"]


def export_path(store_code: str, code: str, env: Env | str) -> Path:
    env_value = env.value if isinstance(env, Env) else env
    return Path(get_settings().csv_root) / f"{store_code}_{code}_{env_value}.csv"


async def remove_export_files(code: str) -> None:
    """Cleanup callback: drop every export file written for ``code``."""
    # Store codes never contain "_", so the first one splits store from entity code.
    envs = "|".join(env.value for env in Env)
    pattern = re.compile(rf"[^_]+_{re.escape(code)}_(?:{envs})\.csv")
    for path in Path(get_settings().csv_root).glob(f"*_{code}_*.csv"):
        if not pattern.fullmatch(path.name):
            continue
        path.unlink(missing_ok=True)
        logger.info("exports.file_removed", path=str(path))


def register_export_cleanup(tracker: PendingOperationTracker) -> PendingOperationTracker:
    tracker.register_cleanup(PendingAction.EXPORT_CSV, remove_export_files)
    tracker.register_cleanup(PendingAction.GENERATE_CSV, remove_export_files)
    return tracker


async def run_unique_code_export(
    sessions: async_sessionmaker[AsyncSession],
    billing: BillingClient,
    tracker: PendingOperationTracker,
    *,
    store_code: str,
    code: str,
    env: str,
) -> dict:
    """Write the CSV and release the pending entry, whatever the outcome."""
    path = export_path(store_code, code, env)
    try:
        entity = await EntityRepository(sessions).get(store_code, code)
        codes = await billing.list_unique_codes(entity.store, Env(env), code)

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=CSV_FIELDS, extrasaction="ignore")
            writer.writeheader()
            for row in codes:
                writer.writerow(row)
    except Exception:
        path.unlink(missing_ok=True)
        raise
    finally:
        await tracker.stop(code)

    logger.info("exports.completed", store_code=store_code, entity_code=code, env=env, count=len(codes))
    return {"status": "success", "path": str(path), "count": len(codes)}


@celery_app.task(
    name="workers.exports.export_unique_codes",
    bind=True,
    max_retries=0,
    acks_late=True,
)
def export_unique_codes(self, store_code: str, code: str, env: str):
    """
    Export a bulk coupon's unique codes to CSV.
    Queued by ``POST /api/v1/stores/{store}/entities/{code}/exports``.
    """
    import asyncio

    from sqlalchemy.ext.asyncio import create_async_engine

    run_id = self.request.id or "manual"
    logger.info("exports.started", store_code=store_code, entity_code=code, env=env, run_id=run_id)

    async def _export():
        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            sessions = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            tracker = register_export_cleanup(PendingOperationTracker(sessions))
            return await run_unique_code_export(
                sessions,
                BillingClient(),
                tracker,
                store_code=store_code,
                code=code,
                env=env,
            )
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_export())
    except Exception as exc:
        logger.error("exports.failed", store_code=store_code, entity_code=code, env=env, error=str(exc))
        raise
