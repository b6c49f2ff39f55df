"""
Celery Application Configuration
"""

from celery import Celery

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "offerops",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.exports"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.exports.*": {"queue": "exports"},
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
