"""Celery application configuration."""

from celery import Celery

from market_worker.settings import get_settings

settings = get_settings()

celery_app = Celery(
    "market_worker",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=10 * 60,  # 10 minutes
    task_soft_time_limit=8 * 60,  # 8 minutes
    beat_schedule={
        "reconcile-open-batches": {
            "task": "market_worker.tasks.reconcile_open_batches",
            "schedule": settings.reconcile_interval_seconds,
            "kwargs": {"limit": settings.reconcile_batch_limit},
        },
        "cleanup-expired-download-tokens": {
            "task": "market_worker.tasks.cleanup_expired_download_tokens",
            "schedule": settings.token_cleanup_interval_seconds,
        },
    },
)

# Import tasks to register them with Celery
# This must be done after celery_app is created
from market_worker import tasks  # noqa: F401, E402
