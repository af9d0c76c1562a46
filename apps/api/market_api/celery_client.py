"""Shared Celery client the API uses to enqueue settlement work.

The worker owns the task implementations; the API only needs a client
configured the same way (serializer, timezone, broker) to send them.
"""

import logging
from typing import Optional

from celery import Celery

from market_api.settings import get_settings

logger = logging.getLogger(__name__)

SETTLE_BATCH_TASK = "market_worker.tasks.settle_batch"

_celery_app: Optional[Celery] = None


def get_celery_app() -> Celery:
    """
    Get or create the singleton Celery client.

    Configured to match the worker:
    - JSON serializer
    - UTC timezone
    - Redis broker + backend
    """
    global _celery_app

    if _celery_app is None:
        settings = get_settings()

        _celery_app = Celery("market_api")
        _celery_app.conf.update(
            broker_url=settings.redis_url,
            result_backend=settings.redis_url,
            task_serializer="json",
            accept_content=["json"],
            result_serializer="json",
            timezone="UTC",
            enable_utc=True,
            task_time_limit=10 * 60,  # 10 minutes (matches worker config)
            task_soft_time_limit=8 * 60,  # 8 minutes (matches worker config)
        )

        logger.info("Initialized Celery client for market_api")

    return _celery_app
