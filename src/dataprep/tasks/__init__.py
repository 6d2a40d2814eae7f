"""Task queue initialization for dataprep.

Celery with Redis as broker and result backend. Processing runs go to the
``runs`` queue and source syncs to the ``sources`` queue so a long pipeline
never delays a sync.
"""
from __future__ import annotations

import logging
from typing import Any

from celery import Celery

from dataprep.core.settings import get_settings

logger = logging.getLogger(__name__)

TASK_ROUTES = {
    "dataprep.tasks.worker.execute_processing_run": {"queue": "runs"},
    "dataprep.tasks.worker.sync_source": {"queue": "sources"},
}

# Global Celery app instance
_celery_app: Celery | None = None


def _base_config() -> dict[str, Any]:
    return {
        "task_serializer": "json",
        "accept_content": ["json"],
        "result_serializer": "json",
        "timezone": "UTC",
        "enable_utc": True,
        # One task at a time per worker process; acknowledge after completion
        "worker_prefetch_multiplier": 1,
        "task_acks_late": True,
        "result_expires": 3600,
        "task_routes": TASK_ROUTES,
    }


def get_celery_app() -> Celery:
    """Get or create the Celery application used by the API to enqueue work."""
    global _celery_app

    if _celery_app is None:
        settings = get_settings()
        _celery_app = Celery(
            "dataprep",
            broker=settings.redis_url,
            backend=settings.redis_url,
            include=["dataprep.tasks.worker"],
        )
        _celery_app.conf.update(_base_config())
        logger.info("Celery application initialized with Redis broker")

    return _celery_app


def create_celery_app_for_worker() -> Celery:
    """Create a Celery app instance specifically for worker processes."""
    settings = get_settings()

    app = Celery(
        "dataprep_worker",
        broker=settings.redis_url,
        backend=settings.redis_url,
        include=["dataprep.tasks.worker"],
    )
    app.conf.update(
        _base_config(),
        # Runs report their own progress; hard limit leaves room for cleanup
        task_time_limit=settings.run_time_limit_seconds,
        task_soft_time_limit=settings.run_time_limit_seconds - 300,
    )
    return app
