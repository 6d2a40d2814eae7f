"""Background worker tasks for dataprep.

Start with ``celery -A dataprep.tasks.worker worker -Q runs,sources``.
Tasks receive ids only and re-read everything from the database.
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from celery.exceptions import SoftTimeLimitExceeded
from celery.utils.log import get_task_logger

from dataprep.core.errors import PipelineErrorCode, StageError
from dataprep.db.base import dispose_engine, get_session_factory
from dataprep.db.repositories import RunLogRepository, RunRepository
from dataprep.services.runs import execute_run
from dataprep.services.sources import run_sync
from dataprep.tasks import create_celery_app_for_worker

logger = get_task_logger(__name__)

T = TypeVar("T")

# Create Celery app for worker
app = create_celery_app_for_worker()


def _run_async(factory: Callable[[], Awaitable[T]]) -> T:
    """Run a coroutine in a fresh event loop, disposing pooled connections after."""

    async def _main() -> T:
        try:
            return await factory()
        finally:
            # Pooled connections are bound to this loop
            await dispose_engine()

    return asyncio.run(_main())


async def _fail_timed_out_run(run_id: int) -> None:
    error = StageError(PipelineErrorCode.PROCESS_INTERRUPTED, "Run exceeded the worker time limit")
    async with get_session_factory()() as session:
        if await RunRepository(session).mark_failed(run_id, error.message, error.to_dict()):
            await RunLogRepository(session).append(run_id, "error", error.message)
        await session.commit()


@app.task(name="dataprep.tasks.worker.execute_processing_run")  # type: ignore[misc]
def execute_processing_run(run_id: int) -> dict[str, Any]:
    """Execute one processing run.

    Not retried: a run that started once has already moved past ``pending``
    and the conditional start would refuse a second attempt anyway.
    """
    logger.info(f"Executing run {run_id}")
    try:
        status = _run_async(lambda: execute_run(run_id))
    except SoftTimeLimitExceeded:
        logger.error(f"Run {run_id} timed out")
        _run_async(lambda: _fail_timed_out_run(run_id))
        return {"run_id": run_id, "status": "failed", "error": "timeout"}
    return {"run_id": run_id, "status": status.value if status else None}


@app.task(  # type: ignore[misc]
    name="dataprep.tasks.worker.sync_source",
    autoretry_for=(OSError,),
    retry_kwargs={"max_retries": 3, "countdown": 30},
    retry_backoff=True,
)
def sync_source(source_id: int) -> dict[str, Any]:
    """Fetch records for a source that is ``syncing``."""
    logger.info(f"Syncing source {source_id}")
    status = _run_async(lambda: run_sync(source_id))
    return {"source_id": source_id, "status": status.value if status else None}
