"""Background dispatch of processing runs and source syncs.

``LocalDispatcher`` runs work as asyncio tasks inside the API process;
``CeleryDispatcher`` hands it to workers through the broker. Both only
receive ids: the workers re-read state from the database.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any, Protocol

from dataprep.core.settings import get_settings

logger = logging.getLogger(__name__)

RUN_TASK = "dataprep.tasks.worker.execute_processing_run"
SYNC_TASK = "dataprep.tasks.worker.sync_source"

# Strong references so pending tasks are not garbage collected
_background_tasks: set[asyncio.Task[Any]] = set()


class Dispatcher(Protocol):
    async def dispatch_run(self, run_id: int) -> None: ...
    async def dispatch_sync(self, source_id: int) -> None: ...


def _log_task_result(task: asyncio.Task[Any]) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        logger.warning(f"Background task {task.get_name()} was cancelled")
    elif task.exception() is not None:
        logger.error(f"Background task {task.get_name()} failed: {task.exception()!r}")


class LocalDispatcher:
    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        _background_tasks.add(task)
        task.add_done_callback(_log_task_result)

    async def dispatch_run(self, run_id: int) -> None:
        from dataprep.services.runs import execute_run

        self._spawn(execute_run(run_id), f"run-{run_id}")

    async def dispatch_sync(self, source_id: int) -> None:
        from dataprep.services.sources import run_sync

        self._spawn(run_sync(source_id), f"sync-{source_id}")


class CeleryDispatcher:
    async def _send(self, task_name: str, object_id: int, queue: str) -> None:
        from dataprep.tasks import get_celery_app

        app = get_celery_app()
        # send_task talks to the broker synchronously
        result = await asyncio.to_thread(app.send_task, task_name, args=[object_id], queue=queue)
        logger.info(f"Queued {task_name}({object_id}) as {result.id}")

    async def dispatch_run(self, run_id: int) -> None:
        await self._send(RUN_TASK, run_id, "runs")

    async def dispatch_sync(self, source_id: int) -> None:
        await self._send(SYNC_TASK, source_id, "sources")


def get_dispatcher() -> Dispatcher:
    """FastAPI dependency selecting the executor from settings."""
    if get_settings().run_executor == "celery":
        return CeleryDispatcher()
    return LocalDispatcher()


async def drain_background_tasks(timeout: float | None = None) -> None:
    """Wait for in-process tasks to finish (shutdown and tests)."""
    if _background_tasks:
        await asyncio.wait(set(_background_tasks), timeout=timeout)
