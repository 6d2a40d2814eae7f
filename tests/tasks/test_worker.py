import asyncio
from types import SimpleNamespace

import pytest

from conftest import SUPPORT_MAPPING, Seeder
from dataprep.db.base import dispose_engine, get_session_factory, init_models
from dataprep.db.repositories import RunRepository
from dataprep.services import dispatch
from dataprep.services.dispatch import CeleryDispatcher, LocalDispatcher, get_dispatcher
from dataprep.tasks import TASK_ROUTES, create_celery_app_for_worker


class FakeCelery:
    def __init__(self) -> None:
        self.sent: list[tuple[str, list[int], str]] = []

    def send_task(self, name, args=None, queue=None):
        self.sent.append((name, args, queue))
        return SimpleNamespace(id=f"task-{len(self.sent)}")


@pytest.mark.asyncio
async def test_celery_dispatcher_routes_to_queues(monkeypatch):
    fake = FakeCelery()
    monkeypatch.setattr("dataprep.tasks.get_celery_app", lambda: fake)

    await CeleryDispatcher().dispatch_run(7)
    await CeleryDispatcher().dispatch_sync(3)

    assert fake.sent == [
        (dispatch.RUN_TASK, [7], "runs"),
        (dispatch.SYNC_TASK, [3], "sources"),
    ]


def test_get_dispatcher_follows_settings(settings_env, monkeypatch):
    assert isinstance(get_dispatcher(), LocalDispatcher)
    monkeypatch.setattr(settings_env, "run_executor", "celery")
    assert isinstance(get_dispatcher(), CeleryDispatcher)


def test_task_routes_and_limits():
    assert TASK_ROUTES[dispatch.RUN_TASK] == {"queue": "runs"}
    assert TASK_ROUTES[dispatch.SYNC_TASK] == {"queue": "sources"}

    app = create_celery_app_for_worker()
    assert app.conf.task_soft_time_limit < app.conf.task_time_limit
    assert app.conf.task_acks_late is True
    assert app.conf.worker_prefetch_multiplier == 1


@pytest.mark.asyncio
async def test_local_dispatcher_runs_in_background(session_factory, seed):
    project_id = await seed.project()
    await seed.ready_source(project_id, mapping=SUPPORT_MAPPING)
    async with session_factory() as session:
        run = await RunRepository(session).add(project_id, {})
        await session.commit()

    await LocalDispatcher().dispatch_run(run.id)
    await dispatch.drain_background_tasks(timeout=30)

    assert (await seed.run(run.id)).status == "completed"


def _seed_pending_run() -> int:
    async def main() -> int:
        await dispose_engine()
        await init_models(drop=True)
        seeder = Seeder(get_session_factory())
        project_id = await seeder.project()
        await seeder.ready_source(project_id, mapping=SUPPORT_MAPPING)
        async with get_session_factory()() as session:
            run = await RunRepository(session).add(project_id, {})
            await session.commit()
        await dispose_engine()
        return run.id

    return asyncio.run(main())


def _status(run_id: int) -> str:
    async def main() -> str:
        try:
            async with get_session_factory()() as session:
                status = await RunRepository(session).get_status(run_id)
            return status.value if status else "missing"
        finally:
            await dispose_engine()

    return asyncio.run(main())


def test_execute_processing_run_task():
    from dataprep.tasks.worker import execute_processing_run

    run_id = _seed_pending_run()

    # Calling the task directly runs it in-process, like an eager worker
    result = execute_processing_run(run_id)

    assert result == {"run_id": run_id, "status": "completed"}
    assert _status(run_id) == "completed"

    # Redelivery of the same message leaves the run alone
    assert execute_processing_run(run_id) == {"run_id": run_id, "status": "completed"}
