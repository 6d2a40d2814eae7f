"""Run lifecycle against a real SQLite database."""
from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from conftest import ORG, OTHER_ORG, SUPPORT_MAPPING
from dataprep.core.errors import (
    ConflictError,
    NotFoundError,
    PipelineErrorCode,
    ValidationFailedError,
)
from dataprep.core.responses import Pagination
from dataprep.db.models import ProcessingRun, utcnow
from dataprep.db.repositories import (
    DatasetRepository,
    RunLogRepository,
    RunRepository,
    SourceRepository,
)
from dataprep.pipelines.interfaces import StageResult
from dataprep.pipelines.stages import default_stages
from dataprep.schemas import DeidentificationSettings, ProcessingSettings, RunStatus
from dataprep.services.processing_config import ProcessingConfigService
from dataprep.services.runs import (
    DatabaseRunTracker,
    RunService,
    execute_run,
    reconcile_interrupted_runs,
)


async def _create_run(session_factory, project_id, dispatcher=None, organization_id=ORG):
    async with session_factory() as session:
        run = await RunService(session, dispatcher).create_run(project_id, organization_id)
        return run.id


async def _dataset(session_factory, run_id):
    async with session_factory() as session:
        return await DatasetRepository(session).get_by_run(run_id)


@pytest.mark.asyncio
async def test_create_run_snapshots_config_and_dispatches(session_factory, seed, dispatcher):
    project_id = await seed.project()
    await seed.ready_source(project_id, mapping=SUPPORT_MAPPING)
    async with session_factory() as session:
        await ProcessingConfigService(session).replace(
            project_id, ORG, ProcessingSettings(output_format="qa", chunk_size=500)
        )

    run_id = await _create_run(session_factory, project_id, dispatcher)

    run = await seed.run(run_id)
    assert run.status == "pending"
    assert run.progress == 0
    assert run.config["output_format"] == "qa"
    assert run.config["chunk_size"] == 500
    assert dispatcher.runs == [run_id]


@pytest.mark.asyncio
async def test_create_run_checks_tenant_first(session_factory, seed):
    project_id = await seed.project()
    with pytest.raises(NotFoundError):
        await _create_run(session_factory, project_id, organization_id=OTHER_ORG)
    with pytest.raises(NotFoundError):
        await _create_run(session_factory, 9999)


@pytest.mark.asyncio
async def test_create_run_requires_ready_source(session_factory, seed):
    project_id = await seed.project()
    await seed.pending_source(project_id)
    with pytest.raises(ValidationFailedError) as exc_info:
        await _create_run(session_factory, project_id)
    assert exc_info.value.code == "NO_SOURCES_CONFIGURED"
    async with session_factory() as session:
        assert await RunRepository(session).count_by_project(project_id) == 0


@pytest.mark.asyncio
async def test_second_run_conflicts_while_first_is_active(session_factory, seed):
    project_id = await seed.project()
    await seed.ready_source(project_id)
    first = await _create_run(session_factory, project_id)

    with pytest.raises(ConflictError) as exc_info:
        await _create_run(session_factory, project_id)
    assert exc_info.value.code == "RUN_ALREADY_ACTIVE"

    async with session_factory() as session:
        assert await RunRepository(session).count_by_project(project_id) == 1
    assert (await seed.run(first)).status == "pending"


@pytest.mark.asyncio
async def test_conflict_is_checked_before_sources(session_factory, seed):
    project_id = await seed.project()
    source_id = await seed.ready_source(project_id)
    await _create_run(session_factory, project_id)
    async with session_factory() as session:
        await SourceRepository(session).mark_syncing(source_id)
        await session.commit()

    with pytest.raises(ConflictError):
        await _create_run(session_factory, project_id)


@pytest.mark.asyncio
async def test_database_rejects_second_active_run(session_factory, seed):
    project_id = await seed.project()
    async with session_factory() as session:
        await RunRepository(session).add(project_id, {})
        await session.commit()
    async with session_factory() as session:
        with pytest.raises(IntegrityError):
            await RunRepository(session).add(project_id, {})


@pytest.mark.asyncio
async def test_lost_create_race_maps_to_conflict(session_factory, seed, monkeypatch):
    project_id = await seed.project()
    await seed.ready_source(project_id)
    await _create_run(session_factory, project_id)

    async def no_active(self, project_id):
        return None

    # Simulate a concurrent request that passed the pre-check
    monkeypatch.setattr(RunRepository, "get_active", no_active)
    with pytest.raises(ConflictError):
        await _create_run(session_factory, project_id)
    async with session_factory() as session:
        assert await RunRepository(session).count_by_project(project_id) == 1


@pytest.mark.asyncio
async def test_concurrent_creates_leave_one_active_run(session_factory, seed):
    project_id = await seed.project()
    await seed.ready_source(project_id)

    results = await asyncio.gather(
        *(_create_run(session_factory, project_id) for _ in range(5)),
        return_exceptions=True,
    )

    created = [r for r in results if isinstance(r, int)]
    conflicts = [r for r in results if isinstance(r, ConflictError)]
    assert len(created) == 1
    assert len(conflicts) == 4
    assert all(c.code == "RUN_ALREADY_ACTIVE" for c in conflicts)
    async with session_factory() as session:
        assert await RunRepository(session).count_by_project(project_id) == 1


@pytest.mark.asyncio
async def test_execute_run_completes_and_materializes_dataset(session_factory, seed):
    project_id = await seed.project()
    await seed.ready_source(
        project_id,
        mapping=SUPPORT_MAPPING,
        deidentification=DeidentificationSettings(enabled=True),
    )
    run_id = await _create_run(session_factory, project_id)

    status = await execute_run(run_id, session_factory=session_factory)

    assert status is RunStatus.COMPLETED
    run = await seed.run(run_id)
    assert run.status == "completed"
    assert run.progress == 100
    assert run.started_at is not None
    assert run.completed_at is not None
    assert run.stats == {
        "total_records": 5,
        "processed_records": 4,
        "pii_detected": 2,
        "pii_masked": 2,
    }

    dataset = await _dataset(session_factory, run_id)
    assert dataset is not None
    assert dataset.name == f"Dataset from Run {run_id}"
    assert dataset.format == "conversational"
    assert dataset.record_count == 2
    assert dataset.stats["unique_speakers"] == 3
    content = Path(dataset.file_path).read_text()
    assert "alice@example.com" not in content
    assert "[EMAIL]" in content and "[PHONE]" in content

    async with session_factory() as session:
        events = await RunLogRepository(session).list_for_run(run_id)
    messages = [e.message for e in events]
    assert messages[0] == "Run created"
    assert messages[1] == "Run started"
    assert messages[-1].startswith("Run completed")
    assert [e.id for e in events] == sorted(e.id for e in events)


@pytest.mark.asyncio
async def test_unmapped_ticket_source_completes(session_factory, seed):
    project_id = await seed.project()
    tickets = [
        {"id": 11, "subject": "Refund", "preview": "Where is my refund for order 1234?"},
        {"id": 12, "subject": "Login", "preview": "The login page keeps timing out."},
    ]
    await seed.ready_source(project_id, records=tickets)
    async with session_factory() as session:
        await ProcessingConfigService(session).replace(
            project_id, ORG, ProcessingSettings(output_format="json", include_metadata=False)
        )
    run_id = await _create_run(session_factory, project_id)

    assert await execute_run(run_id, session_factory=session_factory) is RunStatus.COMPLETED

    dataset = await _dataset(session_factory, run_id)
    assert dataset.record_count == 2
    written = json.loads(Path(dataset.file_path).read_text())
    assert written[0] == {
        "id": 11,
        "subject": "Refund",
        "content": "Where is my refund for order 1234?",
    }


@pytest.mark.asyncio
async def test_execute_run_only_starts_pending_runs(session_factory, seed):
    project_id = await seed.project()
    await seed.ready_source(project_id, mapping=SUPPORT_MAPPING)
    run_id = await _create_run(session_factory, project_id)

    assert await execute_run(run_id, session_factory=session_factory) is RunStatus.COMPLETED
    # A duplicate delivery finds the run terminal and does nothing
    assert await execute_run(run_id, session_factory=session_factory) is RunStatus.COMPLETED
    assert await execute_run(424242, session_factory=session_factory) is None


@pytest.mark.asyncio
async def test_cancel_before_start_prevents_execution(session_factory, seed):
    project_id = await seed.project()
    await seed.ready_source(project_id, mapping=SUPPORT_MAPPING)
    run_id = await _create_run(session_factory, project_id)

    async with session_factory() as session:
        run = await RunService(session).cancel_run(run_id, ORG)
    assert run.status == "cancelled"
    assert run.completed_at is not None

    assert await execute_run(run_id, session_factory=session_factory) is RunStatus.CANCELLED
    run = await seed.run(run_id)
    assert run.status == "cancelled"
    assert run.started_at is None
    assert await _dataset(session_factory, run_id) is None


class CancelDuringStage:
    """Stage that cancels its own run, as a user would mid-flight."""

    name = "cancel_midway"
    weight = 5

    def __init__(self, session_factory, run_id):
        self.session_factory = session_factory
        self.run_id = run_id

    async def run(self, ctx, report):
        async with self.session_factory() as session:
            await RunService(session).cancel_run(self.run_id, ORG)
        return StageResult(0, 0, "cancelled")


@pytest.mark.asyncio
async def test_cancel_mid_run_is_never_overwritten(session_factory, seed):
    project_id = await seed.project()
    await seed.ready_source(project_id, mapping=SUPPORT_MAPPING)
    run_id = await _create_run(session_factory, project_id)

    stages = default_stages()
    stages.insert(2, CancelDuringStage(session_factory, run_id))
    status = await execute_run(run_id, session_factory=session_factory, stages=stages)

    assert status is RunStatus.CANCELLED
    run = await seed.run(run_id)
    assert run.status == "cancelled"
    assert run.progress < 100
    assert await _dataset(session_factory, run_id) is None


@pytest.mark.asyncio
async def test_completion_after_cancel_is_refused(session_factory, seed):
    project_id = await seed.project()
    async with session_factory() as session:
        runs = RunRepository(session)
        run = await runs.add(project_id, {})
        assert await runs.mark_running(run.id)
        assert await runs.mark_cancelled(run.id)
        assert not await runs.mark_completed(run.id, {})
        assert not await runs.mark_failed(run.id, "late failure")
        assert not await runs.update_progress(run.id, 80)
        await session.commit()
    assert (await seed.run(run.id)).status == "cancelled"


@pytest.mark.asyncio
async def test_progress_never_decreases(session_factory, seed):
    project_id = await seed.project()
    async with session_factory() as session:
        runs = RunRepository(session)
        run = await runs.add(project_id, {})
        await runs.mark_running(run.id)
        assert await runs.update_progress(run.id, 40)
        assert not await runs.update_progress(run.id, 20)
        assert await runs.update_progress(run.id, 150)
        await session.commit()
    assert (await seed.run(run.id)).progress == 99


@pytest.mark.asyncio
async def test_failed_run_records_error_and_no_dataset(session_factory, seed):
    project_id = await seed.project()
    await seed.ready_source(project_id, records=[{"body": "hi"}], mapping={"body": "content"})
    run_id = await _create_run(session_factory, project_id)

    status = await execute_run(run_id, session_factory=session_factory)

    assert status is RunStatus.FAILED
    run = await seed.run(run_id)
    assert run.status == "failed"
    assert run.completed_at is not None
    assert run.error == "No records passed the quality filters"
    assert run.error_details["code"] == PipelineErrorCode.NO_RECORDS_PRODUCED.value
    assert run.error_details["stage"] == "generate_output"
    assert await _dataset(session_factory, run_id) is None

    async with session_factory() as session:
        events = await RunLogRepository(session).list_for_run(run_id)
    assert events[-1].level == "error"


@pytest.mark.asyncio
async def test_tracker_write_failure_fails_the_run(session_factory, seed, monkeypatch):
    project_id = await seed.project()
    await seed.ready_source(project_id, mapping=SUPPORT_MAPPING)
    run_id = await _create_run(session_factory, project_id)

    async def broken_log(self, level, message, stage=None):
        raise RuntimeError("log store unavailable")

    monkeypatch.setattr(DatabaseRunTracker, "log", broken_log)
    status = await execute_run(run_id, session_factory=session_factory)

    assert status is RunStatus.FAILED
    run = await seed.run(run_id)
    assert run.status == "failed"
    assert run.error == "Unexpected error: log store unavailable"
    assert run.error_details["code"] == PipelineErrorCode.UNKNOWN_ERROR.value
    assert run.error_details["stage"] == "load_sources"
    assert await _dataset(session_factory, run_id) is None


@pytest.mark.asyncio
async def test_cancel_terminal_run_is_rejected(session_factory, seed):
    project_id = await seed.project()
    await seed.ready_source(project_id, mapping=SUPPORT_MAPPING)
    run_id = await _create_run(session_factory, project_id)
    await execute_run(run_id, session_factory=session_factory)
    before = await seed.run(run_id)

    async with session_factory() as session:
        with pytest.raises(ValidationFailedError) as exc_info:
            await RunService(session).cancel_run(run_id, ORG)
    assert exc_info.value.code == "RUN_NOT_CANCELLABLE"
    assert exc_info.value.details == {"status": "completed"}

    after = await seed.run(run_id)
    assert after.status == "completed"
    assert after.completed_at == before.completed_at


@pytest.mark.asyncio
async def test_cancel_twice_reports_cancelled_status(session_factory, seed):
    project_id = await seed.project()
    await seed.ready_source(project_id)
    run_id = await _create_run(session_factory, project_id)

    async with session_factory() as session:
        await RunService(session).cancel_run(run_id, ORG)
    async with session_factory() as session:
        with pytest.raises(ValidationFailedError) as exc_info:
            await RunService(session).cancel_run(run_id, ORG)
    assert exc_info.value.details == {"status": "cancelled"}


@pytest.mark.asyncio
async def test_cancel_foreign_run_is_not_found(session_factory, seed):
    project_id = await seed.project()
    await seed.ready_source(project_id)
    run_id = await _create_run(session_factory, project_id)
    async with session_factory() as session:
        with pytest.raises(NotFoundError):
            await RunService(session).cancel_run(run_id, OTHER_ORG)
    assert (await seed.run(run_id)).status == "pending"


@pytest.mark.asyncio
async def test_new_run_allowed_after_terminal(session_factory, seed):
    project_id = await seed.project()
    await seed.ready_source(project_id, mapping=SUPPORT_MAPPING)
    first = await _create_run(session_factory, project_id)
    await execute_run(first, session_factory=session_factory)

    second = await _create_run(session_factory, project_id)
    async with session_factory() as session:
        items, total = await RunService(session).list_runs(
            project_id, ORG, Pagination(page=1, page_size=10)
        )
    assert total == 2
    assert [r.id for r in items] == [second, first]


@pytest.mark.asyncio
async def test_run_dataset_missing_until_completed(session_factory, seed):
    project_id = await seed.project()
    await seed.ready_source(project_id, mapping=SUPPORT_MAPPING)
    run_id = await _create_run(session_factory, project_id)
    async with session_factory() as session:
        with pytest.raises(NotFoundError):
            await RunService(session).get_run_dataset(run_id, ORG)

    await execute_run(run_id, session_factory=session_factory)
    async with session_factory() as session:
        dataset = await RunService(session).get_run_dataset(run_id, ORG)
    assert dataset.run_id == run_id


@pytest.mark.asyncio
async def test_reconcile_fails_interrupted_runs(session_factory, seed):
    project_a = await seed.project(name="a")
    project_b = await seed.project(name="b")
    async with session_factory() as session:
        runs = RunRepository(session)
        running = await runs.add(project_a, {})
        await runs.mark_running(running.id)
        pending = await runs.add(project_b, {})
        await session.commit()

    failed = await reconcile_interrupted_runs(
        [RunStatus.RUNNING], session_factory=session_factory
    )

    assert failed == [running.id]
    run = await seed.run(running.id)
    assert run.status == "failed"
    assert run.error_details["code"] == "PROCESS_INTERRUPTED"
    assert (await seed.run(pending.id)).status == "pending"


@pytest.mark.asyncio
async def test_reconcile_includes_pending_under_local_executor(session_factory, seed):
    project_id = await seed.project()
    async with session_factory() as session:
        pending = await RunRepository(session).add(project_id, {})
        await session.commit()

    assert await reconcile_interrupted_runs(session_factory=session_factory) == [pending.id]


@pytest.mark.asyncio
async def test_reconcile_spares_live_celery_runs(session_factory, seed, settings_env, monkeypatch):
    monkeypatch.setattr(settings_env, "run_executor", "celery")
    fresh_project = await seed.project(name="fresh")
    stale_project = await seed.project(name="stale")
    queued_project = await seed.project(name="queued")
    long_ago = utcnow() - timedelta(seconds=settings_env.run_time_limit_seconds + 60)
    async with session_factory() as session:
        runs = RunRepository(session)
        fresh = await runs.add(fresh_project, {})
        await runs.mark_running(fresh.id)
        stale = await runs.add(stale_project, {})
        await runs.mark_running(stale.id)
        queued = await runs.add(queued_project, {})
        await session.execute(
            update(ProcessingRun)
            .where(ProcessingRun.id == stale.id)
            .values(started_at=long_ago)
        )
        await session.commit()

    failed = await reconcile_interrupted_runs(session_factory=session_factory)

    assert failed == [stale.id]
    assert (await seed.run(fresh.id)).status == "running"
    assert (await seed.run(queued.id)).status == "pending"
    assert (await seed.run(stale.id)).error_details["code"] == "PROCESS_INTERRUPTED"
