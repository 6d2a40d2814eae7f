"""Processing run lifecycle: creation, execution, cancellation and queries.

State machine::

    pending -> running -> completed
    pending|running -> failed
    pending|running -> cancelled

Every transition is a conditional update (see ``RunRepository``), so the
first terminal write wins and is never overwritten.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dataprep.core.errors import (
    ConflictError,
    InternalError,
    NotFoundError,
    PipelineErrorCode,
    StageError,
    ValidationFailedError,
)
from dataprep.core.responses import Pagination
from dataprep.core.settings import get_settings
from dataprep.db.base import get_session_factory
from dataprep.db.models import Dataset, ProcessingRun, RunLogEvent, utcnow
from dataprep.db.repositories import (
    DatasetRepository,
    ProcessingConfigRepository,
    ProjectRepository,
    RunLogRepository,
    RunRepository,
    SourceRepository,
)
from dataprep.pipelines.interfaces import PipelineContext, SourceInput, Stage
from dataprep.pipelines.runner import ProcessingPipeline
from dataprep.schemas import LogLevel, ProcessingSettings, RunStatus
from dataprep.services.datasets import DatasetMaterializer
from dataprep.services.dispatch import Dispatcher
from dataprep.services.source_config import settings_from_record

logger = logging.getLogger(__name__)


class RunService:
    """Request-scoped run operations for one session."""

    def __init__(self, session: AsyncSession, dispatcher: Dispatcher | None = None) -> None:
        self.session = session
        self.dispatcher = dispatcher
        self.projects = ProjectRepository(session)
        self.sources = SourceRepository(session)
        self.configs = ProcessingConfigRepository(session)
        self.runs = RunRepository(session)
        self.logs = RunLogRepository(session)
        self.datasets = DatasetRepository(session)

    async def _require_project(self, project_id: int, organization_id: int) -> None:
        if await self.projects.get_for_org(project_id, organization_id) is None:
            raise NotFoundError("Project")

    async def _require_run(self, run_id: int, organization_id: int) -> ProcessingRun:
        run = await self.runs.get_for_org(run_id, organization_id)
        if run is None:
            raise NotFoundError("Run")
        return run

    async def create_run(self, project_id: int, organization_id: int) -> ProcessingRun:
        await self._require_project(project_id, organization_id)

        if await self.runs.get_active(project_id) is not None:
            raise ConflictError(
                "A processing run is already active for this project", code="RUN_ALREADY_ACTIVE"
            )
        if await self.sources.count_ready(project_id) == 0:
            raise ValidationFailedError(
                "No ready sources configured for this project", code="NO_SOURCES_CONFIGURED"
            )

        record = await self.configs.get(project_id)
        settings = (
            ProcessingConfigRepository.to_settings(record) if record else ProcessingSettings()
        )
        try:
            run = await self.runs.add(project_id, settings.model_dump())
            await self.logs.append(run.id, "info", "Run created")
            await self.session.commit()
        except IntegrityError as err:
            # Lost a race against a concurrent create on the active-run index
            await self.session.rollback()
            raise ConflictError(
                "A processing run is already active for this project", code="RUN_ALREADY_ACTIVE"
            ) from err

        logger.info(f"Created run {run.id} for project {project_id}")
        if self.dispatcher is not None:
            await self._dispatch(run)
        return run

    async def _dispatch(self, run: ProcessingRun) -> None:
        assert self.dispatcher is not None
        try:
            await self.dispatcher.dispatch_run(run.id)
        except Exception as err:
            logger.exception(f"Could not dispatch run {run.id}")
            error = StageError(PipelineErrorCode.UNKNOWN_ERROR, f"Could not schedule run: {err}")
            await self.runs.mark_failed(run.id, error.message, error.to_dict())
            await self.logs.append(run.id, "error", error.message)
            await self.session.commit()
            raise InternalError("Run could not be scheduled", code="RUN_DISPATCH_FAILED") from err

    async def cancel_run(self, run_id: int, organization_id: int) -> ProcessingRun:
        run = await self._require_run(run_id, organization_id)
        # rollback expires loaded rows, so only plain values are read after it
        run_id, loaded_status = run.id, str(run.status)
        if not await self.runs.mark_cancelled(run_id):
            await self.session.rollback()
            current = await self.runs.get_status(run_id)
            status = current.value if current else loaded_status
            raise ValidationFailedError(
                f"Run cannot be cancelled in status '{status}'",
                code="RUN_NOT_CANCELLABLE",
                details={"status": status},
            )
        await self.logs.append(run_id, "warn", "Run cancelled by user")
        await self.session.commit()
        logger.info(f"Run {run_id} cancelled")
        refreshed = await self.runs.get(run_id)
        assert refreshed is not None
        return refreshed

    async def get_run(self, run_id: int, organization_id: int) -> ProcessingRun:
        return await self._require_run(run_id, organization_id)

    async def get_run_status(self, run_id: int, organization_id: int) -> ProcessingRun:
        """Same lookup as ``get_run``; callers render the compact status view."""
        return await self._require_run(run_id, organization_id)

    async def list_runs(
        self, project_id: int, organization_id: int, pagination: Pagination
    ) -> tuple[list[ProcessingRun], int]:
        await self._require_project(project_id, organization_id)
        items = await self.runs.list_by_project(
            project_id, limit=pagination.page_size, offset=pagination.offset
        )
        return list(items), await self.runs.count_by_project(project_id)

    async def get_run_logs(self, run_id: int, organization_id: int) -> list[RunLogEvent]:
        run = await self._require_run(run_id, organization_id)
        return list(await self.logs.list_for_run(run.id))

    async def get_run_dataset(self, run_id: int, organization_id: int) -> Dataset:
        run = await self._require_run(run_id, organization_id)
        dataset = await self.datasets.get_by_run(run.id)
        if dataset is None:
            raise NotFoundError("Dataset")
        return dataset


class DatabaseRunTracker:
    """Persists pipeline progress and log events, one short transaction per write."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], run_id: int) -> None:
        self.session_factory = session_factory
        self.run_id = run_id

    async def progress(self, value: int) -> None:
        async with self.session_factory() as session:
            await RunRepository(session).update_progress(self.run_id, value)
            await session.commit()

    async def log(self, level: LogLevel, message: str, stage: str | None = None) -> None:
        async with self.session_factory() as session:
            await RunLogRepository(session).append(self.run_id, level, message, stage)
            await session.commit()

    async def is_cancelled(self) -> bool:
        """True once the run has left ``running`` by any other writer."""
        async with self.session_factory() as session:
            status = await RunRepository(session).get_status(self.run_id)
        return status is not RunStatus.RUNNING


async def _build_context(session: AsyncSession, run: ProcessingRun) -> PipelineContext:
    sources = await SourceRepository(session).list_ready(run.project_id)
    inputs: list[SourceInput] = []
    for source in sources:
        mapping = source.schema_mapping.mapping if source.schema_mapping else {}
        inputs.append(
            SourceInput(
                id=source.id,
                name=source.name,
                type=source.type,
                records=list(source.cached_records or []),
                mapping=dict(mapping or {}),
                deidentification=settings_from_record(source.deidentification_config),
            )
        )
    return PipelineContext(
        run_id=run.id,
        project_id=run.project_id,
        settings=ProcessingSettings.model_validate(run.config or {}),
        sources=inputs,
        output_dir=Path(get_settings().dataset_dir),
    )


async def _fail(
    factory: async_sessionmaker[AsyncSession], run_id: int, error: StageError
) -> RunStatus | None:
    async with factory() as session:
        runs = RunRepository(session)
        if await runs.mark_failed(run_id, error.message, error.to_dict()):
            await RunLogRepository(session).append(run_id, "error", f"Run failed: {error.message}")
        await session.commit()
        return await runs.get_status(run_id)


def _discard_output(ctx: PipelineContext) -> None:
    if ctx.output and ctx.output.file_path:
        Path(ctx.output.file_path).unlink(missing_ok=True)


async def execute_run(
    run_id: int,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    stages: list[Stage] | None = None,
) -> RunStatus | None:
    """Drive one run from ``pending`` to a terminal state.

    Returns the run's final status, or None if the run does not exist. A run
    that is no longer pending (cancelled before pickup, or started by
    another worker) is left untouched.
    """
    factory = session_factory or get_session_factory()

    async with factory() as session:
        runs = RunRepository(session)
        if not await runs.mark_running(run_id):
            await session.rollback()
            status = await runs.get_status(run_id)
            logger.info(f"Run {run_id} not started (status: {status.value if status else 'missing'})")
            return status
        await RunLogRepository(session).append(run_id, "info", "Run started")
        await session.commit()

        run = await runs.get(run_id)
        assert run is not None
        prepare_error: StageError | None = None
        try:
            ctx = await _build_context(session, run)
        except Exception as err:
            logger.exception(f"Run {run_id}: could not prepare pipeline input")
            prepare_error = StageError.from_exception(err, "prepare")

    if prepare_error is not None:
        return await _fail(factory, run_id, prepare_error)

    outcome = await ProcessingPipeline(DatabaseRunTracker(factory, run_id), stages).run(ctx)

    if outcome.status is RunStatus.FAILED:
        assert outcome.error is not None
        _discard_output(ctx)
        return await _fail(factory, run_id, outcome.error)

    if outcome.status is RunStatus.CANCELLED:
        _discard_output(ctx)
        async with factory() as session:
            await RunLogRepository(session).append(run_id, "warn", "Run stopped; output discarded")
            await session.commit()
        logger.info(f"Run {run_id} stopped after cancellation")
        return RunStatus.CANCELLED

    if ctx.output is None:
        return await _fail(
            factory,
            run_id,
            StageError(PipelineErrorCode.NO_RECORDS_PRODUCED, "Pipeline produced no output"),
        )

    async with factory() as session:
        runs = RunRepository(session)
        try:
            if await runs.mark_completed(run_id, ctx.stats.model_dump()):
                run = await runs.get(run_id)
                assert run is not None
                await DatasetMaterializer(session).materialize(run, ctx.output)
                await RunLogRepository(session).append(
                    run_id, "info", f"Run completed with {ctx.output.record_count} records"
                )
                await session.commit()
                logger.info(f"Run {run_id} completed")
                return RunStatus.COMPLETED
            await session.rollback()
        except SQLAlchemyError as err:
            await session.rollback()
            _discard_output(ctx)
            return await _fail(factory, run_id, StageError.from_exception(err, "complete"))

        # The completing update lost to a concurrent cancel
        _discard_output(ctx)
        status = await runs.get_status(run_id)
        logger.info(f"Run {run_id} finished but is {status.value if status else 'missing'}")
        return status


async def reconcile_interrupted_runs(
    statuses: list[RunStatus] | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> list[int]:
    """Fail runs whose executor died with them.

    Under the local executor both ``pending`` and ``running`` runs belong to
    the previous process; with Celery, queued ``pending`` runs are still
    owned by the broker and left alone. Celery workers may also still be
    executing ``running`` runs, so only runs started longer ago than the
    worker hard time limit are failed.
    """
    settings = get_settings()
    if statuses is None:
        statuses = [RunStatus.RUNNING]
        if settings.run_executor == "local":
            statuses.append(RunStatus.PENDING)
    started_before = None
    if settings.run_executor == "celery":
        started_before = utcnow() - timedelta(seconds=settings.run_time_limit_seconds)

    factory = session_factory or get_session_factory()
    failed: list[int] = []
    async with factory() as session:
        runs = RunRepository(session)
        logs = RunLogRepository(session)
        for run_id in await runs.list_ids_by_status(statuses, started_before):
            error = StageError(
                PipelineErrorCode.PROCESS_INTERRUPTED,
                "Run was interrupted before it finished",
            )
            if await runs.mark_failed(run_id, error.message, error.to_dict()):
                await logs.append(run_id, "error", error.message)
                failed.append(run_id)
        await session.commit()
    if failed:
        logger.warning(f"Marked {len(failed)} interrupted runs as failed: {failed}")
    return failed

