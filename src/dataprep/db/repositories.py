"""Repository implementations using SQLAlchemy async sessions.

Run and source status changes are conditional ``UPDATE ... WHERE status IN
(...)`` statements; callers learn from the returned flag whether their
transition won. A terminal write that has been applied can therefore never
be overwritten by a slower writer.
"""
from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dataprep.schemas import (
    ACTIVE_RUN_STATUSES,
    DeidentificationSettings,
    ProcessingSettings,
    QualityFilters,
    RunStatus,
    SourceStatus,
)

from .models import (
    Dataset,
    DeidentificationConfig,
    ProcessingConfig,
    ProcessingRun,
    Project,
    RunLogEvent,
    SchemaMapping,
    Source,
    utcnow,
)

_ACTIVE = [status.value for status in ACTIVE_RUN_STATUSES]


class ProjectRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    def _live(self, organization_id: int) -> Any:
        return select(Project).where(
            Project.organization_id == organization_id, Project.deleted_at.is_(None)
        )

    async def get_for_org(self, project_id: int, organization_id: int) -> Project | None:
        result = await self.session.execute(
            self._live(organization_id).where(Project.id == project_id)
        )
        return result.scalar_one_or_none()

    async def get_by_name(self, organization_id: int, name: str) -> Project | None:
        result = await self.session.execute(self._live(organization_id).where(Project.name == name))
        return result.scalar_one_or_none()

    async def list_for_org(
        self, organization_id: int, limit: int = 20, offset: int = 0
    ) -> Sequence[Project]:
        result = await self.session.execute(
            self._live(organization_id)
            .order_by(Project.updated_at.desc(), Project.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars())

    async def count_for_org(self, organization_id: int) -> int:
        result = await self.session.execute(
            select(func.count(Project.id)).where(
                Project.organization_id == organization_id, Project.deleted_at.is_(None)
            )
        )
        return int(result.scalar_one())

    async def add(self, organization_id: int, name: str, description: str | None) -> Project:
        project = Project(organization_id=organization_id, name=name, description=description)
        self.session.add(project)
        await self.session.flush()  # assign id
        return project

    async def soft_delete(self, project: Project) -> None:
        project.deleted_at = utcnow()
        await self.session.flush()


class SourceRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, source_id: int) -> Source | None:
        result = await self.session.execute(
            select(Source)
            .where(Source.id == source_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_for_org(self, source_id: int, organization_id: int) -> Source | None:
        result = await self.session.execute(
            select(Source)
            .join(Project, Source.project_id == Project.id)
            .where(
                Source.id == source_id,
                Project.organization_id == organization_id,
                Project.deleted_at.is_(None),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_by_project(
        self, project_id: int, limit: int = 20, offset: int = 0
    ) -> Sequence[Source]:
        result = await self.session.execute(
            select(Source)
            .where(Source.project_id == project_id)
            .order_by(Source.created_at.desc(), Source.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars())

    async def count_by_project(self, project_id: int) -> int:
        result = await self.session.execute(
            select(func.count(Source.id)).where(Source.project_id == project_id)
        )
        return int(result.scalar_one())

    async def list_ready(self, project_id: int) -> Sequence[Source]:
        result = await self.session.execute(
            select(Source)
            .where(Source.project_id == project_id, Source.status == SourceStatus.READY.value)
            .order_by(Source.id)
        )
        return list(result.scalars())

    async def count_ready(self, project_id: int) -> int:
        result = await self.session.execute(
            select(func.count(Source.id)).where(
                Source.project_id == project_id, Source.status == SourceStatus.READY.value
            )
        )
        return int(result.scalar_one())

    async def add(self, project_id: int, name: str, source_type: str, **fields: Any) -> Source:
        """Create a source with its empty schema mapping and de-identification config."""
        source = Source(
            project_id=project_id,
            name=name,
            type=source_type,
            status=SourceStatus.PENDING.value,
            **fields,
        )
        source.schema_mapping = SchemaMapping(mapping={})
        source.deidentification_config = DeidentificationConfig(
            enabled=False, rules=[], custom_patterns=[]
        )
        self.session.add(source)
        await self.session.flush()
        return source

    async def delete(self, source: Source) -> None:
        await self.session.delete(source)
        await self.session.flush()

    async def mark_syncing(self, source_id: int) -> bool:
        result = await self.session.execute(
            update(Source)
            .where(Source.id == source_id)
            .values(status=SourceStatus.SYNCING.value, sync_error=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def complete_sync(self, source_id: int, records: list[dict[str, Any]]) -> bool:
        now = utcnow()
        result = await self.session.execute(
            update(Source)
            .where(Source.id == source_id, Source.status == SourceStatus.SYNCING.value)
            .values(
                status=SourceStatus.READY.value,
                cached_records=records,
                record_count=len(records),
                last_sync_at=now,
                sync_error=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def fail_sync(self, source_id: int, message: str) -> bool:
        result = await self.session.execute(
            update(Source)
            .where(Source.id == source_id, Source.status == SourceStatus.SYNCING.value)
            .values(status=SourceStatus.ERROR.value, sync_error=message, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]


class SourceConfigRepository:
    """Schema mapping and de-identification configuration, one of each per source."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_mapping(self, source_id: int) -> SchemaMapping | None:
        result = await self.session.execute(
            select(SchemaMapping).where(SchemaMapping.source_id == source_id)
        )
        return result.scalar_one_or_none()

    async def replace_mapping(self, source_id: int, mapping: dict[str, str]) -> SchemaMapping:
        record = await self.get_mapping(source_id)
        if record is None:
            record = SchemaMapping(source_id=source_id)
            self.session.add(record)
        record.mapping = dict(mapping)
        await self.session.flush()
        return record

    async def set_detected_schema(self, source_id: int, detected: dict[str, str]) -> SchemaMapping:
        record = await self.get_mapping(source_id)
        if record is None:
            record = SchemaMapping(source_id=source_id, mapping={})
            self.session.add(record)
        record.detected_schema = dict(detected)
        await self.session.flush()
        return record

    async def get_deidentification(self, source_id: int) -> DeidentificationConfig | None:
        result = await self.session.execute(
            select(DeidentificationConfig).where(DeidentificationConfig.source_id == source_id)
        )
        return result.scalar_one_or_none()

    async def replace_deidentification(
        self, source_id: int, settings: DeidentificationSettings
    ) -> DeidentificationConfig:
        record = await self.get_deidentification(source_id)
        if record is None:
            record = DeidentificationConfig(source_id=source_id)
            self.session.add(record)
        record.enabled = settings.enabled
        record.rules = [rule.model_dump() for rule in settings.fields]
        record.custom_patterns = [pattern.model_dump() for pattern in settings.custom_patterns]
        await self.session.flush()
        return record

    async def set_detected_pii(
        self, source_id: int, detected: list[dict[str, Any]]
    ) -> DeidentificationConfig:
        record = await self.get_deidentification(source_id)
        if record is None:
            record = DeidentificationConfig(source_id=source_id, rules=[], custom_patterns=[])
            self.session.add(record)
        record.detected_pii = list(detected)
        await self.session.flush()
        return record


class ProcessingConfigRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, project_id: int) -> ProcessingConfig | None:
        result = await self.session.execute(
            select(ProcessingConfig).where(ProcessingConfig.project_id == project_id)
        )
        return result.scalar_one_or_none()

    async def upsert(self, project_id: int, settings: ProcessingSettings) -> ProcessingConfig:
        record = await self.get(project_id)
        if record is None:
            record = ProcessingConfig(project_id=project_id)
            self.session.add(record)
        record.output_format = settings.output_format
        record.include_metadata = settings.include_metadata
        record.chunk_size = settings.chunk_size
        record.min_length = settings.quality_filters.min_length
        record.max_length = settings.quality_filters.max_length
        await self.session.flush()
        return record

    @staticmethod
    def to_settings(record: ProcessingConfig) -> ProcessingSettings:
        return ProcessingSettings(
            output_format=record.output_format,  # type: ignore[arg-type]
            include_metadata=record.include_metadata,
            chunk_size=record.chunk_size,
            quality_filters=QualityFilters(
                min_length=record.min_length, max_length=record.max_length
            ),
        )


class RunRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, run_id: int) -> ProcessingRun | None:
        result = await self.session.execute(
            select(ProcessingRun)
            .where(ProcessingRun.id == run_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_for_org(self, run_id: int, organization_id: int) -> ProcessingRun | None:
        result = await self.session.execute(
            select(ProcessingRun)
            .join(Project, ProcessingRun.project_id == Project.id)
            .where(ProcessingRun.id == run_id, Project.organization_id == organization_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_status(self, run_id: int) -> RunStatus | None:
        result = await self.session.execute(
            select(ProcessingRun.status).where(ProcessingRun.id == run_id)
        )
        value = result.scalar_one_or_none()
        return RunStatus(value) if value is not None else None

    async def get_active(self, project_id: int) -> ProcessingRun | None:
        result = await self.session.execute(
            select(ProcessingRun)
            .where(ProcessingRun.project_id == project_id, ProcessingRun.status.in_(_ACTIVE))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def add(self, project_id: int, config: dict[str, Any]) -> ProcessingRun:
        run = ProcessingRun(
            project_id=project_id,
            status=RunStatus.PENDING.value,
            progress=0,
            config=config,
        )
        self.session.add(run)
        await self.session.flush()
        return run

    async def list_by_project(
        self, project_id: int, limit: int = 20, offset: int = 0
    ) -> Sequence[ProcessingRun]:
        result = await self.session.execute(
            select(ProcessingRun)
            .where(ProcessingRun.project_id == project_id)
            .order_by(ProcessingRun.created_at.desc(), ProcessingRun.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars())

    async def count_by_project(self, project_id: int) -> int:
        result = await self.session.execute(
            select(func.count(ProcessingRun.id)).where(ProcessingRun.project_id == project_id)
        )
        return int(result.scalar_one())

    async def latest_for_project(self, project_id: int) -> ProcessingRun | None:
        result = await self.session.execute(
            select(ProcessingRun)
            .where(ProcessingRun.project_id == project_id)
            .order_by(ProcessingRun.created_at.desc(), ProcessingRun.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_ids_by_status(
        self, statuses: Iterable[RunStatus], running_started_before: datetime | None = None
    ) -> list[int]:
        query = select(ProcessingRun.id).where(
            ProcessingRun.status.in_([status.value for status in statuses])
        )
        if running_started_before is not None:
            query = query.where(
                or_(
                    ProcessingRun.status != RunStatus.RUNNING.value,
                    ProcessingRun.started_at < running_started_before,
                )
            )
        result = await self.session.execute(query.order_by(ProcessingRun.id))
        return list(result.scalars())

    async def _transition(self, run_id: int, allowed: Iterable[str], **values: Any) -> bool:
        values.setdefault("updated_at", utcnow())
        result = await self.session.execute(
            update(ProcessingRun)
            .where(ProcessingRun.id == run_id, ProcessingRun.status.in_(list(allowed)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def mark_running(self, run_id: int) -> bool:
        return await self._transition(
            run_id,
            [RunStatus.PENDING.value],
            status=RunStatus.RUNNING.value,
            progress=0,
            started_at=utcnow(),
        )

    async def update_progress(self, run_id: int, progress: int) -> bool:
        """Raise progress while running; lower values are ignored."""
        progress = max(0, min(99, progress))
        result = await self.session.execute(
            update(ProcessingRun)
            .where(
                ProcessingRun.id == run_id,
                ProcessingRun.status == RunStatus.RUNNING.value,
                ProcessingRun.progress <= progress,
            )
            .values(progress=progress, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def mark_completed(self, run_id: int, stats: dict[str, Any]) -> bool:
        return await self._transition(
            run_id,
            [RunStatus.RUNNING.value],
            status=RunStatus.COMPLETED.value,
            progress=100,
            completed_at=utcnow(),
            stats=stats,
        )

    async def mark_failed(
        self, run_id: int, error: str, error_details: dict[str, Any] | None = None
    ) -> bool:
        return await self._transition(
            run_id,
            _ACTIVE,
            status=RunStatus.FAILED.value,
            completed_at=utcnow(),
            error=error,
            error_details=error_details,
        )

    async def mark_cancelled(self, run_id: int) -> bool:
        return await self._transition(
            run_id,
            _ACTIVE,
            status=RunStatus.CANCELLED.value,
            completed_at=utcnow(),
        )


class RunLogRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(
        self, run_id: int, level: str, message: str, stage: str | None = None
    ) -> RunLogEvent:
        event = RunLogEvent(run_id=run_id, level=level, message=message, stage=stage)
        self.session.add(event)
        await self.session.flush()
        return event

    async def list_for_run(self, run_id: int) -> Sequence[RunLogEvent]:
        result = await self.session.execute(
            select(RunLogEvent).where(RunLogEvent.run_id == run_id).order_by(RunLogEvent.id)
        )
        return list(result.scalars())


class DatasetRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_run(self, run_id: int) -> Dataset | None:
        result = await self.session.execute(select(Dataset).where(Dataset.run_id == run_id))
        return result.scalar_one_or_none()

    async def get_for_org(self, dataset_id: int, organization_id: int) -> Dataset | None:
        result = await self.session.execute(
            select(Dataset)
            .join(ProcessingRun, Dataset.run_id == ProcessingRun.id)
            .join(Project, ProcessingRun.project_id == Project.id)
            .where(Dataset.id == dataset_id, Project.organization_id == organization_id)
        )
        return result.scalar_one_or_none()

    async def add(self, run_id: int, **fields: Any) -> Dataset:
        dataset = Dataset(run_id=run_id, **fields)
        self.session.add(dataset)
        await self.session.flush()
        return dataset
