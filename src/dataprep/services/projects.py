"""Project management scoped to the caller's organization."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dataprep.core.errors import ConflictError, NotFoundError
from dataprep.core.responses import Pagination
from dataprep.db.models import ProcessingRun, Project, Source
from dataprep.db.repositories import (
    ProcessingConfigRepository,
    ProjectRepository,
    RunRepository,
    SourceRepository,
)
from dataprep.schemas import ProcessingSettings

logger = logging.getLogger(__name__)

# Upper bound of sources embedded in a project detail view
DETAIL_SOURCE_LIMIT = 100


@dataclass(slots=True)
class ProjectSummary:
    project: Project
    source_count: int
    last_run: ProcessingRun | None


@dataclass(slots=True)
class ProjectDetail:
    project: Project
    sources: list[Source]
    processing: ProcessingSettings


def _name_taken() -> ConflictError:
    return ConflictError("Project with this name already exists", code="PROJECT_NAME_EXISTS")


class ProjectService:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.projects = ProjectRepository(session)
        self.sources = SourceRepository(session)
        self.configs = ProcessingConfigRepository(session)
        self.runs = RunRepository(session)

    async def require(self, project_id: int, organization_id: int) -> Project:
        project = await self.projects.get_for_org(project_id, organization_id)
        if project is None:
            raise NotFoundError("Project")
        return project

    async def create(
        self, organization_id: int, name: str, description: str | None = None
    ) -> Project:
        if await self.projects.get_by_name(organization_id, name) is not None:
            raise _name_taken()
        try:
            project = await self.projects.add(organization_id, name, description)
            await self.configs.upsert(project.id, ProcessingSettings())
            await self.session.commit()
        except IntegrityError as err:
            await self.session.rollback()
            raise _name_taken() from err
        logger.info(f"Created project {project.id} for organization {organization_id}")
        return project

    async def list_projects(
        self, organization_id: int, pagination: Pagination
    ) -> tuple[list[ProjectSummary], int]:
        projects = await self.projects.list_for_org(
            organization_id, limit=pagination.page_size, offset=pagination.offset
        )
        summaries = [
            ProjectSummary(
                project=project,
                source_count=await self.sources.count_by_project(project.id),
                last_run=await self.runs.latest_for_project(project.id),
            )
            for project in projects
        ]
        return summaries, await self.projects.count_for_org(organization_id)

    async def get(self, project_id: int, organization_id: int) -> ProjectDetail:
        project = await self.require(project_id, organization_id)
        sources = await self.sources.list_by_project(project.id, limit=DETAIL_SOURCE_LIMIT)
        record = await self.configs.get(project.id)
        processing = (
            ProcessingConfigRepository.to_settings(record) if record else ProcessingSettings()
        )
        return ProjectDetail(project=project, sources=list(sources), processing=processing)

    async def update(
        self,
        project_id: int,
        organization_id: int,
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> Project:
        project = await self.require(project_id, organization_id)
        if name is not None and name != project.name:
            if await self.projects.get_by_name(organization_id, name) is not None:
                raise _name_taken()
            project.name = name
        if description is not None:
            project.description = description
        try:
            await self.session.commit()
        except IntegrityError as err:
            await self.session.rollback()
            raise _name_taken() from err
        return project

    async def delete(self, project_id: int, organization_id: int) -> None:
        project = await self.require(project_id, organization_id)
        await self.projects.soft_delete(project)
        await self.session.commit()
        logger.info(f"Soft-deleted project {project_id}")
