"""Project endpoints, including the project's processing configuration."""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Response, status
from pydantic import Field

from dataprep.core.auth import get_organization_id
from dataprep.core.responses import Pagination, dump, envelope, get_pagination, paginated
from dataprep.db.dependencies import get_processing_config_service, get_project_service
from dataprep.db.models import ProcessingRun, Project
from dataprep.routers.sources import SourceOut
from dataprep.schemas import CamelModel, ProcessingSettings
from dataprep.services.processing_config import ProcessingConfigService
from dataprep.services.projects import ProjectService

router = APIRouter(prefix="/projects", tags=["projects"])

OrgId = Annotated[int, Depends(get_organization_id)]
Projects = Annotated[ProjectService, Depends(get_project_service)]
ProcessingConfigs = Annotated[ProcessingConfigService, Depends(get_processing_config_service)]


class ProjectCreate(CamelModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=2000)


class ProjectUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=2000)


class LastRunOut(CamelModel):
    id: int
    status: str
    progress: int
    created_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_orm_obj(cls, run: ProcessingRun) -> LastRunOut:
        return cls(
            id=run.id,
            status=run.status,
            progress=run.progress,
            created_at=run.created_at,
            completed_at=run.completed_at,
        )


class ProjectOut(CamelModel):
    id: int
    name: str
    description: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_orm_obj(cls, project: Project, **extra: Any) -> ProjectOut:
        return cls(
            id=project.id,
            name=project.name,
            description=project.description,
            created_at=project.created_at,
            updated_at=project.updated_at,
            **extra,
        )


class ProjectListItem(ProjectOut):
    source_count: int = 0
    last_run: LastRunOut | None = None


class ProjectDetailOut(ProjectOut):
    sources: list[SourceOut] = Field(default_factory=list)
    processing_config: ProcessingSettings | None = None


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_project(
    body: ProjectCreate, organization_id: OrgId, service: Projects
) -> dict[str, Any]:
    project = await service.create(organization_id, body.name, body.description)
    return envelope(dump(ProjectOut.from_orm_obj(project)))


@router.get("")
async def list_projects(
    organization_id: OrgId,
    service: Projects,
    pagination: Annotated[Pagination, Depends(get_pagination)],
) -> dict[str, Any]:
    summaries, total = await service.list_projects(organization_id, pagination)
    items = [
        dump(
            ProjectListItem.from_orm_obj(
                s.project,
                source_count=s.source_count,
                last_run=LastRunOut.from_orm_obj(s.last_run) if s.last_run else None,
            )
        )
        for s in summaries
    ]
    return paginated(items, total, pagination)


@router.get("/{project_id}")
async def get_project(project_id: int, organization_id: OrgId, service: Projects) -> dict[str, Any]:
    detail = await service.get(project_id, organization_id)
    out = ProjectDetailOut.from_orm_obj(
        detail.project,
        sources=[SourceOut.from_orm_obj(s) for s in detail.sources],
        processing_config=detail.processing,
    )
    return envelope(dump(out))


@router.patch("/{project_id}")
async def update_project(
    project_id: int, body: ProjectUpdate, organization_id: OrgId, service: Projects
) -> dict[str, Any]:
    project = await service.update(
        project_id, organization_id, name=body.name, description=body.description
    )
    return envelope(dump(ProjectOut.from_orm_obj(project)))


@router.delete("/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_project(project_id: int, organization_id: OrgId, service: Projects) -> Response:
    await service.delete(project_id, organization_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{project_id}/processing")
async def get_processing_config(
    project_id: int, organization_id: OrgId, service: ProcessingConfigs
) -> dict[str, Any]:
    settings = await service.get(project_id, organization_id)
    return envelope(dump(settings))


@router.put("/{project_id}/processing")
async def replace_processing_config(
    project_id: int, body: ProcessingSettings, organization_id: OrgId, service: ProcessingConfigs
) -> dict[str, Any]:
    settings = await service.replace(project_id, organization_id, body)
    return envelope(dump(settings))
