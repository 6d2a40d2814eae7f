"""Processing run endpoints: create, query, logs, dataset and cancellation."""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Response, status

from dataprep.core.auth import get_organization_id
from dataprep.core.responses import Pagination, dump, envelope, get_pagination, paginated
from dataprep.db.dependencies import get_run_service
from dataprep.db.models import ProcessingRun, RunLogEvent
from dataprep.routers.datasets import DatasetOut
from dataprep.schemas import CamelModel, ProcessingSettings, RunStats
from dataprep.services.runs import RunService

router = APIRouter(tags=["runs"])

OrgId = Annotated[int, Depends(get_organization_id)]
Runs = Annotated[RunService, Depends(get_run_service)]


class RunStatusOut(CamelModel):
    id: int
    status: str
    progress: int
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_orm_obj(cls, run: ProcessingRun) -> RunStatusOut:
        return cls(
            id=run.id,
            status=run.status,
            progress=run.progress,
            error=run.error,
            started_at=run.started_at,
            completed_at=run.completed_at,
            updated_at=run.updated_at,
        )


class RunOut(CamelModel):
    id: int
    project_id: int
    status: str
    progress: int
    config: ProcessingSettings
    stats: RunStats | None = None
    error: str | None = None
    error_details: dict[str, Any] | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_orm_obj(cls, run: ProcessingRun) -> RunOut:
        return cls(
            id=run.id,
            project_id=run.project_id,
            status=run.status,
            progress=run.progress,
            config=ProcessingSettings.model_validate(run.config or {}),
            stats=RunStats.model_validate(run.stats) if run.stats else None,
            error=run.error,
            error_details=run.error_details,
            started_at=run.started_at,
            completed_at=run.completed_at,
            created_at=run.created_at,
            updated_at=run.updated_at,
        )


class RunLogOut(CamelModel):
    id: int
    level: str
    stage: str | None = None
    message: str
    created_at: datetime | None = None

    @classmethod
    def from_orm_obj(cls, event: RunLogEvent) -> RunLogOut:
        return cls(
            id=event.id,
            level=event.level,
            stage=event.stage,
            message=event.message,
            created_at=event.created_at,
        )


@router.post("/projects/{project_id}/runs", status_code=status.HTTP_201_CREATED)
async def create_run(project_id: int, organization_id: OrgId, service: Runs) -> dict[str, Any]:
    run = await service.create_run(project_id, organization_id)
    return envelope(dump(RunOut.from_orm_obj(run)))


@router.get("/projects/{project_id}/runs")
async def list_runs(
    project_id: int,
    organization_id: OrgId,
    service: Runs,
    pagination: Annotated[Pagination, Depends(get_pagination)],
) -> dict[str, Any]:
    items, total = await service.list_runs(project_id, organization_id, pagination)
    return paginated([dump(RunOut.from_orm_obj(r)) for r in items], total, pagination)


@router.get("/runs/{run_id}")
async def get_run(run_id: int, organization_id: OrgId, service: Runs) -> dict[str, Any]:
    run = await service.get_run(run_id, organization_id)
    return envelope(dump(RunOut.from_orm_obj(run)))


@router.get("/runs/{run_id}/status")
async def get_run_status(run_id: int, organization_id: OrgId, service: Runs) -> dict[str, Any]:
    run = await service.get_run_status(run_id, organization_id)
    return envelope(dump(RunStatusOut.from_orm_obj(run)))


@router.get("/runs/{run_id}/logs")
async def get_run_logs(run_id: int, organization_id: OrgId, service: Runs) -> dict[str, Any]:
    events = await service.get_run_logs(run_id, organization_id)
    return envelope([dump(RunLogOut.from_orm_obj(e)) for e in events])


@router.get("/runs/{run_id}/dataset")
async def get_run_dataset(run_id: int, organization_id: OrgId, service: Runs) -> dict[str, Any]:
    dataset = await service.get_run_dataset(run_id, organization_id)
    return envelope(dump(DatasetOut.from_orm_obj(dataset)))


@router.post("/runs/{run_id}/cancel", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_run(run_id: int, organization_id: OrgId, service: Runs) -> Response:
    await service.cancel_run(run_id, organization_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
