"""Dataset read and export endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query
from fastapi.responses import FileResponse, Response

from dataprep.core.auth import get_organization_id
from dataprep.core.responses import dump, envelope
from dataprep.db.dependencies import get_dataset_service
from dataprep.db.models import Dataset
from dataprep.schemas import CamelModel, DatasetStats, OutputFormat
from dataprep.services.datasets import DatasetService

router = APIRouter(prefix="/datasets", tags=["datasets"])

OrgId = Annotated[int, Depends(get_organization_id)]
Datasets = Annotated[DatasetService, Depends(get_dataset_service)]


class DatasetOut(CamelModel):
    id: int
    run_id: int
    name: str
    format: str
    file_size: int | None = None
    record_count: int
    stats: DatasetStats | None = None
    created_at: datetime | None = None

    @classmethod
    def from_orm_obj(cls, dataset: Dataset) -> DatasetOut:
        return cls(
            id=dataset.id,
            run_id=dataset.run_id,
            name=dataset.name,
            format=dataset.format,
            file_size=dataset.file_size,
            record_count=dataset.record_count,
            stats=DatasetStats.model_validate(dataset.stats) if dataset.stats else None,
            created_at=dataset.created_at,
        )


@router.get("/{dataset_id}")
async def get_dataset(dataset_id: int, organization_id: OrgId, service: Datasets) -> dict[str, Any]:
    dataset = await service.get(dataset_id, organization_id)
    return envelope(dump(DatasetOut.from_orm_obj(dataset)))


@router.get("/{dataset_id}/preview")
async def preview_dataset(
    dataset_id: int,
    organization_id: OrgId,
    service: Datasets,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
) -> dict[str, Any]:
    dataset, records = await service.preview(dataset_id, organization_id, limit)
    return envelope(
        {"format": dataset.format, "totalRecords": dataset.record_count, "records": records}
    )


@router.get("/{dataset_id}/stats")
async def dataset_stats(dataset_id: int, organization_id: OrgId, service: Datasets) -> dict[str, Any]:
    dataset = await service.get(dataset_id, organization_id)
    stats = DatasetStats.model_validate(dataset.stats or {})
    return envelope({"recordCount": dataset.record_count, **dump(stats)})


@router.get("/{dataset_id}/download")
async def download_dataset(
    dataset_id: int, organization_id: OrgId, service: Datasets
) -> FileResponse:
    path, media_type, filename = await service.download(dataset_id, organization_id)
    return FileResponse(path, media_type=media_type, filename=filename)


async def _export(
    service: DatasetService, dataset_id: int, organization_id: int, output_format: OutputFormat
) -> Response:
    body, media_type, filename = await service.export(dataset_id, organization_id, output_format)
    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/{dataset_id}/export")
async def export_conversational(
    dataset_id: int, organization_id: OrgId, service: Datasets
) -> Response:
    return await _export(service, dataset_id, organization_id, "conversational")


@router.get("/{dataset_id}/export/qa")
async def export_qa(dataset_id: int, organization_id: OrgId, service: Datasets) -> Response:
    return await _export(service, dataset_id, organization_id, "qa")


@router.get("/{dataset_id}/export/json")
async def export_json(dataset_id: int, organization_id: OrgId, service: Datasets) -> Response:
    return await _export(service, dataset_id, organization_id, "json")
