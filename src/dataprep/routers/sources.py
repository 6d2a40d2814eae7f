"""Source endpoints: registry, sync, preview, schema and de-identification config."""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile, status
from pydantic import Field, SecretStr

from dataprep.core.auth import get_organization_id
from dataprep.core.responses import Pagination, dump, envelope, get_pagination, paginated
from dataprep.db.dependencies import get_source_config_service, get_source_service
from dataprep.db.models import DeidentificationConfig, SchemaMapping, Source
from dataprep.schemas import (
    CamelModel,
    CustomPattern,
    DeidentificationRule,
    DeidentificationSettings,
    DetectedPii,
    TeamworkDataType,
)
from dataprep.services.source_config import SourceConfigService, settings_from_record
from dataprep.services.sources import SourceService

router = APIRouter(tags=["sources"])

OrgId = Annotated[int, Depends(get_organization_id)]
Sources = Annotated[SourceService, Depends(get_source_service)]
SourceConfigs = Annotated[SourceConfigService, Depends(get_source_config_service)]


class SourceOut(CamelModel):
    id: int
    project_id: int
    name: str
    type: str
    status: str
    file_name: str | None = None
    file_size: int | None = None
    file_type: str | None = None
    domain: str | None = None
    data_types: list[str] | None = None
    has_credential: bool = False
    record_count: int | None = None
    last_sync_at: datetime | None = None
    sync_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_orm_obj(cls, source: Source) -> SourceOut:
        return cls(
            id=source.id,
            project_id=source.project_id,
            name=source.name,
            type=source.type,
            status=source.status,
            file_name=source.file_name,
            file_size=source.file_size,
            file_type=source.file_type,
            domain=source.remote_domain,
            data_types=source.data_types,
            has_credential=source.credential_ciphertext is not None,
            record_count=source.record_count,
            last_sync_at=source.last_sync_at,
            sync_error=source.sync_error,
            created_at=source.created_at,
            updated_at=source.updated_at,
        )


class TeamworkSourceCreate(CamelModel):
    project_id: int
    name: str = Field(min_length=1, max_length=255)
    api_key: SecretStr
    domain: str = Field(min_length=1, max_length=255)
    data_types: list[TeamworkDataType] = Field(min_length=1)


class SourceUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)


class SchemaMappingUpdate(CamelModel):
    mapping: dict[str, str]


class SchemaMappingOut(CamelModel):
    source_id: int
    mapping: dict[str, str]
    detected_schema: dict[str, str] | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_orm_obj(cls, record: SchemaMapping) -> SchemaMappingOut:
        return cls(
            source_id=record.source_id,
            mapping=record.mapping or {},
            detected_schema=record.detected_schema,
            updated_at=record.updated_at,
        )


class DeidentificationOut(CamelModel):
    source_id: int
    enabled: bool
    fields: list[DeidentificationRule]
    custom_patterns: list[CustomPattern]
    detected_pii: list[DetectedPii] | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_orm_obj(cls, record: DeidentificationConfig) -> DeidentificationOut:
        settings = settings_from_record(record)
        return cls(
            source_id=record.source_id,
            enabled=settings.enabled,
            fields=settings.fields,
            custom_patterns=settings.custom_patterns,
            detected_pii=record.detected_pii,
            updated_at=record.updated_at,
        )


@router.post("/projects/{project_id}/sources", status_code=status.HTTP_201_CREATED)
async def create_file_source(
    project_id: int,
    organization_id: OrgId,
    service: Sources,
    name: Annotated[str, Form(min_length=1, max_length=255)],
    file: Annotated[UploadFile, File()],
) -> dict[str, Any]:
    source = await service.create_file_source(project_id, organization_id, name, file)
    return envelope(dump(SourceOut.from_orm_obj(source)))


@router.get("/projects/{project_id}/sources")
async def list_sources(
    project_id: int,
    organization_id: OrgId,
    service: Sources,
    pagination: Annotated[Pagination, Depends(get_pagination)],
) -> dict[str, Any]:
    items, total = await service.list_sources(project_id, organization_id, pagination)
    return paginated([dump(SourceOut.from_orm_obj(s)) for s in items], total, pagination)


@router.post("/sources/teamwork", status_code=status.HTTP_201_CREATED)
async def create_teamwork_source(
    body: TeamworkSourceCreate, organization_id: OrgId, service: Sources
) -> dict[str, Any]:
    source = await service.create_teamwork_source(
        body.project_id,
        organization_id,
        name=body.name,
        api_key=body.api_key.get_secret_value(),
        domain=body.domain,
        data_types=body.data_types,
    )
    return envelope(dump(SourceOut.from_orm_obj(source)))


@router.get("/sources/{source_id}")
async def get_source(source_id: int, organization_id: OrgId, service: Sources) -> dict[str, Any]:
    source = await service.require(source_id, organization_id)
    return envelope(dump(SourceOut.from_orm_obj(source)))


@router.patch("/sources/{source_id}")
async def update_source(
    source_id: int, body: SourceUpdate, organization_id: OrgId, service: Sources
) -> dict[str, Any]:
    source = await service.update(source_id, organization_id, name=body.name)
    return envelope(dump(SourceOut.from_orm_obj(source)))


@router.delete("/sources/{source_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_source(source_id: int, organization_id: OrgId, service: Sources) -> Response:
    await service.delete(source_id, organization_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/sources/{source_id}/sync", status_code=status.HTTP_202_ACCEPTED)
async def sync_source(source_id: int, organization_id: OrgId, service: Sources) -> dict[str, Any]:
    source = await service.trigger_sync(source_id, organization_id)
    return envelope({"message": "Sync started", "source": dump(SourceOut.from_orm_obj(source))})


@router.get("/sources/{source_id}/preview")
async def preview_source(
    source_id: int,
    organization_id: OrgId,
    service: Sources,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
) -> dict[str, Any]:
    return envelope(await service.preview(source_id, organization_id, limit))


@router.get("/sources/{source_id}/schema")
async def get_schema_mapping(
    source_id: int, organization_id: OrgId, service: SourceConfigs
) -> dict[str, Any]:
    record = await service.get_mapping(source_id, organization_id)
    return envelope(dump(SchemaMappingOut.from_orm_obj(record)))


@router.put("/sources/{source_id}/schema")
async def replace_schema_mapping(
    source_id: int, body: SchemaMappingUpdate, organization_id: OrgId, service: SourceConfigs
) -> dict[str, Any]:
    record = await service.replace_mapping(source_id, organization_id, body.mapping)
    return envelope(dump(SchemaMappingOut.from_orm_obj(record)))


@router.post("/sources/{source_id}/detect-schema", status_code=status.HTTP_202_ACCEPTED)
async def detect_schema(
    source_id: int, organization_id: OrgId, service: SourceConfigs
) -> dict[str, Any]:
    record = await service.detect_schema(source_id, organization_id)
    return envelope(dump(SchemaMappingOut.from_orm_obj(record)))


@router.get("/sources/{source_id}/deidentification")
async def get_deidentification(
    source_id: int, organization_id: OrgId, service: SourceConfigs
) -> dict[str, Any]:
    record = await service.get_deidentification(source_id, organization_id)
    return envelope(dump(DeidentificationOut.from_orm_obj(record)))


@router.put("/sources/{source_id}/deidentification")
async def replace_deidentification(
    source_id: int,
    body: DeidentificationSettings,
    organization_id: OrgId,
    service: SourceConfigs,
) -> dict[str, Any]:
    record = await service.replace_deidentification(source_id, organization_id, body)
    return envelope(dump(DeidentificationOut.from_orm_obj(record)))


@router.post("/sources/{source_id}/detect-pii", status_code=status.HTTP_202_ACCEPTED)
async def detect_pii(source_id: int, organization_id: OrgId, service: SourceConfigs) -> dict[str, Any]:
    record = await service.detect_pii(source_id, organization_id)
    return envelope(dump(DeidentificationOut.from_orm_obj(record)))
