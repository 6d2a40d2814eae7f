"""Source registry: creation, sync and preview of project data sources."""
from __future__ import annotations

import logging
import re
import uuid
from pathlib import Path
from typing import Any

from fastapi import UploadFile
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dataprep.connectors import Connector, ConnectorError, get_connector
from dataprep.connectors.files import detect_format
from dataprep.core.crypto import decrypt_secret, encrypt_secret
from dataprep.core.errors import AppError, BadRequestError, NotFoundError
from dataprep.core.responses import Pagination
from dataprep.core.settings import get_settings
from dataprep.db.base import get_session_factory
from dataprep.db.models import Source
from dataprep.db.repositories import ProjectRepository, SourceRepository
from dataprep.schemas import SourceStatus, SourceType, TeamworkDataType
from dataprep.services.dispatch import Dispatcher

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_filename(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", Path(name).name).strip("._") or "upload"


class SourceService:
    def __init__(self, session: AsyncSession, dispatcher: Dispatcher | None = None) -> None:
        self.session = session
        self.dispatcher = dispatcher
        self.projects = ProjectRepository(session)
        self.sources = SourceRepository(session)

    async def _require_project(self, project_id: int, organization_id: int) -> None:
        if await self.projects.get_for_org(project_id, organization_id) is None:
            raise NotFoundError("Project")

    async def require(self, source_id: int, organization_id: int) -> Source:
        source = await self.sources.get_for_org(source_id, organization_id)
        if source is None:
            raise NotFoundError("Source")
        return source

    async def _store_upload(self, project_id: int, upload: UploadFile) -> tuple[Path, int]:
        settings = get_settings()
        limit = settings.max_upload_size_mb * 1024 * 1024
        target_dir = Path(settings.upload_dir) / f"project-{project_id}"
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / f"{uuid.uuid4().hex}-{_safe_filename(upload.filename or '')}"

        size = 0
        with open(path, "wb") as f:
            while chunk := await upload.read(_CHUNK_SIZE):
                size += len(chunk)
                if size > limit:
                    f.close()
                    path.unlink(missing_ok=True)
                    raise BadRequestError(
                        f"File exceeds the {settings.max_upload_size_mb} MB upload limit"
                    )
                f.write(chunk)
        if size == 0:
            path.unlink(missing_ok=True)
            raise BadRequestError("Uploaded file is empty")
        return path, size

    async def create_file_source(
        self, project_id: int, organization_id: int, name: str, upload: UploadFile
    ) -> Source:
        await self._require_project(project_id, organization_id)
        fmt = detect_format(upload.filename, upload.content_type)
        if fmt is None:
            raise BadRequestError("Unsupported file type: expected CSV, JSON or JSONL")

        path, size = await self._store_upload(project_id, upload)
        try:
            source = await self.sources.add(
                project_id,
                name,
                SourceType.FILE.value,
                file_name=upload.filename,
                file_path=str(path),
                file_size=size,
                file_type=fmt,
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            path.unlink(missing_ok=True)
            raise
        logger.info(f"Created file source {source.id} ({fmt}, {size} bytes)")
        return source

    async def create_teamwork_source(
        self,
        project_id: int,
        organization_id: int,
        *,
        name: str,
        api_key: str,
        domain: str,
        data_types: list[TeamworkDataType],
    ) -> Source:
        await self._require_project(project_id, organization_id)
        ciphertext = encrypt_secret(api_key)
        source = await self.sources.add(
            project_id,
            name,
            SourceType.TEAMWORK.value,
            credential_ciphertext=ciphertext,
            remote_domain=domain,
            data_types=list(dict.fromkeys(data_types)),
        )
        await self.session.commit()
        logger.info(f"Created teamwork source {source.id} for {domain}")
        return source

    async def list_sources(
        self, project_id: int, organization_id: int, pagination: Pagination
    ) -> tuple[list[Source], int]:
        await self._require_project(project_id, organization_id)
        items = await self.sources.list_by_project(
            project_id, limit=pagination.page_size, offset=pagination.offset
        )
        return list(items), await self.sources.count_by_project(project_id)

    async def update(self, source_id: int, organization_id: int, *, name: str | None) -> Source:
        source = await self.require(source_id, organization_id)
        if name is not None:
            source.name = name
        await self.session.commit()
        return source

    async def delete(self, source_id: int, organization_id: int) -> None:
        source = await self.require(source_id, organization_id)
        file_path = source.file_path
        await self.sources.delete(source)
        await self.session.commit()
        if file_path:
            Path(file_path).unlink(missing_ok=True)
        logger.info(f"Deleted source {source_id}")

    async def trigger_sync(self, source_id: int, organization_id: int) -> Source:
        """Move the source to ``syncing`` and fetch its records in the background.

        Allowed from every status; a sync requested while one is in flight
        restarts it and the first completion wins.
        """
        source = await self.require(source_id, organization_id)
        await self.sources.mark_syncing(source.id)
        await self.session.commit()
        if self.dispatcher is not None:
            await self.dispatcher.dispatch_sync(source.id)
        refreshed = await self.sources.get(source.id)
        assert refreshed is not None
        return refreshed

    async def preview(self, source_id: int, organization_id: int, limit: int = 10) -> dict[str, Any]:
        source = await self.require(source_id, organization_id)
        records = source.cached_records or []
        columns: list[str] = []
        for record in records[: max(limit, 1) * 10]:
            for key in record:
                if key not in columns:
                    columns.append(key)
        return {
            "columns": columns,
            "rows": records[:limit],
            "totalRecords": source.record_count or 0,
            "status": source.status,
        }


async def run_sync(
    source_id: int,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    connector: Connector | None = None,
) -> SourceStatus | None:
    """Fetch a syncing source's records and record the outcome."""
    factory = session_factory or get_session_factory()

    async with factory() as session:
        source = await SourceRepository(session).get(source_id)
    if source is None:
        logger.warning(f"Sync skipped: source {source_id} no longer exists")
        return None
    if source.status != SourceStatus.SYNCING.value:
        logger.info(f"Sync skipped: source {source_id} is {source.status}")
        return SourceStatus(source.status)

    error: str | None = None
    records: list[dict[str, Any]] = []
    try:
        secret = decrypt_secret(source.credential_ciphertext) if source.credential_ciphertext else None
        records = await (connector or get_connector(source.type)).fetch(source, secret)
    except ConnectorError as err:
        error = str(err)
    except AppError as err:
        error = err.message
    except Exception:
        logger.exception(f"Unexpected error while syncing source {source_id}")
        error = "Unexpected error while fetching records"

    async with factory() as session:
        repo = SourceRepository(session)
        if error is None:
            applied = await repo.complete_sync(source_id, records)
        else:
            applied = await repo.fail_sync(source_id, error)
        await session.commit()

    if not applied:
        logger.info(f"Sync result for source {source_id} discarded: no longer syncing")
        return None
    if error is not None:
        logger.warning(f"Sync of source {source_id} failed: {error}")
        return SourceStatus.ERROR
    logger.info(f"Synced source {source_id}: {len(records)} records")
    return SourceStatus.READY
