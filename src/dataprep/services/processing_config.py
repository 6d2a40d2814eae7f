"""Per-project processing configuration."""
from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from dataprep.core.errors import NotFoundError
from dataprep.db.repositories import ProcessingConfigRepository, ProjectRepository
from dataprep.schemas import ProcessingSettings


class ProcessingConfigService:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.projects = ProjectRepository(session)
        self.configs = ProcessingConfigRepository(session)

    async def _require_project(self, project_id: int, organization_id: int) -> None:
        if await self.projects.get_for_org(project_id, organization_id) is None:
            raise NotFoundError("Project")

    async def get(self, project_id: int, organization_id: int) -> ProcessingSettings:
        """Stored configuration, or the defaults when none was saved."""
        await self._require_project(project_id, organization_id)
        record = await self.configs.get(project_id)
        if record is None:
            return ProcessingSettings()
        return ProcessingConfigRepository.to_settings(record)

    async def replace(
        self, project_id: int, organization_id: int, settings: ProcessingSettings
    ) -> ProcessingSettings:
        await self._require_project(project_id, organization_id)
        record = await self.configs.upsert(project_id, settings)
        await self.session.commit()
        return ProcessingConfigRepository.to_settings(record)
