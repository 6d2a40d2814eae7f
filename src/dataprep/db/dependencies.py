"""FastAPI dependency helpers for services."""
from __future__ import annotations

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from dataprep.services.datasets import DatasetService
from dataprep.services.dispatch import Dispatcher, get_dispatcher
from dataprep.services.processing_config import ProcessingConfigService
from dataprep.services.projects import ProjectService
from dataprep.services.runs import RunService
from dataprep.services.source_config import SourceConfigService
from dataprep.services.sources import SourceService

from .base import get_session


def get_project_service(
    session: AsyncSession = Depends(get_session),  # noqa: B008 - FastAPI DI
) -> ProjectService:
    return ProjectService(session)


def get_processing_config_service(
    session: AsyncSession = Depends(get_session),  # noqa: B008 - FastAPI DI
) -> ProcessingConfigService:
    return ProcessingConfigService(session)


def get_source_service(
    session: AsyncSession = Depends(get_session),  # noqa: B008 - FastAPI DI
    dispatcher: Dispatcher = Depends(get_dispatcher),  # noqa: B008 - FastAPI DI
) -> SourceService:
    return SourceService(session, dispatcher)


def get_source_config_service(
    session: AsyncSession = Depends(get_session),  # noqa: B008 - FastAPI DI
) -> SourceConfigService:
    return SourceConfigService(session)


def get_run_service(
    session: AsyncSession = Depends(get_session),  # noqa: B008 - FastAPI DI
    dispatcher: Dispatcher = Depends(get_dispatcher),  # noqa: B008 - FastAPI DI
) -> RunService:
    return RunService(session, dispatcher)


def get_dataset_service(
    session: AsyncSession = Depends(get_session),  # noqa: B008 - FastAPI DI
) -> DatasetService:
    return DatasetService(session)
