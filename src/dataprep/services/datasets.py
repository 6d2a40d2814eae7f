"""Dataset materialization and read access."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from dataprep.core.errors import NotFoundError
from dataprep.db.models import Dataset, ProcessingRun
from dataprep.db.repositories import DatasetRepository
from dataprep.pipelines.interfaces import PipelineOutput
from dataprep.pipelines.output import (
    MEDIA_TYPES,
    convert_records,
    export_filename,
    read_records,
    render_records,
)
from dataprep.schemas import OutputFormat

logger = logging.getLogger(__name__)


def dataset_name(run_id: int) -> str:
    return f"Dataset from Run {run_id}"


class DatasetMaterializer:
    """Creates the single dataset of a completed run.

    Called inside the transaction that moves the run to ``completed`` so the
    two writes commit or roll back together.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.datasets = DatasetRepository(session)

    async def materialize(self, run: ProcessingRun, output: PipelineOutput) -> Dataset:
        existing = await self.datasets.get_by_run(run.id)
        if existing is not None:
            logger.info(f"Run {run.id} already has dataset {existing.id}")
            return existing
        dataset = await self.datasets.add(
            run.id,
            name=dataset_name(run.id),
            format=(run.config or {}).get("output_format", output.format),
            file_path=output.file_path,
            file_size=output.file_size,
            record_count=output.record_count,
            stats=output.stats.model_dump(),
        )
        logger.info(f"Materialized dataset {dataset.id} for run {run.id}")
        return dataset


class DatasetService:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.datasets = DatasetRepository(session)

    async def get(self, dataset_id: int, organization_id: int) -> Dataset:
        dataset = await self.datasets.get_for_org(dataset_id, organization_id)
        if dataset is None:
            raise NotFoundError("Dataset")
        return dataset

    def _file(self, dataset: Dataset) -> Path:
        if not dataset.file_path or not Path(dataset.file_path).is_file():
            raise NotFoundError("Dataset file")
        return Path(dataset.file_path)

    async def preview(
        self, dataset_id: int, organization_id: int, limit: int = 10
    ) -> tuple[Dataset, list[dict[str, Any]]]:
        dataset = await self.get(dataset_id, organization_id)
        return dataset, read_records(self._file(dataset), dataset.format, limit)

    async def download(self, dataset_id: int, organization_id: int) -> tuple[Path, str, str]:
        """Return (path, media type, download file name)."""
        dataset = await self.get(dataset_id, organization_id)
        path = self._file(dataset)
        media_type = MEDIA_TYPES.get(dataset.format, "application/octet-stream")
        return path, media_type, f"dataset-{dataset.id}{path.suffix}"

    async def export(
        self, dataset_id: int, organization_id: int, output_format: OutputFormat
    ) -> tuple[str, str, str]:
        """Render the dataset in ``output_format``.

        Returns (body, media type, download file name).
        """
        dataset = await self.get(dataset_id, organization_id)
        records = read_records(self._file(dataset), dataset.format)
        converted = convert_records(records, dataset.format, output_format)
        logger.info(
            f"Exporting dataset {dataset.id} ({dataset.format} -> {output_format}, "
            f"{len(converted)} records)"
        )
        return (
            render_records(converted, output_format),
            MEDIA_TYPES[output_format],
            export_filename(dataset.id, output_format),
        )
