"""Schema mapping and de-identification configuration of a source."""
from __future__ import annotations

import logging
from collections import Counter, defaultdict
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from dataprep.core.errors import BadRequestError, NotFoundError, ValidationFailedError
from dataprep.db.models import DeidentificationConfig, SchemaMapping, Source
from dataprep.db.repositories import SourceConfigRepository, SourceRepository
from dataprep.pipelines.pii import PiiDetector
from dataprep.schemas import DeidentificationSettings

logger = logging.getLogger(__name__)

# Records inspected by the detectors
DETECTION_SAMPLE = 1000


def infer_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, list):
        return "array"
    return "string"


def infer_schema(records: list[dict[str, Any]]) -> dict[str, str]:
    """Most common non-null type per field, in first-seen field order."""
    seen: dict[str, Counter[str]] = defaultdict(Counter)
    for record in records:
        for key, value in record.items():
            seen[key][infer_type(value)] += 1
    schema: dict[str, str] = {}
    for key, counts in seen.items():
        non_null = [(t, n) for t, n in counts.most_common() if t != "null"]
        schema[key] = non_null[0][0] if non_null else "null"
    return schema


def settings_from_record(record: DeidentificationConfig | None) -> DeidentificationSettings:
    if record is None:
        return DeidentificationSettings()
    return DeidentificationSettings(
        enabled=record.enabled,
        fields=record.rules or [],
        custom_patterns=record.custom_patterns or [],
    )


class SourceConfigService:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.sources = SourceRepository(session)
        self.configs = SourceConfigRepository(session)

    async def _require(self, source_id: int, organization_id: int) -> Source:
        source = await self.sources.get_for_org(source_id, organization_id)
        if source is None:
            raise NotFoundError("Source")
        return source

    def _records(self, source: Source) -> list[dict[str, Any]]:
        if not source.cached_records:
            raise ValidationFailedError(
                "Source has no synced records; sync it first", code="SOURCE_NOT_SYNCED"
            )
        return source.cached_records[:DETECTION_SAMPLE]

    async def get_mapping(self, source_id: int, organization_id: int) -> SchemaMapping:
        source = await self._require(source_id, organization_id)
        record = await self.configs.get_mapping(source.id)
        if record is None:
            record = await self.configs.replace_mapping(source.id, {})
            await self.session.commit()
        return record

    async def replace_mapping(
        self, source_id: int, organization_id: int, mapping: dict[str, str]
    ) -> SchemaMapping:
        source = await self._require(source_id, organization_id)
        targets = [target for target in mapping.values() if target]
        duplicates = sorted({t for t in targets if targets.count(t) > 1})
        if duplicates:
            raise BadRequestError(
                "Several fields map to the same target", details={"targets": duplicates}
            )
        record = await self.configs.replace_mapping(source.id, mapping)
        await self.session.commit()
        return record

    async def detect_schema(self, source_id: int, organization_id: int) -> SchemaMapping:
        source = await self._require(source_id, organization_id)
        schema = infer_schema(self._records(source))
        record = await self.configs.set_detected_schema(source.id, schema)
        await self.session.commit()
        logger.info(f"Detected {len(schema)} fields for source {source.id}")
        return record

    async def get_deidentification(
        self, source_id: int, organization_id: int
    ) -> DeidentificationConfig:
        source = await self._require(source_id, organization_id)
        record = await self.configs.get_deidentification(source.id)
        if record is None:
            record = await self.configs.replace_deidentification(
                source.id, DeidentificationSettings()
            )
            await self.session.commit()
        return record

    async def replace_deidentification(
        self, source_id: int, organization_id: int, settings: DeidentificationSettings
    ) -> DeidentificationConfig:
        source = await self._require(source_id, organization_id)
        record = await self.configs.replace_deidentification(source.id, settings)
        await self.session.commit()
        return record

    async def detect_pii(self, source_id: int, organization_id: int) -> DeidentificationConfig:
        source = await self._require(source_id, organization_id)
        records = self._records(source)
        current = await self.configs.get_deidentification(source.id)
        detector = PiiDetector(settings_from_record(current).custom_patterns)
        report = detector.report(records)
        record = await self.configs.set_detected_pii(
            source.id, [item.model_dump() for item in report]
        )
        await self.session.commit()
        logger.info(f"Detected {len(report)} PII field/type pairs for source {source.id}")
        return record
