"""Default processing stages, executed in declaration order by the runner."""
from __future__ import annotations

import re
from pathlib import Path

from dataprep.core.errors import PipelineErrorCode, StageFailure
from dataprep.pipelines.interfaces import (
    PipelineContext,
    PipelineOutput,
    PipelineRecord,
    ProgressCallback,
    SourceInput,
    Stage,
    StageResult,
)
from dataprep.pipelines.output import (
    build_json_records,
    build_records,
    compute_stats,
    group_conversations,
    output_filename,
    passes_quality_filters,
    write_records,
)
from dataprep.pipelines.pii import PiiDetector, apply_strategy

# Records processed between two progress reports
REPORT_EVERY = 200

# Fields taken as ``content`` when no mapping provides one, in order
TEXT_FIELDS = ("body", "text", "message", "preview", "description", "subject")


async def _report_every(report: ProgressCallback, done: int, total: int) -> None:
    if total and (done % REPORT_EVERY == 0 or done == total):
        await report(done / total)


def _sources_by_id(ctx: PipelineContext) -> dict[int, SourceInput]:
    return {source.id: source for source in ctx.sources}


class LoadSourcesStage:
    name = "load_sources"
    weight = 15

    async def run(self, ctx: PipelineContext, report: ProgressCallback) -> StageResult:
        if not ctx.sources:
            raise StageFailure(PipelineErrorCode.SOURCE_LOAD_FAILED, "No ready sources to load")

        records: list[PipelineRecord] = []
        for index, source in enumerate(ctx.sources, start=1):
            if not source.records:
                raise StageFailure(
                    PipelineErrorCode.SOURCE_LOAD_FAILED,
                    f"Source '{source.name}' has no synced records",
                    details={"source_id": source.id},
                )
            for raw in source.records:
                if not isinstance(raw, dict):
                    raise StageFailure(
                        PipelineErrorCode.SOURCE_LOAD_FAILED,
                        f"Source '{source.name}' contains a non-object record",
                        details={"source_id": source.id},
                    )
                records.append(PipelineRecord(source.id, source.name, dict(raw)))
            await report(index / len(ctx.sources))

        ctx.records = records
        ctx.stats.total_records = len(records)
        return StageResult(
            0, len(records), f"Loaded {len(records)} records from {len(ctx.sources)} sources"
        )


class ApplySchemaMappingStage:
    """Rename fields per source mapping.

    A mapping entry with an empty target drops the field; unmapped fields are
    kept under their original names. A record left without ``content`` (and
    without a question/answer pair) takes its first non-empty ``TEXT_FIELDS``
    field as ``content``.
    """

    name = "apply_schema_mapping"
    weight = 15

    async def run(self, ctx: PipelineContext, report: ProgressCallback) -> StageResult:
        sources = _sources_by_id(ctx)
        for source in ctx.sources:
            targets = [target for target in source.mapping.values() if target]
            duplicates = sorted({t for t in targets if targets.count(t) > 1})
            if duplicates:
                raise StageFailure(
                    PipelineErrorCode.SCHEMA_MAPPING_FAILED,
                    f"Source '{source.name}' maps several fields to {', '.join(duplicates)}",
                    details={"source_id": source.id, "targets": duplicates},
                )

        total = len(ctx.records)
        defaulted = 0
        for done, record in enumerate(ctx.records, start=1):
            mapping = sources[record.source_id].mapping
            if mapping:
                mapped = {k: v for k, v in record.fields.items() if k not in mapping}
                for source_field, target in mapping.items():
                    if target and source_field in record.fields:
                        mapped[target] = record.fields[source_field]
                record.fields = mapped
            if _default_content(record):
                defaulted += 1
            await _report_every(report, done, total)

        mapped_sources = sum(1 for source in ctx.sources if source.mapping)
        message = f"Applied schema mapping for {mapped_sources} sources"
        if defaulted:
            message += f"; {defaulted} records used a default text field"
        return StageResult(total, total, message)


def _default_content(record: PipelineRecord) -> bool:
    fields = record.fields
    if "content" in fields or ("question" in fields and "answer" in fields):
        return False
    for name in TEXT_FIELDS:
        value = fields.get(name)
        if isinstance(value, str) and value.strip():
            fields["content"] = fields.pop(name)
            return True
    return False


class DetectPiiStage:
    name = "detect_pii"
    weight = 25

    async def run(self, ctx: PipelineContext, report: ProgressCallback) -> StageResult:
        detectors: dict[int, PiiDetector] = {}
        for source in ctx.sources:
            try:
                detectors[source.id] = PiiDetector(source.deidentification.custom_patterns)
            except re.error as err:
                raise StageFailure(
                    PipelineErrorCode.INVALID_PATTERN,
                    f"Invalid custom pattern for source '{source.name}': {err}",
                    details={"source_id": source.id},
                ) from err

        detected = 0
        total = len(ctx.records)
        for done, record in enumerate(ctx.records, start=1):
            detector = detectors[record.source_id]
            record.pii = {}
            for field_name, value in record.fields.items():
                hits = detector.count(value)
                if hits:
                    record.pii[field_name] = hits
                    detected += hits
            await _report_every(report, done, total)

        ctx.stats.pii_detected = detected
        return StageResult(total, total, f"Detected {detected} PII occurrences")


class ApplyDeidentificationStage:
    """Apply per-field rules, then replace remaining detector matches with placeholders."""

    name = "apply_deidentification"
    weight = 25

    async def run(self, ctx: PipelineContext, report: ProgressCallback) -> StageResult:
        sources = _sources_by_id(ctx)
        detectors = {
            source.id: PiiDetector(source.deidentification.custom_patterns)
            for source in ctx.sources
            if source.deidentification.enabled
        }

        masked = 0
        total = len(ctx.records)
        for done, record in enumerate(ctx.records, start=1):
            settings = sources[record.source_id].deidentification
            if settings.enabled:
                handled: set[str] = set()
                for rule in settings.fields:
                    try:
                        changed = apply_strategy(record.fields, rule.field, rule.strategy)
                    except ValueError as err:
                        raise StageFailure(
                            PipelineErrorCode.DEIDENTIFICATION_FAILED, str(err)
                        ) from err
                    if changed:
                        handled.add(rule.field)
                        masked += max(1, record.pii.get(rule.field, 0))

                detector = detectors[record.source_id]
                for field_name in list(record.fields):
                    value = record.fields[field_name]
                    if field_name in handled or not isinstance(value, str):
                        continue
                    replaced, count = detector.replace(value)
                    if count:
                        record.fields[field_name] = replaced
                        masked += count
            await _report_every(report, done, total)

        ctx.stats.pii_masked = masked
        enabled = sum(1 for source in ctx.sources if source.deidentification.enabled)
        return StageResult(total, total, f"De-identified {masked} values across {enabled} sources")


class GenerateOutputStage:
    name = "generate_output"
    weight = 20

    async def run(self, ctx: PipelineContext, report: ProgressCallback) -> StageResult:
        settings = ctx.settings
        kept = [
            r
            for r in ctx.records
            if passes_quality_filters(r, settings.quality_filters, settings.output_format)
        ]
        await report(0.25)
        if not kept:
            raise StageFailure(
                PipelineErrorCode.NO_RECORDS_PRODUCED,
                "No records passed the quality filters",
                details={"total_records": len(ctx.records)},
            )

        conversations = group_conversations(kept, settings.chunk_size)
        if settings.output_format == "json":
            items = build_json_records(kept, settings.include_metadata)
        else:
            items = build_records(conversations, settings)
        if not items:
            raise StageFailure(
                PipelineErrorCode.NO_RECORDS_PRODUCED,
                f"No {settings.output_format} records could be built from the input",
            )
        await report(0.5)

        path = Path(ctx.output_dir) / output_filename(ctx.run_id, settings.output_format)
        try:
            size = write_records(path, items, settings.output_format)
        except OSError as err:
            raise StageFailure(
                PipelineErrorCode.OUTPUT_GENERATION_FAILED,
                f"Could not write dataset file: {err}",
            ) from err
        await report(1.0)

        ctx.stats.processed_records = len(kept)
        ctx.output = PipelineOutput(
            format=settings.output_format,
            record_count=len(items),
            stats=compute_stats(conversations),
            file_path=str(path),
            file_size=size,
        )
        return StageResult(
            len(ctx.records),
            len(items),
            f"Wrote {len(items)} {settings.output_format} records "
            f"({len(ctx.records) - len(kept)} filtered out)",
        )


def default_stages() -> list[Stage]:
    return [
        LoadSourcesStage(),
        ApplySchemaMappingStage(),
        DetectPiiStage(),
        ApplyDeidentificationStage(),
        GenerateOutputStage(),
    ]
