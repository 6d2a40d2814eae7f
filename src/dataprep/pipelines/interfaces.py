"""Interfaces (Protocols) and DTOs bridging persistence and pipeline orchestration."""
from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from dataprep.schemas import (
    DatasetStats,
    DeidentificationSettings,
    LogLevel,
    OutputFormat,
    ProcessingSettings,
    RunStats,
)

# Reports completion of the current stage as a fraction in [0, 1]
ProgressCallback = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class SourceInput:
    id: int
    name: str
    type: str
    records: list[dict[str, Any]]
    mapping: dict[str, str] = field(default_factory=dict)
    deidentification: DeidentificationSettings = field(default_factory=DeidentificationSettings)


@dataclass(slots=True)
class PipelineRecord:
    source_id: int
    source_name: str
    fields: dict[str, Any]
    pii: dict[str, int] = field(default_factory=dict)  # field -> detector hits


@dataclass(slots=True)
class PipelineOutput:
    format: OutputFormat
    record_count: int
    stats: DatasetStats
    file_path: str | None = None
    file_size: int | None = None


@dataclass
class PipelineContext:
    run_id: int
    project_id: int
    settings: ProcessingSettings
    sources: list[SourceInput]
    output_dir: Path
    records: list[PipelineRecord] = field(default_factory=list)
    stats: RunStats = field(default_factory=RunStats)
    output: PipelineOutput | None = None


@dataclass(slots=True)
class StageResult:
    records_in: int
    records_out: int
    message: str


class Stage(Protocol):
    """One pluggable unit of the processing pipeline.

    Stages mutate the context, call ``report`` with their own completion
    fraction, and raise ``StageFailure`` for classified failures.
    """

    name: str
    weight: int

    async def run(self, ctx: PipelineContext, report: ProgressCallback) -> StageResult: ...


class RunTracker(Protocol):
    """Persistence side of a pipeline execution."""

    async def progress(self, value: int) -> None: ...
    async def log(self, level: LogLevel, message: str, stage: str | None = None) -> None: ...
    async def is_cancelled(self) -> bool: ...
