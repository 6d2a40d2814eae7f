"""Typed value objects stored in JSON columns and exchanged over the API.

Stored documents use snake_case field names; API payloads use camelCase
aliases. Everything that crosses the service boundary is validated here.
"""
from __future__ import annotations

import re
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

OutputFormat = Literal["conversational", "qa", "json"]
LogLevel = Literal["info", "warn", "error"]
DeidentificationStrategy = Literal["mask", "redact", "hash", "remove"]
TeamworkDataType = Literal["tickets", "conversations"]


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_RUN_STATUSES = (RunStatus.PENDING, RunStatus.RUNNING)


class SourceStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    READY = "ready"
    ERROR = "error"


class SourceType(str, Enum):
    FILE = "file"
    TEAMWORK = "teamwork"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class QualityFilters(CamelModel):
    min_length: int = Field(default=10, ge=0)
    max_length: int = Field(default=10000, ge=1)

    @model_validator(mode="after")
    def _check_bounds(self) -> QualityFilters:
        if self.min_length > self.max_length:
            raise ValueError("minLength must not exceed maxLength")
        return self


class ProcessingSettings(CamelModel):
    output_format: OutputFormat = "conversational"
    include_metadata: bool = True
    chunk_size: int = Field(default=1000, ge=100, le=10000)
    quality_filters: QualityFilters = Field(default_factory=QualityFilters)


class RunStats(CamelModel):
    total_records: int = 0
    processed_records: int = 0
    pii_detected: int = 0
    pii_masked: int = 0


class DatasetStats(CamelModel):
    total_conversations: int = 0
    avg_conversation_length: float = 0.0
    unique_speakers: int = 0


class DeidentificationRule(CamelModel):
    field: str = Field(min_length=1)
    strategy: DeidentificationStrategy


class CustomPattern(CamelModel):
    name: str = Field(min_length=1, max_length=64)
    pattern: str = Field(min_length=1)

    @field_validator("pattern")
    @classmethod
    def _compiles(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as err:
            raise ValueError(f"invalid regular expression: {err}") from err
        return value


class DeidentificationSettings(CamelModel):
    enabled: bool = False
    fields: list[DeidentificationRule] = Field(default_factory=list)
    custom_patterns: list[CustomPattern] = Field(default_factory=list)


class DetectedPii(CamelModel):
    field: str
    type: str
    confidence: float = Field(ge=0.0, le=1.0)
