"""ORM models for core entities.

Ownership (all cascading on delete):
    Project -> Source -> SchemaMapping, DeidentificationConfig
    Project -> ProcessingConfig
    Project -> ProcessingRun -> RunLogEvent, Dataset
"""
from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

ACTIVE_RUN_PREDICATE = "status IN ('pending', 'running')"


def utcnow() -> datetime:
    return datetime.now(UTC)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class Project(TimestampMixin, Base):
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(Integer, index=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    sources: Mapped[list[Source]] = relationship(
        back_populates="project", cascade="all, delete-orphan", passive_deletes=True
    )
    processing_config: Mapped[ProcessingConfig | None] = relationship(
        back_populates="project", cascade="all, delete-orphan", passive_deletes=True
    )
    runs: Mapped[list[ProcessingRun]] = relationship(
        back_populates="project", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        Index(
            "uq_projects_org_name_live",
            "organization_id",
            "name",
            unique=True,
            sqlite_where=text("deleted_at IS NULL"),
            postgresql_where=text("deleted_at IS NULL"),
        ),
    )


class Source(TimestampMixin, Base):
    __tablename__ = "sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String(255))
    type: Mapped[str] = mapped_column(String(20))  # file, teamwork
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)

    # File sources
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    file_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    file_type: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Connector sources; the credential is a Fernet token, never plaintext
    credential_ciphertext: Mapped[str | None] = mapped_column(Text, nullable=True)
    remote_domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    data_types: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)

    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    cached_records: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    record_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    project: Mapped[Project] = relationship(back_populates="sources")
    schema_mapping: Mapped[SchemaMapping | None] = relationship(
        back_populates="source", cascade="all, delete-orphan", passive_deletes=True, lazy="selectin"
    )
    deidentification_config: Mapped[DeidentificationConfig | None] = relationship(
        back_populates="source", cascade="all, delete-orphan", passive_deletes=True, lazy="selectin"
    )


class SchemaMapping(TimestampMixin, Base):
    __tablename__ = "schema_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[int] = mapped_column(
        ForeignKey("sources.id", ondelete="CASCADE"), unique=True
    )
    mapping: Mapped[dict[str, str]] = mapped_column(JSON, default=dict)
    detected_schema: Mapped[dict[str, str] | None] = mapped_column(JSON, nullable=True)

    source: Mapped[Source] = relationship(back_populates="schema_mapping")


class DeidentificationConfig(TimestampMixin, Base):
    __tablename__ = "deidentification_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[int] = mapped_column(
        ForeignKey("sources.id", ondelete="CASCADE"), unique=True
    )
    enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    rules: Mapped[list[dict[str, str]]] = mapped_column(JSON, default=list)
    custom_patterns: Mapped[list[dict[str, str]]] = mapped_column(JSON, default=list)
    detected_pii: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)

    source: Mapped[Source] = relationship(back_populates="deidentification_config")


class ProcessingConfig(TimestampMixin, Base):
    __tablename__ = "processing_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"), unique=True
    )
    output_format: Mapped[str] = mapped_column(String(20), default="conversational")
    include_metadata: Mapped[bool] = mapped_column(Boolean, default=True)
    chunk_size: Mapped[int] = mapped_column(Integer, default=1000)
    min_length: Mapped[int] = mapped_column(Integer, default=10)
    max_length: Mapped[int] = mapped_column(Integer, default=10000)

    project: Mapped[Project] = relationship(back_populates="processing_config")


class ProcessingRun(TimestampMixin, Base):
    __tablename__ = "processing_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"), index=True
    )
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    config: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)  # ProcessingSettings snapshot
    stats: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)  # RunStats

    project: Mapped[Project] = relationship(back_populates="runs")
    log_events: Mapped[list[RunLogEvent]] = relationship(
        back_populates="run", cascade="all, delete-orphan", passive_deletes=True
    )
    dataset: Mapped[Dataset | None] = relationship(
        back_populates="run", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        # At most one non-terminal run per project, enforced by the database
        Index(
            "uq_processing_runs_active_project",
            "project_id",
            unique=True,
            sqlite_where=text(ACTIVE_RUN_PREDICATE),
            postgresql_where=text(ACTIVE_RUN_PREDICATE),
        ),
        Index("ix_processing_runs_project_created", "project_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ProcessingRun(id={self.id}, project_id={self.project_id}, status={self.status})>"


class RunLogEvent(Base):
    __tablename__ = "run_log_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(
        ForeignKey("processing_runs.id", ondelete="CASCADE"), index=True
    )
    level: Mapped[str] = mapped_column(String(10))  # info, warn, error
    stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    message: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    run: Mapped[ProcessingRun] = relationship(back_populates="log_events")


class Dataset(TimestampMixin, Base):
    __tablename__ = "datasets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(
        ForeignKey("processing_runs.id", ondelete="CASCADE"), unique=True
    )
    name: Mapped[str] = mapped_column(String(255))
    format: Mapped[str] = mapped_column(String(50))
    file_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    record_count: Mapped[int] = mapped_column(Integer, default=0)
    stats: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)  # DatasetStats

    run: Mapped[ProcessingRun] = relationship(back_populates="dataset")


__all__ = [
    "Dataset",
    "DeidentificationConfig",
    "ProcessingConfig",
    "ProcessingRun",
    "Project",
    "RunLogEvent",
    "SchemaMapping",
    "Source",
]
