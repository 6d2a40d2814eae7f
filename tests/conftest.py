"""Shared fixtures: a throwaway SQLite database and storage dirs per test."""
from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import httpx
import pytest
import pytest_asyncio
from cryptography.fernet import Fernet

from dataprep.core.settings import get_settings
from dataprep.db.base import dispose_engine, get_session_factory, init_models
from dataprep.db.models import ProcessingRun, Source
from dataprep.db.repositories import RunRepository, SourceConfigRepository, SourceRepository
from dataprep.schemas import DeidentificationSettings
from dataprep.services.dispatch import get_dispatcher
from dataprep.services.projects import ProjectService

ORG = 1
OTHER_ORG = 2

SUPPORT_RECORDS: list[dict[str, Any]] = [
    {
        "ticket": "T-1",
        "author": "alice",
        "role": "user",
        "body": "I cannot log in. My email is alice@example.com, please help.",
    },
    {
        "ticket": "T-1",
        "author": "sam",
        "role": "assistant",
        "body": "I've sent a reset link. Call 555-123-4567 if it does not arrive.",
    },
    {
        "ticket": "T-2",
        "author": "bob",
        "role": "user",
        "body": "How do I export my invoices as CSV?",
    },
    {
        "ticket": "T-2",
        "author": "sam",
        "role": "assistant",
        "body": "Open Billing, pick the invoices and choose Export.",
    },
    {"ticket": "T-3", "author": "carol", "role": "user", "body": "ok"},
]

SUPPORT_MAPPING = {"ticket": "conversation_id", "author": "speaker", "body": "content"}


def org_headers(organization_id: int = ORG) -> dict[str, str]:
    return {"X-Organization-Id": str(organization_id)}


@pytest.fixture(autouse=True)
def settings_env(tmp_path, monkeypatch):
    monkeypatch.setenv("DATAPREP_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    monkeypatch.setenv("DATAPREP_UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("DATAPREP_DATASET_DIR", str(tmp_path / "datasets"))
    monkeypatch.setenv("DATAPREP_ENCRYPTION_KEY", Fernet.generate_key().decode())
    monkeypatch.setenv("DATAPREP_RUN_EXECUTOR", "local")
    monkeypatch.setenv("DATAPREP_AUTO_CREATE_TABLES", "false")
    monkeypatch.setenv("DATAPREP_RECONCILE_ON_STARTUP", "false")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def session_factory(settings_env):
    await dispose_engine()
    await init_models(drop=True)
    yield get_session_factory()
    await dispose_engine()


class RecordingDispatcher:
    """Records dispatched ids instead of running anything."""

    def __init__(self) -> None:
        self.runs: list[int] = []
        self.syncs: list[int] = []

    async def dispatch_run(self, run_id: int) -> None:
        self.runs.append(run_id)

    async def dispatch_sync(self, source_id: int) -> None:
        self.syncs.append(source_id)


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest_asyncio.fixture
async def client(session_factory, dispatcher) -> AsyncIterator[httpx.AsyncClient]:
    from dataprep.main import create_app

    app = create_app()
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


class Seeder:
    """Creates fixture rows through the repositories."""

    def __init__(self, factory) -> None:
        self.factory = factory

    async def project(self, organization_id: int = ORG, name: str = "Support data") -> int:
        async with self.factory() as session:
            project = await ProjectService(session).create(organization_id, name)
            return project.id

    async def ready_source(
        self,
        project_id: int,
        records: list[dict[str, Any]] | None = None,
        *,
        name: str = "tickets",
        mapping: dict[str, str] | None = None,
        deidentification: DeidentificationSettings | None = None,
    ) -> int:
        async with self.factory() as session:
            sources = SourceRepository(session)
            source = await sources.add(
                project_id, name, "file", file_name="tickets.jsonl", file_type="jsonl"
            )
            await sources.mark_syncing(source.id)
            await sources.complete_sync(
                source.id, list(SUPPORT_RECORDS if records is None else records)
            )
            configs = SourceConfigRepository(session)
            if mapping is not None:
                await configs.replace_mapping(source.id, mapping)
            if deidentification is not None:
                await configs.replace_deidentification(source.id, deidentification)
            await session.commit()
            return source.id

    async def pending_source(self, project_id: int, name: str = "upload") -> int:
        async with self.factory() as session:
            source = await SourceRepository(session).add(project_id, name, "file")
            await session.commit()
            return source.id

    async def run(self, run_id: int) -> ProcessingRun:
        async with self.factory() as session:
            run = await RunRepository(session).get(run_id)
            assert run is not None
            return run

    async def source(self, source_id: int) -> Source:
        async with self.factory() as session:
            source = await SourceRepository(session).get(source_id)
            assert source is not None
            return source


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)
