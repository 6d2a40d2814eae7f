"""Source registry, sync and per-source configuration."""
from __future__ import annotations

import io
import json
from pathlib import Path

import httpx
import pytest
from starlette.datastructures import Headers, UploadFile

from conftest import ORG, OTHER_ORG
from dataprep.connectors.teamwork import TeamworkConnector
from dataprep.core.errors import BadRequestError, NotFoundError, ValidationFailedError
from dataprep.schemas import CustomPattern, DeidentificationSettings, SourceStatus
from dataprep.services.source_config import SourceConfigService, infer_schema
from dataprep.services.sources import SourceService, run_sync

API_KEY = "tw-secret-key-123"


def make_upload(data: bytes, filename: str, content_type: str | None = None) -> UploadFile:
    headers = Headers({"content-type": content_type}) if content_type else None
    return UploadFile(file=io.BytesIO(data), filename=filename, headers=headers)


async def _upload(session_factory, project_id, data: bytes, filename: str) -> int:
    async with session_factory() as session:
        source = await SourceService(session).create_file_source(
            project_id, ORG, "upload", make_upload(data, filename)
        )
        return source.id


async def _sync(session_factory, source_id, **kwargs):
    async with session_factory() as session:
        await SourceService(session).trigger_sync(source_id, ORG)
    return await run_sync(source_id, session_factory=session_factory, **kwargs)


async def _teamwork_source(session_factory, project_id, data_types=("tickets",)) -> int:
    async with session_factory() as session:
        source = await SourceService(session).create_teamwork_source(
            project_id,
            ORG,
            name="desk",
            api_key=API_KEY,
            domain="acme",
            data_types=list(data_types),
        )
        return source.id


@pytest.mark.asyncio
async def test_jsonl_upload_syncs_to_ready(session_factory, seed, tmp_path):
    project_id = await seed.project()
    lines = [{"id": 1, "text": "hello there"}, {"id": 2, "text": "general kenobi"}]
    data = "\n".join(json.dumps(line) for line in lines).encode()
    source_id = await _upload(session_factory, project_id, data, "chat.jsonl")

    source = await seed.source(source_id)
    assert source.status == "pending"
    assert source.file_type == "jsonl"
    assert source.file_size == len(data)
    assert source.file_path.startswith(str(tmp_path / "uploads"))

    assert await _sync(session_factory, source_id) is SourceStatus.READY
    source = await seed.source(source_id)
    assert source.status == "ready"
    assert source.record_count == 2
    assert source.cached_records == lines
    assert source.last_sync_at is not None


@pytest.mark.asyncio
async def test_csv_upload_parses_rows(session_factory, seed):
    project_id = await seed.project()
    data = b"author,body\nalice,first message\nbob,second message\n"
    source_id = await _upload(session_factory, project_id, data, "export.csv")

    assert await _sync(session_factory, source_id) is SourceStatus.READY
    source = await seed.source(source_id)
    assert source.cached_records == [
        {"author": "alice", "body": "first message"},
        {"author": "bob", "body": "second message"},
    ]


@pytest.mark.asyncio
async def test_unparseable_file_sets_error(session_factory, seed):
    project_id = await seed.project()
    source_id = await _upload(session_factory, project_id, b'{"ok": 1}\nnot json\n', "bad.jsonl")

    assert await _sync(session_factory, source_id) is SourceStatus.ERROR
    source = await seed.source(source_id)
    assert source.status == "error"
    assert "line 2" in source.sync_error
    assert source.cached_records is None


@pytest.mark.asyncio
async def test_upload_rejects_unsupported_and_empty_files(session_factory, seed):
    project_id = await seed.project()
    async with session_factory() as session:
        service = SourceService(session)
        with pytest.raises(BadRequestError):
            await service.create_file_source(
                project_id, ORG, "doc", make_upload(b"binary", "notes.pdf", "application/pdf")
            )
        with pytest.raises(BadRequestError):
            await service.create_file_source(project_id, ORG, "empty", make_upload(b"", "a.csv"))


@pytest.mark.asyncio
async def test_upload_to_foreign_project_is_not_found(session_factory, seed):
    project_id = await seed.project(organization_id=OTHER_ORG)
    with pytest.raises(NotFoundError):
        await _upload(session_factory, project_id, b"a,b\n1,2\n", "rows.csv")


@pytest.mark.asyncio
async def test_sync_skips_source_not_in_syncing(session_factory, seed):
    project_id = await seed.project()
    source_id = await seed.pending_source(project_id)
    assert await run_sync(source_id, session_factory=session_factory) is SourceStatus.PENDING
    assert await run_sync(98765, session_factory=session_factory) is None


@pytest.mark.asyncio
async def test_trigger_sync_dispatches(session_factory, seed, dispatcher):
    project_id = await seed.project()
    source_id = await seed.ready_source(project_id)
    async with session_factory() as session:
        source = await SourceService(session, dispatcher).trigger_sync(source_id, ORG)
    assert source.status == "syncing"
    assert dispatcher.syncs == [source_id]


@pytest.mark.asyncio
async def test_delete_source_removes_file(session_factory, seed):
    project_id = await seed.project()
    source_id = await _upload(session_factory, project_id, b"a,b\n1,2\n", "rows.csv")
    path = (await seed.source(source_id)).file_path

    async with session_factory() as session:
        await SourceService(session).delete(source_id, ORG)
        with pytest.raises(NotFoundError):
            await SourceService(session).require(source_id, ORG)

    assert not Path(path).exists()


@pytest.mark.asyncio
async def test_preview_lists_columns_in_first_seen_order(session_factory, seed):
    project_id = await seed.project()
    source_id = await seed.ready_source(
        project_id, records=[{"a": 1}, {"b": 2, "a": 3}, {"c": 4}]
    )
    async with session_factory() as session:
        preview = await SourceService(session).preview(source_id, ORG, limit=2)
    assert preview["columns"] == ["a", "b", "c"]
    assert preview["rows"] == [{"a": 1}, {"b": 2, "a": 3}]
    assert preview["totalRecords"] == 3
    assert preview["status"] == "ready"


def teamwork_transport(seen: list[httpx.Request]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        page = int(request.url.params["page"])
        if request.url.path.endswith("/tickets.json"):
            tickets = {
                1: [{"id": 1, "subject": "Login", "customer": {"id": 9, "name": "Al"}}],
                2: [{"id": 2, "subject": "Billing", "tags": ["x"]}],
            }[page]
            return httpx.Response(200, json={"tickets": tickets, "meta": {"page": {"pages": 2}}})
        messages = [{"id": 7, "body": "hi"}]
        return httpx.Response(200, json={"messages": messages, "meta": {"page": {"pages": 1}}})

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_teamwork_sync_pages_and_flattens(session_factory, seed):
    project_id = await seed.project()
    source_id = await _teamwork_source(session_factory, project_id, ("tickets", "conversations"))
    seen: list[httpx.Request] = []

    status = await _sync(
        session_factory, source_id, connector=TeamworkConnector(teamwork_transport(seen))
    )

    assert status is SourceStatus.READY
    source = await seed.source(source_id)
    assert source.cached_records == [
        {"id": 1, "subject": "Login", "customer_id": 9, "data_type": "tickets"},
        {"id": 2, "subject": "Billing", "data_type": "tickets"},
        {"id": 7, "body": "hi", "data_type": "conversations"},
    ]
    assert seen[0].url.host == "acme.teamwork.com"
    assert seen[0].url.path == "/desk/api/v2/tickets.json"
    assert seen[0].headers["authorization"] == f"Bearer {API_KEY}"
    assert source.credential_ciphertext != API_KEY


@pytest.mark.asyncio
async def test_teamwork_rejected_key_never_leaks_secret(session_factory, seed, caplog):
    project_id = await seed.project()
    source_id = await _teamwork_source(session_factory, project_id)
    transport = httpx.MockTransport(lambda request: httpx.Response(401, json={"error": "nope"}))

    status = await _sync(session_factory, source_id, connector=TeamworkConnector(transport))

    assert status is SourceStatus.ERROR
    source = await seed.source(source_id)
    assert source.sync_error == "Teamwork rejected the API key"
    assert API_KEY not in caplog.text


@pytest.mark.asyncio
async def test_unexpected_connector_error_is_generic(session_factory, seed):
    project_id = await seed.project()
    source_id = await seed.ready_source(project_id)

    class Exploding:
        source_type = "file"

        async def fetch(self, source, secret=None):
            raise RuntimeError(f"boom with {API_KEY}")

    assert await _sync(session_factory, source_id, connector=Exploding()) is SourceStatus.ERROR
    source = await seed.source(source_id)
    assert source.sync_error == "Unexpected error while fetching records"
    # The previous records stay cached
    assert source.record_count == 5


def test_infer_schema_prefers_non_null_types():
    records = [{"id": 1, "note": None, "ok": True}, {"id": 2, "note": "x", "ok": False}]
    assert infer_schema(records) == {"id": "integer", "note": "string", "ok": "boolean"}


@pytest.mark.asyncio
async def test_detect_schema_requires_synced_records(session_factory, seed):
    project_id = await seed.project()
    pending = await seed.pending_source(project_id)
    ready = await seed.ready_source(project_id)
    async with session_factory() as session:
        service = SourceConfigService(session)
        with pytest.raises(ValidationFailedError) as exc_info:
            await service.detect_schema(pending, ORG)
        assert exc_info.value.code == "SOURCE_NOT_SYNCED"

        mapping = await service.detect_schema(ready, ORG)
    assert mapping.detected_schema == {
        "ticket": "string",
        "author": "string",
        "role": "string",
        "body": "string",
    }


@pytest.mark.asyncio
async def test_mapping_rejects_duplicate_targets(session_factory, seed):
    project_id = await seed.project()
    source_id = await seed.ready_source(project_id)
    async with session_factory() as session:
        service = SourceConfigService(session)
        with pytest.raises(BadRequestError) as exc_info:
            await service.replace_mapping(source_id, ORG, {"author": "content", "body": "content"})
        assert exc_info.value.details == {"targets": ["content"]}

        mapping = await service.replace_mapping(source_id, ORG, {"body": "content", "role": ""})
    assert mapping.mapping == {"body": "content", "role": ""}


@pytest.mark.asyncio
async def test_detect_pii_uses_custom_patterns(session_factory, seed):
    project_id = await seed.project()
    source_id = await seed.ready_source(project_id)
    async with session_factory() as session:
        service = SourceConfigService(session)
        await service.replace_deidentification(
            source_id,
            ORG,
            DeidentificationSettings(
                custom_patterns=[CustomPattern(name="ticket_id", pattern=r"T-\d+")]
            ),
        )
        config = await service.detect_pii(source_id, ORG)

    detected = {(item["field"], item["type"]): item["confidence"] for item in config.detected_pii}
    assert detected[("body", "email")] == 0.2
    assert detected[("body", "phone")] == 0.2
    assert detected[("ticket", "ticket_id")] == 1.0


@pytest.mark.asyncio
async def test_config_of_foreign_source_is_not_found(session_factory, seed):
    project_id = await seed.project()
    source_id = await seed.ready_source(project_id)
    async with session_factory() as session:
        with pytest.raises(NotFoundError):
            await SourceConfigService(session).get_mapping(source_id, OTHER_ORG)
