"""Uploaded file sources: CSV, JSON and JSON Lines."""
from __future__ import annotations

import asyncio
import csv
import json
from pathlib import Path
from typing import Any

from dataprep.connectors.base import ConnectorError
from dataprep.db.models import Source

SUPPORTED_EXTENSIONS = {".csv": "csv", ".json": "json", ".jsonl": "jsonl", ".ndjson": "jsonl"}


def detect_format(file_name: str | None, content_type: str | None = None) -> str | None:
    """Map an upload to one of ``csv``, ``json`` or ``jsonl`` (None when unsupported)."""
    if file_name:
        fmt = SUPPORTED_EXTENSIONS.get(Path(file_name).suffix.lower())
        if fmt:
            return fmt
    if content_type:
        if content_type in ("text/csv", "application/csv"):
            return "csv"
        if content_type == "application/json":
            return "json"
        if content_type in ("application/x-ndjson", "application/jsonl"):
            return "jsonl"
    return None


def _parse_csv(path: Path) -> list[dict[str, Any]]:
    with open(path, newline="", encoding="utf-8-sig") as f:
        reader = csv.DictReader(f)
        # Short rows give None values, surplus columns land under the None key
        return [{k: v for k, v in row.items() if k is not None} for row in reader]


def _parse_json(path: Path) -> list[dict[str, Any]]:
    with open(path, encoding="utf-8") as f:
        payload = json.load(f)
    if isinstance(payload, dict):
        for key in ("records", "data", "items"):
            if isinstance(payload.get(key), list):
                payload = payload[key]
                break
        else:
            payload = [payload]
    if not isinstance(payload, list):
        raise ConnectorError("JSON file must contain an array of objects")
    return payload


def _parse_jsonl(path: Path) -> list[dict[str, Any]]:
    records: list[dict[str, Any]] = []
    with open(path, encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError as err:
                raise ConnectorError(f"Invalid JSON on line {line_no}: {err.msg}") from err
    return records


_PARSERS = {"csv": _parse_csv, "json": _parse_json, "jsonl": _parse_jsonl}


def parse_file(path: Path, fmt: str) -> list[dict[str, Any]]:
    parser = _PARSERS.get(fmt)
    if parser is None:
        raise ConnectorError(f"Unsupported file type: {fmt}")
    try:
        records = parser(path)
    except FileNotFoundError as err:
        raise ConnectorError("Uploaded file is missing") from err
    except (json.JSONDecodeError, UnicodeDecodeError, csv.Error) as err:
        raise ConnectorError(f"Could not parse {fmt} file: {err}") from err
    non_objects = sum(1 for record in records if not isinstance(record, dict))
    if non_objects:
        raise ConnectorError(f"{non_objects} entries are not objects")
    return records


class FileConnector:
    source_type = "file"

    async def fetch(self, source: Source, secret: str | None = None) -> list[dict[str, Any]]:
        if not source.file_path:
            raise ConnectorError("Source has no uploaded file")
        fmt = source.file_type or detect_format(source.file_name)
        if fmt is None:
            raise ConnectorError("Unsupported file type")
        return await asyncio.to_thread(parse_file, Path(source.file_path), fmt)
