"""Training-data output builders.

Records reaching this point carry target field names from the schema
mapping. The conversational and QA builders read ``content`` (or a
``question``/``answer`` pair), ``conversation_id``, ``role`` and ``speaker``;
the JSON builder emits records with whatever fields they carry.
"""
from __future__ import annotations

import json
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dataprep.pipelines.interfaces import PipelineRecord
from dataprep.schemas import DatasetStats, OutputFormat, ProcessingSettings, QualityFilters

MEDIA_TYPES: dict[str, str] = {
    "conversational": "application/x-ndjson",
    "qa": "application/x-ndjson",
    "json": "application/json",
}


@dataclass(slots=True)
class Message:
    role: str
    content: str
    speaker: str | None = None


@dataclass(slots=True)
class Conversation:
    key: str
    source_id: int
    source_name: str
    messages: list[Message] = field(default_factory=list)
    qa_pairs: list[tuple[str, str]] = field(default_factory=list)


def record_text(
    record: PipelineRecord, output_format: OutputFormat = "conversational"
) -> str | None:
    """Text the quality filters measure, or None when the record has none."""
    fields = record.fields
    if "question" in fields and "answer" in fields:
        return f"{fields['question']} {fields['answer']}"
    content = fields.get("content")
    if isinstance(content, str):
        return content
    if output_format == "json":
        values = [value for value in fields.values() if isinstance(value, str)]
        return " ".join(values) if values else None
    return None


def passes_quality_filters(
    record: PipelineRecord,
    filters: QualityFilters,
    output_format: OutputFormat = "conversational",
) -> bool:
    text = record_text(record, output_format)
    if text is None:
        return False
    return filters.min_length <= len(text.strip()) <= filters.max_length


def chunk_text(text: str, size: int) -> list[str]:
    """Split text into pieces of at most ``size`` characters, preferring whitespace."""
    text = text.strip()
    chunks: list[str] = []
    while len(text) > size:
        cut = text.rfind(" ", 0, size + 1)
        if cut <= 0:
            cut = size
        chunks.append(text[:cut].rstrip())
        text = text[cut:].lstrip()
    if text:
        chunks.append(text)
    return chunks


def group_conversations(records: list[PipelineRecord], chunk_size: int) -> list[Conversation]:
    """Group records by (source, conversation_id), keeping first-seen order.

    Records without a conversation id form single-message conversations.
    Records with neither text content nor a question/answer pair are skipped.
    """
    conversations: OrderedDict[str, Conversation] = OrderedDict()
    for index, record in enumerate(records):
        if record_text(record) is None:
            continue
        conversation_id = record.fields.get("conversation_id")
        key = (
            f"{record.source_id}:{conversation_id}"
            if conversation_id not in (None, "")
            else f"{record.source_id}:#{index}"
        )
        conversation = conversations.get(key)
        if conversation is None:
            conversation = Conversation(key, record.source_id, record.source_name)
            conversations[key] = conversation

        if "question" in record.fields and "answer" in record.fields:
            conversation.qa_pairs.append(
                (str(record.fields["question"]).strip(), str(record.fields["answer"]).strip())
            )
            continue

        speaker = record.fields.get("speaker")
        role = str(record.fields.get("role") or "user")
        for piece in chunk_text(str(record.fields["content"]), chunk_size):
            conversation.messages.append(
                Message(role=role, content=piece, speaker=str(speaker) if speaker else None)
            )
    return list(conversations.values())


def compute_stats(conversations: list[Conversation]) -> DatasetStats:
    non_empty = [c for c in conversations if c.messages or c.qa_pairs]
    if not non_empty:
        return DatasetStats()
    lengths = [len(c.messages) + 2 * len(c.qa_pairs) for c in non_empty]
    speakers = {m.speaker for c in non_empty for m in c.messages if m.speaker}
    return DatasetStats(
        total_conversations=len(non_empty),
        avg_conversation_length=round(sum(lengths) / len(lengths), 2),
        unique_speakers=len(speakers),
    )


def _metadata(conversation: Conversation) -> dict[str, Any]:
    return {"sourceId": conversation.source_id, "source": conversation.source_name}


def build_records(
    conversations: list[Conversation], settings: ProcessingSettings
) -> list[dict[str, Any]]:
    """Build conversational or QA items; JSON output uses ``build_json_records``."""
    builders = {
        "conversational": _build_conversational,
        "qa": _build_qa,
    }
    return builders[settings.output_format](conversations, settings.include_metadata)


def _build_conversational(
    conversations: list[Conversation], include_metadata: bool
) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for conversation in conversations:
        messages = [{"role": m.role, "content": m.content} for m in conversation.messages]
        for question, answer in conversation.qa_pairs:
            messages.append({"role": "user", "content": question})
            messages.append({"role": "assistant", "content": answer})
        if not messages:
            continue
        item: dict[str, Any] = {"messages": messages}
        if include_metadata:
            item["metadata"] = _metadata(conversation)
        out.append(item)
    return out


def _build_qa(conversations: list[Conversation], include_metadata: bool) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for conversation in conversations:
        pairs = list(conversation.qa_pairs)
        # A user turn followed by a non-user turn forms a pair
        messages = conversation.messages
        for current, following in zip(messages, messages[1:], strict=False):
            if current.role == "user" and following.role != "user":
                pairs.append((current.content, following.content))
        for question, answer in pairs:
            item: dict[str, Any] = {"question": question, "answer": answer}
            if include_metadata:
                item["metadata"] = _metadata(conversation)
            out.append(item)
    return out


def build_json_records(
    records: list[PipelineRecord], include_metadata: bool
) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for record in records:
        item = dict(record.fields)
        if include_metadata:
            item["metadata"] = {"sourceId": record.source_id, "source": record.source_name}
        out.append(item)
    return out


def output_filename(run_id: int, output_format: OutputFormat) -> str:
    if output_format == "json":
        return f"run-{run_id}.json"
    return f"run-{run_id}-{output_format}.jsonl"


def write_records(path: Path, records: list[dict[str, Any]], output_format: OutputFormat) -> int:
    """Write records to ``path`` and return the file size in bytes."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_records(records, output_format), encoding="utf-8")
    return path.stat().st_size


def read_records(path: Path, output_format: str, limit: int | None = None) -> list[dict[str, Any]]:
    """Read back up to ``limit`` records from a written dataset file."""
    with open(path, encoding="utf-8") as f:
        if output_format == "json":
            records = json.load(f)
            return records[:limit] if limit is not None else records
        out: list[dict[str, Any]] = []
        for line in f:
            if limit is not None and len(out) >= limit:
                break
            if line.strip():
                out.append(json.loads(line))
        return out


def _messages_to_pairs(messages: list[dict[str, Any]]) -> list[tuple[str, str]]:
    pairs = []
    for current, following in zip(messages, messages[1:], strict=False):
        if current.get("role") == "user" and following.get("role") != "user":
            pairs.append((str(current.get("content", "")), str(following.get("content", ""))))
    return pairs


def convert_records(
    records: list[dict[str, Any]], source_format: str, target_format: OutputFormat
) -> list[dict[str, Any]]:
    """Re-shape written dataset items into another output format.

    Items that carry nothing usable for the target format are dropped.
    """
    if source_format == target_format:
        return list(records)

    out: list[dict[str, Any]] = []
    for record in records:
        metadata = {"metadata": record["metadata"]} if "metadata" in record else {}
        if source_format == "conversational":
            messages = record.get("messages") or []
            if target_format == "qa":
                out.extend(
                    {"question": q, "answer": a, **metadata}
                    for q, a in _messages_to_pairs(messages)
                )
            else:
                out.extend(
                    {"role": m.get("role"), "content": m.get("content"), **metadata}
                    for m in messages
                )
        elif source_format == "qa":
            if target_format == "conversational":
                out.append(
                    {
                        "messages": [
                            {"role": "user", "content": record.get("question")},
                            {"role": "assistant", "content": record.get("answer")},
                        ],
                        **metadata,
                    }
                )
            else:
                out.append(dict(record))
        else:
            if target_format == "qa":
                if "question" in record and "answer" in record:
                    out.append(
                        {"question": record["question"], "answer": record["answer"], **metadata}
                    )
            elif isinstance(record.get("content"), str):
                role = str(record.get("role") or "user")
                out.append({"messages": [{"role": role, "content": record["content"]}], **metadata})
    return out


def render_records(records: list[dict[str, Any]], output_format: OutputFormat) -> str:
    if output_format == "json":
        return json.dumps(records, ensure_ascii=False)
    return "".join(json.dumps(record, ensure_ascii=False) + "\n" for record in records)


def export_filename(dataset_id: int, output_format: OutputFormat) -> str:
    if output_format == "json":
        return f"dataset-{dataset_id}.json"
    return f"dataset-{dataset_id}-{output_format}.jsonl"
