"""Pattern based PII detection and de-identification strategies.

The built-in detectors only cover well-structured identifiers. Anything
domain specific is expected to arrive as a source's custom patterns or as an
explicit per-field rule.
"""
from __future__ import annotations

import hashlib
import re
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from dataprep.schemas import CustomPattern, DetectedPii

BUILTIN_PATTERNS: dict[str, str] = {
    "email": r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}",
    "phone": r"(?<!\w)(?:\+?\d{1,3}[\s.-]?)?(?:\(\d{3}\)|\d{3})[\s.-]?\d{3}[\s.-]?\d{4}(?!\w)",
    "ip_address": r"\b(?:\d{1,3}\.){3}\d{1,3}\b",
}

REDACTED = "[REDACTED]"


@dataclass(slots=True)
class PiiMatch:
    type: str
    start: int
    end: int


class PiiDetector:
    def __init__(self, custom_patterns: Iterable[CustomPattern] = ()) -> None:
        self._patterns: list[tuple[str, re.Pattern[str]]] = [
            (name, re.compile(pattern)) for name, pattern in BUILTIN_PATTERNS.items()
        ]
        for custom in custom_patterns:
            self._patterns.append((custom.name, re.compile(custom.pattern)))

    def scan(self, value: str) -> list[PiiMatch]:
        """Return non-overlapping matches, earlier detectors winning ties."""
        matches: list[PiiMatch] = []
        for name, pattern in self._patterns:
            for found in pattern.finditer(value):
                if found.start() == found.end():
                    continue
                if any(found.start() < m.end and m.start < found.end() for m in matches):
                    continue
                matches.append(PiiMatch(name, found.start(), found.end()))
        return sorted(matches, key=lambda m: m.start)

    def count(self, value: Any) -> int:
        return len(self.scan(value)) if isinstance(value, str) else 0

    def replace(self, value: str) -> tuple[str, int]:
        """Replace every match with an upper-cased type placeholder."""
        matches = self.scan(value)
        if not matches:
            return value, 0
        parts: list[str] = []
        cursor = 0
        for match in matches:
            parts.append(value[cursor:match.start])
            parts.append(f"[{match.type.upper()}]")
            cursor = match.end
        parts.append(value[cursor:])
        return "".join(parts), len(matches)

    def report(self, records: Iterable[dict[str, Any]]) -> list[DetectedPii]:
        """Summarize which fields carry which PII types.

        Confidence is the share of the field's non-empty text values that
        contain at least one match of that type.
        """
        totals: dict[str, int] = defaultdict(int)
        hits: dict[tuple[str, str], int] = defaultdict(int)
        for record in records:
            for field_name, value in record.items():
                if not isinstance(value, str) or not value:
                    continue
                totals[field_name] += 1
                for pii_type in {m.type for m in self.scan(value)}:
                    hits[(field_name, pii_type)] += 1
        return [
            DetectedPii(field=field_name, type=pii_type, confidence=round(n / totals[field_name], 2))
            for (field_name, pii_type), n in sorted(hits.items())
        ]


def apply_strategy(record: dict[str, Any], field_name: str, strategy: str) -> bool:
    """Apply one de-identification rule in place. Returns True if a value changed."""
    if field_name not in record or record[field_name] in (None, ""):
        return False
    value = record[field_name]
    if strategy == "remove":
        del record[field_name]
    elif strategy == "mask":
        record[field_name] = "*" * len(str(value))
    elif strategy == "redact":
        record[field_name] = REDACTED
    elif strategy == "hash":
        record[field_name] = hashlib.sha256(str(value).encode("utf-8")).hexdigest()[:16]
    else:
        raise ValueError(f"Unknown de-identification strategy: {strategy}")
    return True
