"""Connector protocol shared by every source type."""
from __future__ import annotations

from typing import Any, Protocol

from dataprep.db.models import Source


class ConnectorError(Exception):
    """Fetching records from an external system failed.

    Messages end up in ``Source.sync_error`` and must never contain secrets.
    """


class Connector(Protocol):
    source_type: str

    async def fetch(self, source: Source, secret: str | None = None) -> list[dict[str, Any]]:
        """Return every record of the source as a flat JSON-compatible dict."""
        ...
