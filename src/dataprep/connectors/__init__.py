"""Source connectors, looked up by source type."""
from __future__ import annotations

from collections.abc import Callable

from dataprep.connectors.base import Connector, ConnectorError
from dataprep.connectors.files import FileConnector
from dataprep.connectors.teamwork import TeamworkConnector

_REGISTRY: dict[str, Callable[[], Connector]] = {
    "file": FileConnector,
    "teamwork": TeamworkConnector,
}


def get_connector(source_type: str) -> Connector:
    factory = _REGISTRY.get(source_type)
    if factory is None:
        raise ConnectorError(f"No connector for source type '{source_type}'")
    return factory()


def register_connector(source_type: str, factory: Callable[[], Connector]) -> None:
    """Install or replace the connector used for ``source_type``."""
    _REGISTRY[source_type] = factory


__all__ = [
    "Connector",
    "ConnectorError",
    "FileConnector",
    "TeamworkConnector",
    "get_connector",
    "register_connector",
]
