"""Teamwork Desk connector.

Pages through the Desk API for each configured data type. The API key is
only ever held in memory for the duration of ``fetch``.
"""
from __future__ import annotations

import logging
from typing import Any

import httpx
from circuitbreaker import CircuitBreakerError, circuit

from dataprep.connectors.base import ConnectorError
from dataprep.core.settings import get_settings
from dataprep.db.models import Source

logger = logging.getLogger(__name__)

# data type -> (endpoint, response collection key)
ENDPOINTS: dict[str, tuple[str, str]] = {
    "tickets": ("tickets.json", "tickets"),
    "conversations": ("messages.json", "messages"),
}

PAGE_SIZE = 100
MAX_PAGES = 500


def base_url(domain: str) -> str:
    domain = domain.strip().rstrip("/")
    if domain.startswith(("http://", "https://")):
        return domain
    if "." not in domain:
        domain = f"{domain}.teamwork.com"
    return f"https://{domain}"


def flatten(item: dict[str, Any]) -> dict[str, Any]:
    """Keep scalar fields; nested objects with an id collapse to ``<key>_id``."""
    flat: dict[str, Any] = {}
    for key, value in item.items():
        if isinstance(value, dict):
            if "id" in value:
                flat[f"{key}_id"] = value["id"]
        elif not isinstance(value, list):
            flat[key] = value
    return flat


@circuit(failure_threshold=5, recovery_timeout=60, expected_exception=httpx.TransportError)
async def _get_page(client: httpx.AsyncClient, path: str, page: int) -> dict[str, Any]:
    response = await client.get(path, params={"page": page, "pageSize": PAGE_SIZE})
    response.raise_for_status()
    payload = response.json()
    if not isinstance(payload, dict):
        raise ConnectorError(f"Unexpected response from {path}")
    return payload


class TeamworkConnector:
    source_type = "teamwork"

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    def _client(self, source: Source, secret: str) -> httpx.AsyncClient:
        settings = get_settings()
        api_root = f"{base_url(source.remote_domain or '')}{settings.teamwork_api_path}/"
        return httpx.AsyncClient(
            base_url=api_root,
            headers={"Authorization": f"Bearer {secret}", "Accept": "application/json"},
            timeout=settings.connector_timeout_seconds,
            transport=self._transport,
        )

    async def fetch(self, source: Source, secret: str | None = None) -> list[dict[str, Any]]:
        if not secret:
            raise ConnectorError("Teamwork source has no API key")
        if not source.remote_domain:
            raise ConnectorError("Teamwork source has no domain")

        records: list[dict[str, Any]] = []
        async with self._client(source, secret) as client:
            for data_type in source.data_types or ["tickets"]:
                if data_type not in ENDPOINTS:
                    raise ConnectorError(f"Unsupported Teamwork data type: {data_type}")
                fetched = await self._fetch_type(client, data_type)
                logger.info(f"Source {source.id}: fetched {len(fetched)} {data_type}")
                records.extend(fetched)
        return records

    async def _fetch_type(self, client: httpx.AsyncClient, data_type: str) -> list[dict[str, Any]]:
        path, key = ENDPOINTS[data_type]
        items: list[dict[str, Any]] = []
        for page in range(1, MAX_PAGES + 1):
            try:
                payload = await _get_page(client, path, page)
            except httpx.HTTPStatusError as err:
                code = err.response.status_code
                if code in (401, 403):
                    raise ConnectorError("Teamwork rejected the API key") from err
                raise ConnectorError(f"Teamwork API returned HTTP {code} for {data_type}") from err
            except httpx.TransportError as err:
                raise ConnectorError(f"Could not reach Teamwork: {type(err).__name__}") from err
            except CircuitBreakerError as err:
                raise ConnectorError("Teamwork is temporarily unavailable") from err

            batch = payload.get(key) or []
            items.extend({**flatten(item), "data_type": data_type} for item in batch)
            pages = payload.get("meta", {}).get("page", {}).get("pages")
            if not batch or (isinstance(pages, int) and page >= pages):
                break
        return items
