"""Response envelope and pagination helpers shared by the routers."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Annotated, Any

from fastapi import Query
from pydantic import BaseModel

from dataprep.core.errors import BadRequestError
from dataprep.core.settings import get_settings


@dataclass(slots=True)
class Pagination:
    page: int
    page_size: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def meta(self, total_count: int) -> dict[str, Any]:
        total_pages = math.ceil(total_count / self.page_size) if total_count else 0
        return {
            "pagination": {
                "page": self.page,
                "pageSize": self.page_size,
                "totalPages": total_pages,
                "totalCount": total_count,
                "hasNextPage": self.page < total_pages,
            }
        }


async def get_pagination(
    page: Annotated[int, Query()] = 1,
    page_size: Annotated[int | None, Query(alias="pageSize")] = None,
) -> Pagination:
    settings = get_settings()
    size = settings.default_page_size if page_size is None else page_size
    if page < 1:
        raise BadRequestError("Invalid page: must be a positive integer")
    if size < 1 or size > settings.max_page_size:
        raise BadRequestError(f"Invalid pageSize: must be between 1 and {settings.max_page_size}")
    return Pagination(page=page, page_size=size)


def envelope(data: Any, meta: dict[str, Any] | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"data": data}
    if meta is not None:
        body["meta"] = meta
    return body


def paginated(items: list[Any], total_count: int, pagination: Pagination) -> dict[str, Any]:
    return envelope(items, pagination.meta(total_count))


def dump(model: BaseModel) -> dict[str, Any]:
    """Serialize an output model with camelCase keys and JSON-safe values."""
    return model.model_dump(mode="json", by_alias=True)
