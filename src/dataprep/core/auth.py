"""Caller tenancy resolution.

Authentication happens upstream; the gateway forwards the authenticated
caller's organization in the ``X-Organization-Id`` header.
"""
from __future__ import annotations

from typing import Annotated

from fastapi import Header

from dataprep.core.errors import UnauthorizedError


async def get_organization_id(
    x_organization_id: Annotated[str | None, Header()] = None,
) -> int:
    if not x_organization_id:
        raise UnauthorizedError("Authentication required")
    try:
        organization_id = int(x_organization_id)
    except ValueError as err:
        raise UnauthorizedError("Invalid organization context") from err
    if organization_id <= 0:
        raise UnauthorizedError("Invalid organization context")
    return organization_id
