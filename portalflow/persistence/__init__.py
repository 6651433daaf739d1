"""Persistence layer for portal requests and their workflows."""

from __future__ import annotations

import os
from typing import Optional

from ..config import PortalflowConfig, load_config
from .inmemory import InMemoryPortalRepository
from .repository import PortalRepository, PortalSession
from .sql import SQLPortalRepository


def get_repository(
    database_url: Optional[str] = None, config: Optional[PortalflowConfig] = None
) -> PortalRepository:
    """Construct the portal repository.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``PORTALFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned. Every call builds a new
    repository; the caller owns it and must ``close()`` it.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("PORTALFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryPortalRepository()
    return SQLPortalRepository(database_url)


__all__ = [
    "InMemoryPortalRepository",
    "PortalRepository",
    "PortalSession",
    "SQLPortalRepository",
    "get_repository",
]
