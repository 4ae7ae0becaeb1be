"""Destination store interface shared by the Notion and SQLite backends."""

from __future__ import annotations

from typing import Any, Optional, Protocol

from .common_types import QueryPage, Record
from .normalize import SourceConfig


class DestinationStore(Protocol):
    """Create/update/query operations of the workspace database.

    Implementations raise ``RateLimited`` / ``TransientStoreError`` for
    retryable failures and ``PermanentError`` for everything the engine
    must not retry.
    """

    def query_all(self, page_token: Optional[str], page_size: int = 100) -> QueryPage:
        ...

    def create(self, record: Record, cfg: SourceConfig) -> str:
        ...

    def update(self, stored_id: str, fields: dict[str, Any], cfg: SourceConfig) -> None:
        ...

    def archive(self, stored_id: str) -> None:
        ...

    def close(self) -> None:
        ...


def record_fields(record: Record, cfg: SourceConfig) -> dict[str, Any]:
    """Flatten a record into ``{property name: value}`` for writing."""
    fields: dict[str, Any] = {
        cfg.title_property: record.title,
        cfg.url_property: record.url,
    }
    fields.update(record.extra_fields)
    return fields
