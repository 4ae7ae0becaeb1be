"""SQLite-backed destination store for local dry runs and tests.

Mirrors the Notion database shape: one row per page, properties kept as
a JSON object, archived rows hidden from queries.  Uses WAL mode +
NORMAL synchronous like any other local state file.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from .common_types import QueryPage, Record, StoredRecord
from .errors import PermanentError, StoreUnavailable, TransientStoreError
from .normalize import SourceConfig
from .store import record_fields

SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  stored_id TEXT NOT NULL UNIQUE,
  created_time TEXT NOT NULL,
  archived INTEGER NOT NULL DEFAULT 0,
  fields TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_records_archived ON records(archived);
"""


def _json_default(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"not JSON serialisable: {type(value).__name__}")


class SqliteStore:
    """Local workspace-database stand-in implementing ``DestinationStore``."""

    def __init__(self, path: str) -> None:
        try:
            self.conn = sqlite3.connect(path, isolation_level=None)
            self.conn.execute("PRAGMA journal_mode=WAL;")
            self.conn.execute("PRAGMA synchronous=NORMAL;")
            self.conn.execute("PRAGMA busy_timeout=5000;")
            self.conn.executescript(SCHEMA)
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"cannot open sqlite store {path!r}: {exc}") from exc

    # ── Query ───────────────────────────────────────────────────

    def query_all(self, page_token: Optional[str], page_size: int = 100) -> QueryPage:
        """Page through live rows in insertion order; the token is the last seq."""
        after = int(page_token) if page_token else 0
        try:
            rows = self.conn.execute(
                "SELECT seq, stored_id, created_time, fields FROM records "
                "WHERE archived=0 AND seq>? ORDER BY seq LIMIT ?",
                (after, page_size + 1),
            ).fetchall()
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"sqlite query failed: {exc}") from exc
        has_more = len(rows) > page_size
        rows = rows[:page_size]
        records = [
            StoredRecord(
                stored_id=stored_id,
                fields=json.loads(fields),
                created_time=datetime.fromisoformat(created),
            )
            for _seq, stored_id, created, fields in rows
        ]
        next_token = str(rows[-1][0]) if has_more and rows else None
        return QueryPage(records=records, next_page_token=next_token)

    # ── Write ───────────────────────────────────────────────────

    def create(self, record: Record, cfg: SourceConfig) -> str:
        stored_id = uuid.uuid4().hex
        payload = self._dump(record_fields(record, cfg))
        try:
            self.conn.execute(
                "INSERT INTO records(stored_id, created_time, fields) VALUES(?,?,?)",
                (stored_id, datetime.now(timezone.utc).isoformat(), payload),
            )
        except sqlite3.OperationalError as exc:
            # "database is locked" and friends
            raise TransientStoreError(f"sqlite write failed: {exc}") from exc
        return stored_id

    def update(self, stored_id: str, fields: dict[str, Any], cfg: SourceConfig) -> None:
        row = self.conn.execute(
            "SELECT fields FROM records WHERE stored_id=?", (stored_id,)
        ).fetchone()
        if row is None:
            raise PermanentError(f"no such record: {stored_id}", status=404)
        merged = json.loads(row[0])
        merged.update(json.loads(self._dump(fields)))
        try:
            self.conn.execute(
                "UPDATE records SET fields=? WHERE stored_id=?",
                (json.dumps(merged), stored_id),
            )
        except sqlite3.OperationalError as exc:
            raise TransientStoreError(f"sqlite write failed: {exc}") from exc

    def archive(self, stored_id: str) -> None:
        cur = self.conn.execute(
            "UPDATE records SET archived=1 WHERE stored_id=?", (stored_id,)
        )
        if cur.rowcount == 0:
            raise PermanentError(f"no such record: {stored_id}", status=404)

    # ── Helpers ─────────────────────────────────────────────────

    @staticmethod
    def _dump(fields: dict[str, Any]) -> str:
        try:
            return json.dumps(fields, default=_json_default)
        except (TypeError, ValueError) as exc:
            raise PermanentError(f"malformed payload: {exc}") from exc

    def count(self, include_archived: bool = False) -> int:
        sql = "SELECT COUNT(*) FROM records" + ("" if include_archived else " WHERE archived=0")
        return int(self.conn.execute(sql).fetchone()[0])

    def close(self) -> None:
        self.conn.close()
