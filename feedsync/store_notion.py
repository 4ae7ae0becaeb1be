"""Notion database as destination store (REST API over httpx).

Endpoints used:
 1. POST  /v1/databases/{id}/query   (paginated scan: start_cursor / has_more)
 2. POST  /v1/pages                  (create one row)
 3. PATCH /v1/pages/{id}             (update properties / archive)

No retries happen here: 429 surfaces as ``RateLimited`` and the engine
owns the backoff.  5xx and transport errors surface as
``TransientStoreError``; every other 4xx is a ``PermanentError``.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import httpx

from ._http import raise_for_store_status, sanitize_exc
from .common_types import QueryPage, Record, StoredRecord
from .errors import ConfigError, PermanentError, TransientStoreError
from .normalize import SourceConfig, parse_timestamp
from .store import record_fields

logger = logging.getLogger(__name__)

NOTION_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"

# Notion rejects rich_text/title text objects longer than this.
MAX_TEXT_LEN = 2000


# ── Property (de)serialisation ──────────────────────────────────

def _plain_text(parts: Any) -> str:
    if not isinstance(parts, list):
        return ""
    out: List[str] = []
    for p in parts:
        if not isinstance(p, dict):
            continue
        txt = p.get("plain_text")
        if txt is None:
            txt = (p.get("text") or {}).get("content", "")
        out.append(str(txt))
    return "".join(out)


def flatten_property(prop: Dict[str, Any]) -> Any:
    """Reduce one Notion property object to a plain Python value."""
    kind = prop.get("type")
    if not kind:
        return None
    val = prop.get(kind)
    if kind in ("title", "rich_text"):
        return _plain_text(val)
    if kind in ("select", "status"):
        return (val or {}).get("name")
    if kind == "multi_select":
        return ", ".join(str(o.get("name", "")) for o in (val or []) if isinstance(o, dict))
    if kind == "date":
        return (val or {}).get("start")
    if kind == "formula":
        return flatten_property(val or {})
    if kind == "relation":
        return [r.get("id") for r in (val or []) if isinstance(r, dict)]
    # url, number, checkbox, email, phone_number, created_time, …
    return val


def _text(value: Any) -> List[Dict[str, Any]]:
    if value is None or value == "":
        return []
    return [{"type": "text", "text": {"content": str(value)[:MAX_TEXT_LEN]}}]


def _date(value: Any) -> Optional[Dict[str, Any]]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return {"start": value.isoformat()}
    if isinstance(value, date):
        return {"start": value.isoformat()}
    parsed = parse_timestamp(value)
    return {"start": parsed.isoformat()} if parsed else None


def _number(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    try:
        return float(str(value).replace(",", ""))
    except ValueError:
        raise PermanentError(f"not a number: {value!r}") from None


def to_property(kind: str, value: Any) -> Dict[str, Any]:
    """Build one Notion property value of type *kind*."""
    if kind in ("title", "rich_text"):
        return {kind: _text(value)}
    if kind == "url":
        return {"url": str(value) if value else None}
    if kind == "number":
        return {"number": _number(value)}
    if kind == "select":
        return {"select": {"name": str(value)[:100]} if value else None}
    if kind == "multi_select":
        names = value if isinstance(value, list) else [v.strip() for v in str(value or "").split(",")]
        return {"multi_select": [{"name": str(n)[:100]} for n in names if n]}
    if kind == "date":
        return {"date": _date(value)}
    if kind == "checkbox":
        return {"checkbox": bool(value)}
    raise PermanentError(f"unsupported property type {kind!r}")


def _infer_kind(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return "checkbox"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, (datetime, date)):
        return "date"
    if isinstance(value, str):
        return "rich_text"
    return None


def to_notion_properties(fields: Dict[str, Any], cfg: SourceConfig) -> Dict[str, Any]:
    """Map ``{property name: value}`` onto Notion property objects.

    Types come from the source's declared ``property_types`` first, then
    the title/url properties, then the Python type of the value.  A
    ``None`` value with no declared type is left out (nothing to clear).
    """
    props: Dict[str, Any] = {}
    for name, value in fields.items():
        kind = cfg.property_types.get(name)
        if kind is None:
            if name == cfg.title_property:
                kind = "title"
            elif name == cfg.url_property:
                kind = "url"
            else:
                kind = _infer_kind(value)
        if kind is None:
            continue
        props[name] = to_property(kind, value)
    return props


# ── Store ───────────────────────────────────────────────────────

class NotionStore:
    """Synchronous Notion database client implementing ``DestinationStore``."""

    def __init__(
        self,
        token: str,
        database_id: str,
        *,
        base_url: str = NOTION_BASE,
        notion_version: str = NOTION_VERSION,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        if not token:
            raise ConfigError("NOTION_API_TOKEN missing")
        if not database_id:
            raise ConfigError("NOTION_DATABASE_ID missing")
        self.database_id = database_id
        self.client = httpx.Client(
            base_url=base_url.rstrip("/") + "/",
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {token}",
                "Notion-Version": notion_version,
                "Content-Type": "application/json",
                "User-Agent": "feedsync/1.0",
            },
        )

    def _send(self, method: str, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            r = self.client.request(method, path, json=payload)
        except httpx.TransportError as exc:
            raise TransientStoreError(
                f"Notion {method} {path}: {type(exc).__name__}: {sanitize_exc(exc)}"
            ) from exc
        raise_for_store_status(r)
        try:
            data = r.json()
        except ValueError:
            raise TransientStoreError(
                f"Notion returned non-JSON (status={r.status_code}, "
                f"content-type={r.headers.get('content-type', '')!r})"
            ) from None
        if not isinstance(data, dict):
            raise PermanentError(f"Notion returned {type(data).__name__} instead of object")
        return data

    # ── DestinationStore ────────────────────────────────────────

    def query_all(self, page_token: Optional[str], page_size: int = 100) -> QueryPage:
        body: Dict[str, Any] = {"page_size": page_size}
        if page_token:
            body["start_cursor"] = page_token
        data = self._send("POST", f"databases/{self.database_id}/query", body)

        records: List[StoredRecord] = []
        for page in data.get("results") or []:
            if not isinstance(page, dict) or page.get("archived") or page.get("in_trash"):
                continue
            props = page.get("properties") or {}
            records.append(
                StoredRecord(
                    stored_id=str(page.get("id", "")),
                    fields={name: flatten_property(p) for name, p in props.items() if isinstance(p, dict)},
                    created_time=parse_timestamp(page.get("created_time")),
                )
            )
        next_token = data.get("next_cursor") if data.get("has_more") else None
        return QueryPage(records=records, next_page_token=next_token or None)

    def create(self, record: Record, cfg: SourceConfig) -> str:
        payload = {
            "parent": {"database_id": self.database_id},
            "properties": to_notion_properties(record_fields(record, cfg), cfg),
        }
        data = self._send("POST", "pages", payload)
        page_id = data.get("id")
        if not page_id:
            raise PermanentError("Notion create returned no page id")
        logger.debug("Created Notion page %s for %s", page_id, record.identity_key)
        return str(page_id)

    def update(self, stored_id: str, fields: Dict[str, Any], cfg: SourceConfig) -> None:
        self._send("PATCH", f"pages/{stored_id}", {"properties": to_notion_properties(fields, cfg)})

    def archive(self, stored_id: str) -> None:
        self._send("PATCH", f"pages/{stored_id}", {"archived": True})

    def close(self) -> None:
        self.client.close()
