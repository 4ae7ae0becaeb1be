"""Source adapter interface, JSON-dump source and the sources file loader.

``FEEDSYNC_SOURCES`` points at a JSON file::

    {"sources": [
      {"id": "reader-rss", "type": "rss", "feed_url": "https://…/rss.xml", "limit": 5},
      {"id": "reader", "type": "notion_feeds", "limit": 2, "feed_field": "Feed"},
      {"id": "fisc-reports", "type": "json", "path": "out/fisc.json",
       "base_url": "https://fisc.vn", "enrich": false,
       "identity": {"by": "title_and_field", "field": "Name"},
       "field_properties": {"stockCode": "Name", "source": "Source"}},
      {"id": "prices", "type": "sheet", "sheet_id": "…", "title_column": "Ticker",
       "url_template": "https://finance.yahoo.com/quote/{Ticker}",
       "numeric_columns": ["Current Price"],
       "title_property": "Ticker", "refresh_fields": ["Current Price"]}
    ]}

Site-specific scrapers stay outside this package; they can dump their
results as JSON and be picked up by a ``json`` source.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

from ._http import log_fetch_warning, sanitize_exc
from .backoff import BackoffPolicy
from .common_types import RawItem
from .config import Config
from .errors import ConfigError, SourceError, SourceParseError, SourceUnavailable
from .ingest_feed_list import DEFAULT_URL_PROPERTIES, FeedListSource
from .ingest_rss import RssSource
from .ingest_sheet import CsvSheetSource
from .normalize import ByTitleAndField, ByUrl, IdentityStrategy, SourceConfig, parse_timestamp
from .store_notion import NotionStore

logger = logging.getLogger(__name__)

_RAW_KEYS = {"title", "url", "link", "published_at", "publishedDate", "date", "body", "summary", "source_id"}


class SourceAdapter(Protocol):
    source_id: str

    def fetch_items(self) -> List[RawItem]:
        ...


class JsonFileSource:
    """A JSON list of items written by an external scraper.

    Recognised keys: ``title``, ``url``/``link``, ``published_at``/``date``,
    ``body``/``summary``; everything else lands in ``RawItem.fields``.
    """

    def __init__(self, source_id: str, path: str) -> None:
        self.source_id = source_id
        self.path = path

    def fetch_items(self) -> List[RawItem]:
        try:
            text = Path(self.path).read_text(encoding="utf-8-sig")
        except OSError as exc:
            raise SourceUnavailable(f"{self.path}: {exc}", source_id=self.source_id) from exc
        try:
            data = json.loads(text) if text.strip() else []
        except json.JSONDecodeError as exc:
            raise SourceParseError(f"{self.path}: {exc}", source_id=self.source_id) from exc
        if isinstance(data, dict):
            data = data.get("items") or data.get("reports") or []
        if not isinstance(data, list):
            raise SourceParseError(
                f"{self.path}: expected a list, got {type(data).__name__}", source_id=self.source_id,
            )

        items: List[RawItem] = []
        for it in data:
            if not isinstance(it, dict):
                continue
            items.append(
                RawItem(
                    source_id=self.source_id,
                    title=str(it.get("title") or ""),
                    url=str(it.get("url") or it.get("link") or ""),
                    published_at=parse_timestamp(it.get("published_at") or it.get("publishedDate") or it.get("date")),
                    body=it.get("body") or it.get("summary") or None,
                    fields={k: v for k, v in it.items() if k not in _RAW_KEYS},
                )
            )
        return items


def fetch_safely(adapter: SourceAdapter) -> Tuple[List[RawItem], Optional[str]]:
    """Fetch one source; a source failure means zero items plus a reason."""
    try:
        return list(adapter.fetch_items()), None
    except SourceError as exc:
        log_fetch_warning(adapter.source_id, exc)
        return [], sanitize_exc(exc)


# ── Sources file ────────────────────────────────────────────────

def _identity(spec: Any, source_id: str) -> IdentityStrategy:
    if spec is None or spec == "url":
        return ByUrl()
    if isinstance(spec, dict):
        by = spec.get("by", "url")
        if by == "url":
            return ByUrl()
        if by == "title_and_field" and spec.get("field"):
            return ByTitleAndField(str(spec["field"]))
    raise ConfigError(f"source {source_id!r}: invalid identity {spec!r}")


def source_config_from_dict(d: Dict[str, Any]) -> SourceConfig:
    source_id = str(d.get("id") or "")
    if not source_id:
        raise ConfigError(f"source without id: {d!r}")
    return SourceConfig(
        source_id=source_id,
        identity=_identity(d.get("identity"), source_id),
        base_url=str(d.get("base_url") or ""),
        title_property=str(d.get("title_property") or "Title"),
        url_property=str(d.get("url_property") or "Link"),
        body_property=str(d.get("body_property") or ""),
        published_property=str(d.get("published_property") or ""),
        field_properties=dict(d.get("field_properties") or {}),
        property_types=dict(d.get("property_types") or {}),
        refresh_fields=tuple(d.get("refresh_fields") or ()),
        match_titles=bool(d.get("match_titles", False)),
        enrich=bool(d.get("enrich", True)),
    )


def _feed_list_source(source_id: str, d: Dict[str, Any], config: Config) -> FeedListSource:
    database_id = str(d.get("database_id") or config.notion_feeds_database_id)
    if not database_id:
        raise ConfigError(f"source {source_id!r}: no database_id and NOTION_FEEDS_DATABASE_ID is not set")
    feed_store = NotionStore(
        config.notion_token,
        database_id,
        base_url=config.notion_base_url,
        notion_version=config.notion_version,
    )
    return FeedListSource(
        source_id,
        feed_store,
        int(d.get("limit", 2)),
        url_properties=d.get("url_properties") or DEFAULT_URL_PROPERTIES,
        feed_field=d.get("feed_field"),
        policy=BackoffPolicy(
            base_delay_s=config.backoff_base_s,
            factor=config.backoff_factor,
            max_attempts=config.backoff_max_attempts,
            max_delay_s=config.backoff_max_delay_s,
        ),
    )


def adapter_from_dict(d: Dict[str, Any], config: Optional[Config] = None) -> SourceAdapter:
    source_id = str(d.get("id") or "")
    kind = d.get("type")
    try:
        if kind == "rss":
            return RssSource(source_id, d["feed_url"], int(d.get("limit", 20)), feed_field=d.get("feed_field"))
        if kind == "sheet":
            kwargs = {
                "title_column": d["title_column"],
                "url_template": d.get("url_template", ""),
                "url_column": d.get("url_column", ""),
                "columns": d.get("columns") or (),
                "numeric_columns": d.get("numeric_columns") or (),
            }
            if d.get("sheet_id"):
                return CsvSheetSource.for_sheet(source_id, d["sheet_id"], **kwargs)
            return CsvSheetSource(source_id, d["csv_url"], **kwargs)
        if kind == "json":
            return JsonFileSource(source_id, d["path"])
        if kind == "notion_feeds":
            return _feed_list_source(source_id, d, config or Config())
    except (KeyError, ValueError) as exc:
        raise ConfigError(f"source {source_id!r}: missing/invalid setting {exc}") from exc
    raise ConfigError(f"source {source_id!r}: unknown type {kind!r}")


def load_sources(path: str, config: Optional[Config] = None) -> List[Tuple[SourceAdapter, SourceConfig]]:
    """Read the sources file into ``(adapter, config)`` pairs."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8-sig"))
    except OSError as exc:
        raise ConfigError(f"cannot read sources file {path!r}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"sources file {path!r} is not valid JSON: {exc}") from exc
    entries = data.get("sources") if isinstance(data, dict) else data
    if not isinstance(entries, list) or not entries:
        raise ConfigError(f"sources file {path!r} lists no sources")

    pairs: List[Tuple[SourceAdapter, SourceConfig]] = []
    seen: set[str] = set()
    for d in entries:
        if not isinstance(d, dict):
            raise ConfigError(f"source entry is not an object: {d!r}")
        cfg = source_config_from_dict(d)
        if cfg.source_id in seen:
            raise ConfigError(f"duplicate source id {cfg.source_id!r}")
        seen.add(cfg.source_id)
        pairs.append((adapter_from_dict(d, config), cfg))
    return pairs
