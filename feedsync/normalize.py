"""Normalisation: ``RawItem`` → ``Record`` with a stable identity key.

Each source declares exactly one identity strategy:

``ByUrl``
    canonical absolute URL – resolved against the source's base URL,
    ``http``/missing scheme folded to ``https``, fragment dropped and
    the whole string lower-cased.

``ByTitleAndField(field_name)``
    decoded, case-folded title plus one discriminator field (ticker,
    stock code …) for sources where several records share a URL or the
    URL is not stable.

The same key derivation runs over rows already in the destination
(``identity_from_stored``) so preloaded and incoming keys compare equal.
"""

from __future__ import annotations

import html
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union
from urllib.parse import urljoin, urlparse, urlunparse

from dateutil import parser as dtparser

from .common_types import FieldValue, RawItem, Record, StoredRecord

logger = logging.getLogger(__name__)

# Double-encoded entities ("&amp;amp;", "&amp;#38;") need one pass per
# encoding layer; scraped report titles never go deeper than this.
MAX_DECODE_PASSES = 5

# Shortest valid date format: "YYYYMMDD" = 8 chars.  Shorter strings are
# ambiguously parsed by dateutil ("5" → the 5th of this month).
_MIN_DATE_LEN = 8

_WS_RE = re.compile(r"\s+")


# ── Identity strategies ─────────────────────────────────────────

@dataclass(frozen=True)
class ByUrl:
    """Identity = canonical absolute URL."""


@dataclass(frozen=True)
class ByTitleAndField:
    """Identity = title + one discriminator field (a destination property name)."""

    field_name: str


IdentityStrategy = Union[ByUrl, ByTitleAndField]


@dataclass(frozen=True)
class SourceConfig:
    """Per-source normalisation and destination mapping."""

    source_id: str
    identity: IdentityStrategy = field(default_factory=ByUrl)
    base_url: str = ""
    # Destination property names
    title_property: str = "Title"
    url_property: str = "Link"
    body_property: str = ""
    published_property: str = ""
    # raw field name → destination property name (unmapped fields keep their name)
    field_properties: dict[str, str] = field(default_factory=dict)
    # destination property name → Notion property type ("select", "rich_text", …)
    property_types: dict[str, str] = field(default_factory=dict)
    # Fields overwritten on the stored row whenever the new value differs
    # (quote feeds: price, change %).  Unchanged values cost no write.
    refresh_fields: tuple[str, ...] = ()
    # Also treat an item as stored when a row with the same cleaned title
    # exists (report lists whose links change between listings).
    match_titles: bool = False
    enrich: bool = True


# ── Text / URL / date helpers ───────────────────────────────────

def decode_entities(text: str, max_passes: int = MAX_DECODE_PASSES) -> str:
    """Decode HTML/XML entities repeatedly until a fixed point.

    Stops after *max_passes* even if the string still changes.  A plain
    string (no entities) is returned unchanged.
    """
    if not text:
        return text
    out = text
    for _ in range(max_passes):
        decoded = html.unescape(out)
        if decoded == out:
            break
        out = decoded
    return out


def clean_title(text: str) -> str:
    """Decode entities and collapse whitespace (scraped table cells are messy)."""
    return _WS_RE.sub(" ", decode_entities(text or "")).strip()


def absolute_url(url: str, base_url: str = "") -> Optional[str]:
    """Resolve *url* to an absolute http(s) URL, or ``None`` if impossible."""
    u = (url or "").strip()
    if not u:
        return None
    if base_url:
        u = urljoin(base_url, u)
    p = urlparse(u)
    if not p.scheme and not p.netloc and not u.startswith("/"):
        # "example.com/path" – scheme dropped by the source
        p = urlparse("https://" + u)
    if not p.netloc:
        return None
    if p.scheme and p.scheme.lower() not in ("http", "https"):
        return None
    return urlunparse((p.scheme.lower() or "https", p.netloc, p.path, p.params, p.query, p.fragment))


def canonical_url(url: str, base_url: str = "") -> Optional[str]:
    """Canonical dedup form of *url* (``https``, no fragment, lower-cased)."""
    absolute = absolute_url(url, base_url)
    if absolute is None:
        return None
    p = urlparse(absolute)
    return urlunparse(("https", p.netloc, p.path or "/", p.params, p.query, "")).lower()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a datetime / epoch / date string into an aware UTC-based datetime.

    Naive datetimes are assumed UTC.  Empty, too-short or unparseable
    strings give ``None`` ("no timestamp"), never an exception.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if math.isnan(value) or value <= 0:
            return None
        return datetime.fromtimestamp(value, tz=timezone.utc)
    s = str(value).strip()
    if len(s) < _MIN_DATE_LEN:
        logger.debug("Date string too short (%d chars): %r", len(s), s)
        return None
    try:
        dt = dtparser.parse(s)
    except (ValueError, OverflowError):
        logger.warning("Unparseable date %r, treated as missing.", s[:80])
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _coerce_field(value: Any) -> FieldValue:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return None if isinstance(value, float) and math.isnan(value) else value
    s = decode_entities(str(value)).strip()
    return s or None


# ── Identity keys ───────────────────────────────────────────────

def identity_key(
    strategy: IdentityStrategy,
    title: str,
    url: str,
    fields: Mapping[str, Any],
    base_url: str = "",
) -> Optional[str]:
    """Derive the identity key; ``None`` when the strategy's inputs are missing."""
    if isinstance(strategy, ByUrl):
        return canonical_url(url, base_url)
    if isinstance(strategy, ByTitleAndField):
        t = clean_title(title).casefold()
        raw = fields.get(strategy.field_name)
        disc = "" if raw is None else clean_title(str(raw))
        if not t or not disc:
            return None
        return f"{t}|{disc}"
    raise TypeError(f"unknown identity strategy: {strategy!r}")


def identity_from_stored(stored: StoredRecord, cfg: SourceConfig) -> Optional[str]:
    """Identity key of a row already in the destination store."""
    title = stored.fields.get(cfg.title_property) or ""
    url = stored.fields.get(cfg.url_property) or ""
    return identity_key(cfg.identity, str(title), str(url), stored.fields, cfg.base_url)


# ── Normaliser ──────────────────────────────────────────────────

def normalize(raw: RawItem, cfg: SourceConfig, now: Optional[datetime] = None) -> Optional[Record]:
    """Normalise one raw item; ``None`` means unprocessable (not an error)."""
    if not (raw.url or "").strip():
        return None
    url = absolute_url(raw.url, cfg.base_url)
    if url is None:
        logger.debug("%s: unusable locator %r", cfg.source_id, raw.url[:120])
        return None

    title = clean_title(raw.title)
    extra: dict[str, FieldValue] = {}
    for name, value in (raw.fields or {}).items():
        extra[cfg.field_properties.get(name, name)] = _coerce_field(value)

    published = parse_timestamp(raw.published_at)
    if cfg.published_property and published is not None:
        extra[cfg.published_property] = published
    if cfg.body_property and raw.body:
        extra[cfg.body_property] = raw.body.strip() or None

    key = identity_key(cfg.identity, title, url, extra, cfg.base_url)
    if key is None:
        return None

    return Record(
        identity_key=key,
        title=title,
        url=url,
        extra_fields=extra,
        created_at=now or datetime.now(timezone.utc),
        published_at=published,
        source_id=raw.source_id or cfg.source_id,
    )
