"""RSS / Atom feed source.

The feed is downloaded with httpx (so timeouts and HTTP errors are ours
to classify) and parsed with feedparser.
"""

from __future__ import annotations

import calendar
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

import feedparser
import httpx

from ._http import sanitize_exc, sanitize_url
from .common_types import RawItem
from .errors import SourceParseError, SourceUnavailable
from .normalize import parse_timestamp

logger = logging.getLogger(__name__)


def _entry_time(entry: Any) -> Optional[datetime]:
    for key in ("published_parsed", "updated_parsed"):
        st = entry.get(key)
        if st:
            return datetime.fromtimestamp(calendar.timegm(st), tz=timezone.utc)
    return parse_timestamp(entry.get("published") or entry.get("updated"))


class RssSource:
    """Latest *limit* entries of one RSS/Atom feed."""

    def __init__(
        self,
        source_id: str,
        feed_url: str,
        limit: int = 20,
        *,
        feed_field: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.source_id = source_id
        self.feed_url = feed_url
        self.limit = limit
        # Destination property receiving the feed title, if the database has one.
        self.feed_field = feed_field
        self.client = httpx.Client(
            timeout=20.0,
            follow_redirects=True,
            transport=transport,
            headers={"User-Agent": "feedsync/1.0 (rss)"},
        )

    def fetch_items(self) -> List[RawItem]:
        try:
            r = self.client.get(self.feed_url)
            r.raise_for_status()
        except httpx.HTTPError as exc:
            raise SourceUnavailable(
                f"{sanitize_url(self.feed_url)}: {type(exc).__name__}: {sanitize_exc(exc)}",
                source_id=self.source_id,
            ) from exc

        parsed = feedparser.parse(r.content)
        entries = parsed.entries or []
        if parsed.bozo and not entries:
            raise SourceParseError(
                f"{sanitize_url(self.feed_url)}: not a feed ({parsed.get('bozo_exception')})",
                source_id=self.source_id,
            )

        fields: dict[str, Any] = {}
        if self.feed_field:
            fields[self.feed_field] = parsed.feed.get("title") or self.source_id
        items: List[RawItem] = []
        for entry in entries[: max(0, self.limit)]:
            link = entry.get("link") or ""
            title = entry.get("title") or ""
            if not link and not title:
                continue
            summary = entry.get("summary")
            items.append(
                RawItem(
                    source_id=self.source_id,
                    title=str(title).strip(),
                    url=str(link).strip(),
                    published_at=_entry_time(entry),
                    body=str(summary).strip()[:2000] if isinstance(summary, str) else None,
                    fields=dict(fields),
                )
            )
        logger.info("%s: %d entries from feed", self.source_id, len(items))
        return items

    def close(self) -> None:
        self.client.close()
