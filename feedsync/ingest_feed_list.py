"""Feeds listed in a Notion database, each read as an RSS/Atom source.

The "Feeds" database holds one row per feed with the feed address in a
``Link`` (or ``URL``) property.  Every run reads the list afresh, then the
latest *limit* entries of each feed.  A feed that fails is logged and
skipped; the source fails only when every listed feed does.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import httpx

from ._http import log_fetch_warning, sanitize_exc, sanitize_url
from .backoff import BackoffPolicy
from .common_types import RawItem
from .errors import SourceError, SourceUnavailable, StoreUnavailable
from .index import iter_stored
from .ingest_rss import RssSource
from .store import DestinationStore

logger = logging.getLogger(__name__)

DEFAULT_URL_PROPERTIES = ("Link", "URL")


class FeedListSource:
    """Latest *limit* entries of every feed listed in *feed_store*."""

    def __init__(
        self,
        source_id: str,
        feed_store: DestinationStore,
        limit: int = 2,
        *,
        url_properties: Sequence[str] = DEFAULT_URL_PROPERTIES,
        feed_field: Optional[str] = None,
        policy: Optional[BackoffPolicy] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.source_id = source_id
        self.feed_store = feed_store
        self.limit = limit
        self.url_properties = tuple(url_properties)
        self.feed_field = feed_field
        self.policy = policy
        self._transport = transport

    def feed_urls(self) -> List[str]:
        """Feed addresses from the list database, in stored order, deduplicated."""
        urls: List[str] = []
        try:
            for row in iter_stored(self.feed_store, policy=self.policy):
                url = next(
                    (str(row.fields[p]).strip() for p in self.url_properties if row.fields.get(p)),
                    "",
                )
                if url and url not in urls:
                    urls.append(url)
        except StoreUnavailable as exc:
            raise SourceUnavailable(
                f"feed list unreadable: {sanitize_exc(exc)}", source_id=self.source_id,
            ) from exc
        return urls

    def _feed(self, url: str) -> RssSource:
        return RssSource(
            self.source_id, url, self.limit, feed_field=self.feed_field, transport=self._transport,
        )

    def fetch_items(self) -> List[RawItem]:
        urls = self.feed_urls()
        logger.info("%s: %d feed(s) listed.", self.source_id, len(urls))
        items: List[RawItem] = []
        failed = 0
        for url in urls:
            feed = self._feed(url)
            try:
                items.extend(feed.fetch_items())
            except SourceError as exc:
                failed += 1
                log_fetch_warning(f"{self.source_id}:{sanitize_url(url)}", exc)
            finally:
                feed.close()
        if urls and failed == len(urls):
            raise SourceUnavailable(f"all {failed} listed feed(s) failed", source_id=self.source_id)
        return items

    def close(self) -> None:
        self.feed_store.close()
