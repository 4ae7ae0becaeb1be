"""Preloaded snapshot of identity keys already in the destination store.

Built once per run with a paginated full scan, so the engine can decide
"duplicate" without one destination query per item.  The snapshot is
mutated in memory as the run commits records and discarded at the end.
"""

from __future__ import annotations

import logging
from functools import partial
from typing import Any, Iterator, Optional

from .backoff import BackoffPolicy, RetriesExhausted, call_with_backoff
from .common_types import StoredRecord
from .errors import FeedSyncError, StoreUnavailable
from .normalize import SourceConfig, clean_title, identity_from_stored
from .store import DestinationStore

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100

# Hard stop for a runaway cursor (a store returning the same token forever).
_MAX_PAGES = 10_000


def iter_stored(
    store: DestinationStore,
    page_size: int = DEFAULT_PAGE_SIZE,
    policy: Optional[BackoffPolicy] = None,
) -> Iterator[StoredRecord]:
    """Yield every live row of *store*, following page tokens to the end.

    Each page request is retried per *policy* on rate limits and other
    transient errors.  Exhausted retries, permanent errors and transport
    failures become ``StoreUnavailable``.
    """
    policy = policy or BackoffPolicy()
    token: Optional[str] = None
    pages = 0
    seen_tokens: set[str] = set()
    while True:
        try:
            page = call_with_backoff(
                partial(store.query_all, token, page_size), policy, label=f"query page {pages + 1}",
            )
        except StoreUnavailable:
            raise
        except RetriesExhausted as exc:
            raise StoreUnavailable(
                f"destination scan failed after {pages} page(s): {exc}"
            ) from exc.last_exc
        except (FeedSyncError, OSError) as exc:
            raise StoreUnavailable(f"destination scan failed after {pages} page(s): {exc}") from exc
        pages += 1
        yield from page.records
        token = page.next_page_token
        if not token:
            return
        if token in seen_tokens or pages >= _MAX_PAGES:
            raise StoreUnavailable(f"pagination did not terminate (page {pages}, token {token!r})")
        seen_tokens.add(token)


class ExistingIndex:
    """Set of identity keys (plus a companion title set) for one destination."""

    def __init__(self) -> None:
        self._keys: set[str] = set()
        self._titles: set[str] = set()
        # identity key → (stored id, stored fields) for the update policy
        self._stored: dict[str, tuple[str, dict[str, Any]]] = {}

    # ── Build ───────────────────────────────────────────────────

    @classmethod
    def build(
        cls,
        store: DestinationStore,
        identity_field_spec: SourceConfig,
        page_size: int = DEFAULT_PAGE_SIZE,
        policy: Optional[BackoffPolicy] = None,
    ) -> "ExistingIndex":
        """Scan the whole destination and index the keys it already holds.

        Rate limits are retried per *policy*.  Raises ``StoreUnavailable``
        once retries run out or on any other store or transport failure:
        a partial index would let the run re-insert everything it missed.
        """
        index = cls()
        rows = 0
        for stored in iter_stored(store, page_size, policy):
            rows += 1
            key = identity_from_stored(stored, identity_field_spec)
            if key is None:
                continue
            title = stored.fields.get(identity_field_spec.title_property)
            index._add(key, str(title) if title else None, stored.stored_id, stored.fields)

        logger.info(
            "Existing index for %s: %d keys from %d rows.",
            identity_field_spec.source_id, len(index), rows,
        )
        return index

    # ── Membership ──────────────────────────────────────────────

    def has(self, key: str) -> bool:
        return key in self._keys

    def has_title(self, title: str) -> bool:
        return clean_title(title).casefold() in self._titles

    def stored_id_for(self, key: str) -> Optional[str]:
        entry = self._stored.get(key)
        return entry[0] if entry else None

    def stored_fields_for(self, key: str) -> dict[str, Any]:
        entry = self._stored.get(key)
        return entry[1] if entry else {}

    # ── Mutation during the run ─────────────────────────────────

    def add(
        self,
        key: str,
        title: Optional[str] = None,
        stored_id: Optional[str] = None,
        fields: Optional[dict[str, Any]] = None,
    ) -> None:
        self._add(key, title, stored_id, fields)

    def _add(
        self,
        key: str,
        title: Optional[str],
        stored_id: Optional[str],
        fields: Optional[dict[str, Any]],
    ) -> None:
        self._keys.add(key)
        if title:
            self._titles.add(clean_title(title).casefold())
        if stored_id:
            # First stored row wins; later duplicates in the store are
            # the clean-up tool's business.
            self._stored.setdefault(key, (stored_id, dict(fields or {})))

    def update_fields(self, key: str, fields: dict[str, Any]) -> None:
        entry = self._stored.get(key)
        if entry is not None:
            entry[1].update(fields)

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[str]:
        return iter(self._keys)
