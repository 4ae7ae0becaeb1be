"""Sync engine: RawItem → Normalise → Fresh? → Duplicate? → Commit.

Per item the state machine is::

    Fetched → Normalized → {Duplicate | New} → {Committed | Failed}

``Duplicate`` never touches the destination store: the decision comes
from the preloaded ``ExistingIndex``.  New items are committed one at a
time, in source order, with a fixed pause between writes and bounded
exponential backoff on rate limits.  A failing item is recorded in the
``SyncResult`` and the run moves on.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, Optional, Protocol

from ._http import sanitize_exc
from .backoff import BackoffPolicy, RetriesExhausted, call_with_backoff
from .common_types import ItemOutcome, Outcome, RawItem, Record, SyncResult
from .config import Config
from .errors import FeedSyncError, RateLimited
from .index import ExistingIndex
from .normalize import SourceConfig, normalize, parse_timestamp
from .store import DestinationStore, record_fields

logger = logging.getLogger(__name__)

# "YYYY-MM-DD"
_DATE_ONLY_LEN = 10


class SupportsEnrich(Protocol):
    def enrich(self, record: Record) -> dict[str, Any]:
        ...


@dataclass(frozen=True)
class SyncPolicy:
    """Everything about a run that is not the data itself."""

    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    # Only items published within this many seconds of run start pass.
    freshness_window_s: Optional[float] = None
    # Backfill these fields on already-stored records that lack them.
    update_missing_fields: tuple[str, ...] = ()
    # Fixed pause between destination writes (rate-limit courtesy).
    inter_call_delay_s: float = 0.0
    enricher: Optional[SupportsEnrich] = None

    @classmethod
    def from_config(
        cls,
        cfg: Config,
        enricher: Optional[SupportsEnrich] = None,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> "SyncPolicy":
        return cls(
            backoff=BackoffPolicy(
                base_delay_s=cfg.backoff_base_s,
                factor=cfg.backoff_factor,
                max_attempts=cfg.backoff_max_attempts,
                max_delay_s=cfg.backoff_max_delay_s,
                sleep=sleep,
            ),
            freshness_window_s=cfg.freshness_window,
            update_missing_fields=cfg.update_missing_fields,
            inter_call_delay_s=cfg.inter_call_delay_s,
            enricher=enricher,
        )


def is_fresh(record: Record, window_s: Optional[float], now: datetime) -> bool:
    """Freshness predicate; records without a timestamp are not filterable."""
    if not window_s or record.published_at is None:
        return True
    age = (now - record.published_at).total_seconds()
    return age <= window_s


def _same_value(stored: Any, new: Any) -> bool:
    """Compare a stored property value with a fresh one (numbers by value)."""
    if stored is None or new is None:
        return stored is None and new is None
    if isinstance(new, (int, float)) and not isinstance(new, bool):
        try:
            return float(stored) == float(new)
        except (TypeError, ValueError):
            return False
    if isinstance(new, date):
        # Stored dates come back as ISO strings ("…T12:00:00.000+00:00")
        # or as bare dates; compare instants, or days for a bare date.
        parsed = parse_timestamp(stored)
        if parsed is None:
            return False
        if not isinstance(new, datetime):
            return parsed.date() == new
        new_ts = new if new.tzinfo else new.replace(tzinfo=timezone.utc)
        if isinstance(stored, str) and len(stored.strip()) == _DATE_ONLY_LEN:
            return parsed.date() == new_ts.astimezone(timezone.utc).date()
        return parsed == new_ts
    return str(stored).strip() == str(new).strip()


class SyncEngine:
    """Sequential dedup-and-upsert of one source's items into one store."""

    def __init__(
        self,
        store: DestinationStore,
        policy: Optional[SyncPolicy] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.policy = policy or SyncPolicy()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._last_write: Optional[float] = None
        # Identity keys written (created or updated) during the current run.
        self._committed_keys: set[str] = set()

    # ── Public API ──────────────────────────────────────────────

    def run(
        self,
        raw_items: Iterable[RawItem],
        index: ExistingIndex,
        source_config: SourceConfig,
    ) -> SyncResult:
        """Process *raw_items* in order and return the per-run tally."""
        run_start = self._clock()
        self._committed_keys = set()
        result = SyncResult()
        for item in raw_items:
            out = self.process_item(item, index, source_config, run_start)
            result.record(out)
            if out.outcome is Outcome.FAILED:
                logger.warning("✗ %s: %s", item.url or (item.title or "")[:80], out.reason)
        logger.info("%s sync done: %s", source_config.source_id, result.as_dict())
        return result

    def process_item(
        self,
        item: RawItem,
        index: ExistingIndex,
        cfg: SourceConfig,
        run_start: datetime,
    ) -> ItemOutcome:
        """Drive one item through the state machine; never raises."""
        try:
            record = normalize(item, cfg, now=run_start)
        except (ValueError, TypeError) as exc:
            return ItemOutcome(item, Outcome.FAILED, reason=f"normalize failed: {exc}")
        if record is None:
            logger.debug("Discarded unprocessable item %r", (item.title or "")[:80])
            return ItemOutcome(item, Outcome.DISCARDED)

        if not is_fresh(record, self.policy.freshness_window_s, run_start):
            return ItemOutcome(item, Outcome.FILTERED, record)

        key = record.identity_key
        if key in self._committed_keys:
            # Already written this run: a repeat never reaches the store.
            logger.debug("⏭️ duplicate within run: %s", key)
            return ItemOutcome(item, Outcome.DUPLICATE, record)
        if index.has(key):
            changes = self._update_fields(record, index, cfg)
            if changes:
                return self._commit(item, record, index, cfg, update_fields=changes)
            logger.debug("⏭️ duplicate: %s", key)
            return ItemOutcome(item, Outcome.DUPLICATE, record)
        if cfg.match_titles and record.title and index.has_title(record.title):
            logger.debug("⏭️ duplicate title: %s", record.title[:80])
            return ItemOutcome(item, Outcome.DUPLICATE, record)

        record = self._enriched(record, cfg)
        return self._commit(item, record, index, cfg)

    # ── Internals ───────────────────────────────────────────────

    def _enriched(self, record: Record, cfg: SourceConfig) -> Record:
        enricher = self.policy.enricher
        if enricher is None or not cfg.enrich:
            return record
        try:
            extra = enricher.enrich(record)
        except Exception as exc:  # enrichment is best-effort
            logger.warning("Enrichment failed for %s: %s", record.url, sanitize_exc(exc))
            return record
        if not extra:
            return record
        return replace(record, extra_fields={**record.extra_fields, **extra})

    def _update_fields(
        self,
        record: Record,
        index: ExistingIndex,
        cfg: SourceConfig,
    ) -> dict[str, Any]:
        """Fields to write onto the stored twin of *record*, or ``{}``.

        Two policies feed this: backfilling fields the stored row lacks
        (``SyncPolicy.update_missing_fields``) and refreshing fields whose
        value moved (``SourceConfig.refresh_fields``).
        """
        wanted = self.policy.update_missing_fields
        if not (wanted or cfg.refresh_fields) or index.stored_id_for(record.identity_key) is None:
            return {}
        stored = index.stored_fields_for(record.identity_key)
        fields: dict[str, Any] = {}

        for f in cfg.refresh_fields:
            if f in record.extra_fields and not _same_value(stored.get(f), record.extra_fields[f]):
                fields[f] = record.extra_fields[f]

        missing = [f for f in wanted if not stored.get(f) and f not in fields]
        for f in missing:
            if record.extra_fields.get(f):
                fields[f] = record.extra_fields[f]
        if any(f not in fields for f in missing):
            enriched = self._enriched(record, cfg)
            for f in missing:
                if f not in fields and enriched.extra_fields.get(f):
                    fields[f] = enriched.extra_fields[f]
        return fields

    def _throttle(self) -> None:
        delay = self.policy.inter_call_delay_s
        if delay <= 0 or self._last_write is None:
            return
        wait = delay - (time.monotonic() - self._last_write)
        if wait > 0:
            self.policy.backoff.sleep(wait)

    def _commit(
        self,
        item: RawItem,
        record: Record,
        index: ExistingIndex,
        cfg: SourceConfig,
        update_fields: Optional[dict[str, Any]] = None,
    ) -> ItemOutcome:
        key = record.identity_key
        if update_fields:
            stored_id = index.stored_id_for(key) or ""
            action = "update"

            def op() -> str:
                self.store.update(stored_id, update_fields, cfg)
                return stored_id
        else:
            action = "create"

            def op() -> str:
                return self.store.create(record, cfg)

        self._throttle()
        try:
            stored_id = call_with_backoff(op, self.policy.backoff, label=f"{action} {key[:80]}")
        except RetriesExhausted as exc:
            kind = "rate limited" if isinstance(exc.last_exc, RateLimited) else "transient error"
            reason = f"{kind} after {exc.attempts} attempt(s): {sanitize_exc(exc.last_exc)}"
            return ItemOutcome(item, Outcome.FAILED, record, reason)
        except FeedSyncError as exc:
            return ItemOutcome(item, Outcome.FAILED, record, sanitize_exc(exc))
        except Exception as exc:
            logger.exception("Unexpected error committing %s", key)
            return ItemOutcome(item, Outcome.FAILED, record, f"unexpected: {sanitize_exc(exc)}")
        finally:
            self._last_write = time.monotonic()

        self._committed_keys.add(key)
        if action == "update":
            index.update_fields(key, update_fields or {})
            logger.info("✏️ updated %s on %s", sorted(update_fields or {}), record.title[:80])
        else:
            # Visible to later items of this same run.
            index.add(key, record.title, stored_id, record_fields(record, cfg))
            logger.info("➕ created %s", record.title[:80])
        return ItemOutcome(item, Outcome.COMMITTED, record, action=action)
