"""Destination clean-up: ``python -m feedsync.dedupe``.

Scans the whole destination, groups rows by identity key (derived with a
source's ``SourceConfig``, so the same key the sync engine uses), keeps
one row per key and archives the rest.  Rows whose key cannot be derived
are left alone.

    feedsync-dedupe --source reader-rss --keep newest --dry-run

Without ``--source`` rows are keyed by their ``Link`` property.
"""

from __future__ import annotations

import argparse
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from ._http import sanitize_exc
from .backoff import BackoffPolicy, RetriesExhausted, call_with_backoff
from .common_types import StoredRecord
from .config import Config
from .errors import ConfigError, FeedSyncError, StoreUnavailable
from .index import iter_stored
from .normalize import SourceConfig, identity_from_stored
from .run import close_all, open_store, setup_logging
from .sources import load_sources
from .store import DestinationStore

logger = logging.getLogger(__name__)

KEEP_CHOICES = ("newest", "oldest")

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class DuplicateGroup:
    key: str
    keep: StoredRecord
    archive: list[StoredRecord]


@dataclass
class DedupeReport:
    scanned: int = 0
    groups: int = 0
    archived: int = 0
    failed: int = 0
    failures: list[tuple[str, str]] = field(default_factory=list)

    def summary(self, dry_run: bool = False) -> str:
        verb = "would archive" if dry_run else "archived"
        lines = [
            f"scanned={self.scanned} duplicate_keys={self.groups} "
            f"{verb}={self.archived} failed={self.failed}"
        ]
        for stored_id, reason in self.failures:
            lines.append(f"  ✗ {stored_id}: {reason}")
        return "\n".join(lines)


def find_duplicates(
    stored: Iterable[StoredRecord],
    source_config: SourceConfig,
    keep: str = "newest",
) -> list[DuplicateGroup]:
    """Group *stored* rows by identity key and pick the survivor of each group.

    ``keep="newest"`` keeps the row with the latest ``created_time``,
    ``"oldest"`` the earliest.  Rows without a created time sort as oldest;
    ties go to the row seen first.  Only keys with two or more rows are
    returned, in first-seen order.
    """
    if keep not in KEEP_CHOICES:
        raise ValueError(f"keep must be one of {KEEP_CHOICES}, got {keep!r}")

    by_key: dict[str, list[StoredRecord]] = {}
    for row in stored:
        key = identity_from_stored(row, source_config)
        if key is None:
            continue
        by_key.setdefault(key, []).append(row)

    groups: list[DuplicateGroup] = []
    for key, rows in by_key.items():
        if len(rows) < 2:
            continue
        ordered = sorted(rows, key=lambda r: r.created_time or _EPOCH, reverse=keep == "newest")
        groups.append(DuplicateGroup(key, ordered[0], ordered[1:]))
    return groups


def archive_duplicates(
    store: DestinationStore,
    groups: Sequence[DuplicateGroup],
    policy: Optional[BackoffPolicy] = None,
    *,
    dry_run: bool = False,
    inter_call_delay_s: float = 0.0,
) -> DedupeReport:
    """Archive every non-surviving row; one row's failure never stops the rest."""
    policy = policy or BackoffPolicy()
    report = DedupeReport(groups=len(groups))
    first = True
    for group in groups:
        for row in group.archive:
            if dry_run:
                logger.info("would archive %s (dup of %s, key %s)", row.stored_id, group.keep.stored_id, group.key)
                report.archived += 1
                continue
            if inter_call_delay_s > 0 and not first:
                policy.sleep(inter_call_delay_s)
            first = False
            try:
                call_with_backoff(
                    lambda sid=row.stored_id: store.archive(sid),
                    policy,
                    label=f"archive {row.stored_id}",
                )
            except RetriesExhausted as exc:
                reason = f"gave up after {exc.attempts} attempt(s): {sanitize_exc(exc.last_exc)}"
                report.failed += 1
                report.failures.append((row.stored_id, reason))
                logger.warning("Archive failed for %s: %s", row.stored_id, reason)
            except FeedSyncError as exc:
                report.failed += 1
                report.failures.append((row.stored_id, sanitize_exc(exc)))
                logger.warning("Archive failed for %s: %s", row.stored_id, sanitize_exc(exc))
            else:
                report.archived += 1
                logger.info("🗑️ archived %s (dup of %s)", row.stored_id, group.keep.stored_id)
    return report


def dedupe_store(
    store: DestinationStore,
    source_config: SourceConfig,
    *,
    keep: str = "newest",
    dry_run: bool = False,
    policy: Optional[BackoffPolicy] = None,
    page_size: int = 100,
    inter_call_delay_s: float = 0.0,
) -> DedupeReport:
    """Scan, group and archive.  ``StoreUnavailable`` from the scan propagates."""
    rows = list(iter_stored(store, page_size, policy))
    groups = find_duplicates(rows, source_config, keep)
    logger.info(
        "Scanned %d rows: %d duplicate key(s), %d row(s) to archive.",
        len(rows), len(groups), sum(len(g.archive) for g in groups),
    )
    report = archive_duplicates(
        store, groups, policy, dry_run=dry_run, inter_call_delay_s=inter_call_delay_s,
    )
    report.scanned = len(rows)
    return report


def _select_source(cfg: Config, source_id: Optional[str]) -> SourceConfig:
    if not source_id:
        return SourceConfig(source_id="destination")
    pairs = load_sources(cfg.sources_path, cfg)
    try:
        for _adapter, source_cfg in pairs:
            if source_cfg.source_id == source_id:
                return source_cfg
    finally:
        close_all(*(adapter for adapter, _ in pairs))
    raise ConfigError(f"source {source_id!r} not found in {cfg.sources_path}")


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Archive duplicate rows in the destination database."
    )
    parser.add_argument(
        "--source",
        default="",
        help="Source id from the sources file whose identity rule keys the rows.",
    )
    parser.add_argument(
        "--keep",
        choices=KEEP_CHOICES,
        default="newest",
        help="Which row of a duplicate group survives (by created time).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report what would be archived.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = _parse_args(argv)
    load_dotenv(Path.cwd() / ".env", override=False)
    setup_logging()
    cfg = Config()

    try:
        cfg.require_destination()
        source_cfg = _select_source(cfg, args.source)
        store = open_store(cfg)
    except (ConfigError, StoreUnavailable) as exc:
        logger.error("Setup failed: %s", exc)
        raise SystemExit(1) from exc

    policy = BackoffPolicy(
        base_delay_s=cfg.backoff_base_s,
        factor=cfg.backoff_factor,
        max_attempts=cfg.backoff_max_attempts,
        max_delay_s=cfg.backoff_max_delay_s,
    )
    try:
        report = dedupe_store(
            store,
            source_cfg,
            keep=args.keep,
            dry_run=args.dry_run,
            policy=policy,
            page_size=cfg.query_page_size,
            inter_call_delay_s=cfg.inter_call_delay_s,
        )
    except StoreUnavailable as exc:
        logger.error("Destination unreachable: %s", exc)
        raise SystemExit(1) from exc
    finally:
        close_all(store)

    print(report.summary(dry_run=args.dry_run))


if __name__ == "__main__":
    main()
