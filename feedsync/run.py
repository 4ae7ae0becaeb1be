"""Entry point: ``python -m feedsync.run`` (one run, then exit).

Environment variables (or a ``.env`` file in the working directory):
    NOTION_API_TOKEN / NOTION_DATABASE_ID   destination credentials
    FEEDSYNC_SOURCES=sources.json            source definitions
    NOTION_FEEDS_DATABASE_ID                 feed list for "notion_feeds" sources
    FRESHNESS_WINDOW_S=0                     (default: no freshness filter)
    FEEDSYNC_DESTINATION=notion              ("sqlite" for a local dry run)

Exit code is 0 whenever the run completes, even with per-item or
per-source failures (they are listed in the summary).  Only setup
errors – missing credentials, unreadable sources file, destination
unreachable while building the index – exit with 1.
"""

from __future__ import annotations

import logging
import os
import sys
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from .common_types import SyncResult
from .config import Config
from .engine import SupportsEnrich, SyncEngine, SyncPolicy
from .enrich import Enricher
from .errors import ConfigError, StoreUnavailable
from .index import ExistingIndex
from .log_redaction import apply_global_log_redaction
from .normalize import SourceConfig
from .sources import SourceAdapter, fetch_safely, load_sources
from .store import DestinationStore
from .store_notion import NotionStore
from .store_sqlite import SqliteStore

logger = logging.getLogger(__name__)


@dataclass
class SourceReport:
    source_id: str
    result: SyncResult = field(default_factory=SyncResult)
    fetch_error: Optional[str] = None
    fetched: int = 0


@dataclass
class RunReport:
    """Outcome of one run across all sources."""

    sources: list[SourceReport] = field(default_factory=list)
    started_ts: float = field(default_factory=time.time)

    @property
    def totals(self) -> SyncResult:
        total = SyncResult()
        for rep in self.sources:
            total.merge(rep.result)
        return total

    @property
    def failed_sources(self) -> list[tuple[str, str]]:
        return [(r.source_id, r.fetch_error) for r in self.sources if r.fetch_error]

    def summary(self) -> str:
        lines = [f"feedsync run – {len(self.sources)} source(s), {time.time() - self.started_ts:.1f}s"]
        for rep in self.sources:
            if rep.fetch_error:
                lines.append(f"[{rep.source_id}] source failed: {rep.fetch_error}")
            else:
                lines.append(rep.result.summary(f"{rep.source_id}, {rep.fetched} fetched"))
        lines.append(self.totals.summary("total").splitlines()[0])
        if self.failed_sources:
            lines.append(f"failed sources: {', '.join(s for s, _ in self.failed_sources)}")
        return "\n".join(lines)


# ── Wiring ──────────────────────────────────────────────────────

def open_store(cfg: Config) -> DestinationStore:
    """Open the configured destination (raises ``ConfigError``/``StoreUnavailable``)."""
    if cfg.destination == "sqlite":
        os.makedirs(os.path.dirname(cfg.sqlite_path) or ".", exist_ok=True)
        return SqliteStore(cfg.sqlite_path)
    return NotionStore(
        cfg.notion_token,
        cfg.notion_database_id,
        base_url=cfg.notion_base_url,
        notion_version=cfg.notion_version,
    )


def build_enricher(cfg: Config) -> Optional[Enricher]:
    if not cfg.enable_enrich:
        return None
    return Enricher(cfg.enrich_field, cfg.skip_enrich_patterns)


def run_once(
    cfg: Config,
    sources: Sequence[tuple[SourceAdapter, SourceConfig]],
    store: DestinationStore,
    *,
    enricher: Optional[SupportsEnrich] = None,
    sleep: Callable[[float], Any] = time.sleep,
) -> RunReport:
    """Sync every source once.  ``StoreUnavailable`` propagates (fatal)."""
    engine = SyncEngine(store, SyncPolicy.from_config(cfg, enricher=enricher, sleep=sleep))
    report = RunReport()
    for adapter, source_cfg in sources:
        rep = SourceReport(source_cfg.source_id)
        report.sources.append(rep)

        items, err = fetch_safely(adapter)
        if err is not None:
            rep.fetch_error = err
            continue
        rep.fetched = len(items)
        if not items:
            logger.info("%s: no items this run.", source_cfg.source_id)
            continue

        # Fresh scan per source: earlier sources may have written rows.
        index = ExistingIndex.build(
            store, source_cfg, page_size=cfg.query_page_size, policy=engine.policy.backoff,
        )
        rep.result = engine.run(items, index, source_cfg)
    return report


def setup_logging() -> None:
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    apply_global_log_redaction()


def close_all(*objs: Any) -> None:
    for obj in objs:
        close = getattr(obj, "close", None)
        if close is None:
            continue
        try:
            close()
        except Exception as exc:
            logger.debug("close() failed for %r: %s", obj, exc)


def main() -> None:
    load_dotenv(Path.cwd() / ".env", override=False)
    setup_logging()
    cfg = Config()

    try:
        cfg.require_destination()
        sources = load_sources(cfg.sources_path, cfg)
        store = open_store(cfg)
    except (ConfigError, StoreUnavailable) as exc:
        logger.error("Setup failed: %s", exc)
        raise SystemExit(1) from exc

    enricher = build_enricher(cfg)
    logger.info(
        "Syncing %d source(s) into %s (freshness=%s).",
        len(sources), cfg.destination, cfg.freshness_window or "off",
    )
    try:
        report = run_once(cfg, sources, store, enricher=enricher)
    except StoreUnavailable as exc:
        logger.error("Destination unreachable, aborting run: %s", exc)
        raise SystemExit(1) from exc
    finally:
        close_all(store, enricher, *(adapter for adapter, _ in sources))

    print(report.summary())


if __name__ == "__main__":
    main()
