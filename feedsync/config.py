"""Global configuration for a feedsync run.

All tunables can be overridden via environment variables (a ``.env``
file in the working directory is loaded by the entry points).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from .errors import ConfigError


def _env_float(key: str, default: float) -> float:
    """Read an env var as float, returning *default* on parse failure."""
    try:
        return float(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_int(key: str, default: int) -> int:
    """Read an env var as int, returning *default* on parse failure."""
    try:
        return int(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_first(*keys: str, default: str = "") -> str:
    """Return the first non-empty env var among *keys*."""
    for key in keys:
        val = os.getenv(key, "").strip()
        if val:
            return val
    return default


def _env_list(key: str) -> tuple[str, ...]:
    raw = os.getenv(key, "")
    return tuple(p.strip() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class Config:
    """Central configuration – one instance per run.

    Environment variables are read at **instantiation** time (not module
    import time) so callers can set them programmatically before
    creating a ``Config``.
    """

    # ── Destination credentials (repr=False to prevent accidental logging)
    notion_token: str = field(
        default_factory=lambda: _env_first("NOTION_API_TOKEN", "NOTION_API_KEY", "NOTION_TOKEN"),
        repr=False,
    )
    notion_database_id: str = field(
        default_factory=lambda: _env_first("NOTION_DATABASE_ID", "NOTION_READER_DATABASE_ID"),
    )
    notion_version: str = field(default_factory=lambda: os.getenv("NOTION_VERSION", "2022-06-28"))
    notion_base_url: str = field(default_factory=lambda: os.getenv("NOTION_BASE_URL", "https://api.notion.com/v1"))

    # ── Destination selection ───────────────────────────────────
    # "notion" (default) or "sqlite" for local dry runs.
    destination: str = field(default_factory=lambda: os.getenv("FEEDSYNC_DESTINATION", "notion").strip().lower())
    sqlite_path: str = field(default_factory=lambda: os.getenv("SQLITE_PATH", "feedsync_state.db"))

    # ── Sources ─────────────────────────────────────────────────
    sources_path: str = field(default_factory=lambda: os.getenv("FEEDSYNC_SOURCES", "sources.json"))
    # Notion database listing feed URLs, for "notion_feeds" sources.
    notion_feeds_database_id: str = field(default_factory=lambda: os.getenv("NOTION_FEEDS_DATABASE_ID", ""))

    # ── Freshness window (0 disables the filter) ────────────────
    freshness_window_s: float = field(default_factory=lambda: _env_float("FRESHNESS_WINDOW_S", 0.0))

    # ── Enrichment ──────────────────────────────────────────────
    enable_enrich: bool = field(default_factory=lambda: os.getenv("ENABLE_ENRICH", "0") == "1")
    enrich_field: str = field(default_factory=lambda: os.getenv("ENRICH_FIELD", "Summary"))
    # Comma-separated fnmatch patterns of source ids / URLs never enriched.
    skip_enrich_patterns: tuple[str, ...] = field(default_factory=lambda: _env_list("SKIP_ENRICH_PATTERNS"))
    # Fields backfilled on already-stored records when missing there.
    update_missing_fields: tuple[str, ...] = field(default_factory=lambda: _env_list("UPDATE_MISSING_FIELDS"))

    # ── Backoff / rate limiting ─────────────────────────────────
    backoff_base_s: float = field(default_factory=lambda: _env_float("BACKOFF_BASE_S", 15.0))
    backoff_factor: float = field(default_factory=lambda: _env_float("BACKOFF_FACTOR", 2.0))
    backoff_max_attempts: int = field(default_factory=lambda: _env_int("BACKOFF_MAX_ATTEMPTS", 3))
    backoff_max_delay_s: float = field(default_factory=lambda: _env_float("BACKOFF_MAX_DELAY_S", 120.0))
    # Notion allows ~3 requests/second per integration.
    inter_call_delay_s: float = field(default_factory=lambda: _env_float("INTER_CALL_DELAY_S", 0.35))
    query_page_size: int = field(default_factory=lambda: _env_int("QUERY_PAGE_SIZE", 100))

    # ── Derived helpers ─────────────────────────────────────────

    @property
    def freshness_window(self) -> float | None:
        """Freshness window in seconds, or ``None`` when disabled."""
        return self.freshness_window_s if self.freshness_window_s > 0 else None

    def validate(self) -> list[str]:
        """Return a list of configuration issues (empty = all ok)."""
        issues: list[str] = []
        if self.destination not in ("notion", "sqlite"):
            issues.append(f"FEEDSYNC_DESTINATION must be 'notion' or 'sqlite', got {self.destination!r}")
        if self.destination == "notion":
            if not self.notion_token:
                issues.append("NOTION_API_TOKEN (or NOTION_API_KEY) is not set")
            if not self.notion_database_id:
                issues.append("NOTION_DATABASE_ID (or NOTION_READER_DATABASE_ID) is not set")
        if self.backoff_max_attempts < 1:
            issues.append(f"BACKOFF_MAX_ATTEMPTS must be >= 1, got {self.backoff_max_attempts}")
        if self.backoff_base_s < 0 or self.backoff_factor < 1:
            issues.append("BACKOFF_BASE_S must be >= 0 and BACKOFF_FACTOR >= 1")
        if not 1 <= self.query_page_size <= 100:
            issues.append(f"QUERY_PAGE_SIZE must be within [1, 100], got {self.query_page_size}")
        return issues

    def require_destination(self) -> None:
        """Raise ``ConfigError`` if the run cannot start."""
        issues = self.validate()
        if issues:
            raise ConfigError("; ".join(issues))
