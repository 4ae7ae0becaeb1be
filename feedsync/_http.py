"""Shared HTTP helpers for the Notion store, sources and the enricher.

Centralises URL/exception sanitisation so that tokens are never logged
in plain text, and maps HTTP failures onto the store error taxonomy.
"""

from __future__ import annotations

import logging
import re
import threading
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Optional

import httpx

from .errors import PermanentError, RateLimited, TransientStoreError

logger = logging.getLogger(__name__)

# Regex to strip API keys/tokens from URLs before logging.
_TOKEN_RE = re.compile(r"(apikey|api_key|token|key|auth)=[^&\s]+", re.IGNORECASE)
_NOTION_SECRET_RE = re.compile(r"\b(secret|ntn)_[A-Za-z0-9]{20,}")

# Status codes worth retrying besides 429.
_TRANSIENT_CODES: frozenset[int] = frozenset({500, 502, 503, 504})

# ── Once-per-source error suppression ───────────────────────────
# A feed that 404s every run would otherwise flood the log.
_WARNED_SOURCES: set[str] = set()
_warned_lock = threading.Lock()


def sanitize_url(url: str) -> str:
    """Remove apikey/token query params from a URL for safe logging."""
    return _TOKEN_RE.sub(r"\1=***", url)


def sanitize_exc(exc: BaseException) -> str:
    """Strip API keys/tokens from exception text for safe logging."""
    return _NOTION_SECRET_RE.sub(r"\1_***", _TOKEN_RE.sub(r"\1=***", str(exc)))


def log_fetch_warning(label: str, exc: Exception) -> None:
    """Log a source fetch failure; repeated 404/410 for *label* go to DEBUG."""
    msg = sanitize_exc(exc)
    root = exc.__cause__ or exc
    if isinstance(root, httpx.HTTPStatusError) and root.response.status_code in (404, 410):
        with _warned_lock:
            already_warned = label in _WARNED_SOURCES
            _WARNED_SOURCES.add(label)
        if already_warned:
            logger.debug("%s fetch failed (gone, suppressed): %s", label, msg)
            return
        logger.warning("%s fetch failed (resource gone); suppressing repeats: %s", label, msg)
        return
    logger.warning("%s fetch failed: %s", label, msg)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a ``Retry-After`` header (seconds or HTTP-date) into seconds."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def raise_for_store_status(r: httpx.Response) -> None:
    """Translate a non-2xx destination response into a store error."""
    if r.status_code < 400:
        return
    detail = ""
    try:
        body = r.json()
        if isinstance(body, dict):
            detail = str(body.get("message") or body.get("code") or "")
    except ValueError:
        detail = r.text[:200]
    msg = f"HTTP {r.status_code} from {sanitize_url(str(r.request.url))}"
    if detail:
        msg += f": {detail}"
    if r.status_code == 429:
        raise RateLimited(msg, retry_after=parse_retry_after(r.headers.get("retry-after")))
    if r.status_code in _TRANSIENT_CODES:
        raise TransientStoreError(msg, status=r.status_code)
    raise PermanentError(msg, status=r.status_code)
