"""Structured error taxonomy for feedsync.

Setup errors (``ConfigError``, ``StoreUnavailable``) abort the run.
Source errors drop one source.  Store errors raised while committing
one item are turned into a ``Failed`` item outcome by the engine; only
``TransientStoreError`` (and its ``RateLimited`` subclass) is retried.
"""
from __future__ import annotations

from typing import Optional


class FeedSyncError(Exception):
    """Base error for all feedsync subsystems."""
    pass


class ConfigError(FeedSyncError):
    """Missing credentials or invalid configuration value."""
    pass


# ---------------------------------------------------------------------------
# Destination store
# ---------------------------------------------------------------------------

class StoreError(FeedSyncError):
    """Destination store rejected or failed a request."""

    def __init__(self, message: str, *, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class StoreUnavailable(StoreError):
    """Destination unreachable while building the existing-record index."""
    pass


class TransientStoreError(StoreError):
    """Retryable failure (5xx, network hiccup)."""
    pass


class RateLimited(TransientStoreError):
    """Destination signalled a rate limit (HTTP 429)."""

    def __init__(self, message: str = "rate limited", *, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message, status=429)


class PermanentError(StoreError):
    """Non-retryable failure: malformed payload, permanent 4xx."""
    pass


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------

class SourceError(FeedSyncError):
    """Base for per-source fetch failures."""

    def __init__(self, message: str, *, source_id: str = ""):
        self.source_id = source_id
        super().__init__(message)


class SourceUnavailable(SourceError):
    """The feed/sheet/file could not be fetched."""
    pass


class SourceParseError(SourceError):
    """The payload was fetched but could not be parsed."""
    pass
