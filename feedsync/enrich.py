"""On-demand text snippet enrichment for newly created records.

Only called for records of sources that allow it and whose source id /
URL does not match any ``SKIP_ENRICH_PATTERNS`` entry.
"""

from __future__ import annotations

import fnmatch
import ipaddress
import logging
import re
import socket
from typing import Any, Iterable, Optional
from urllib.parse import urlparse

import httpx

from .common_types import Record
from .normalize import decode_entities

logger = logging.getLogger(__name__)

# Max response body to read (1 MB).
_MAX_CONTENT_BYTES = 1_048_576

# Notion rich_text limit; longer snippets would be cut by the store anyway.
SNIPPET_LEN = 2000

_SCRIPT_RE = re.compile(r"<(script|style|noscript)\b.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_HTML_TAG_RE = re.compile(r"<[^>]+>")

# Block non-HTTPS and internal-network URLs (SSRF protection).
_ALLOWED_SCHEMES = {"https"}
_BLOCKED_HOST_RE = re.compile(
    r"^(localhost|127\.|10\.|172\.(1[6-9]|2\d|3[01])\.|192\.168\.|169\.254\.|0\.|\[::1\]|\[fd|fe80)",
    re.IGNORECASE,
)


def matches_any(patterns: Iterable[str], *values: Optional[str]) -> bool:
    """True if any non-empty *value* matches any fnmatch *pattern* (case-insensitive)."""
    for pat in patterns:
        p = pat.lower()
        for v in values:
            if v and fnmatch.fnmatch(v.lower(), p):
                return True
    return False


def html_to_text(raw: str) -> str:
    text = _SCRIPT_RE.sub(" ", raw)
    text = _HTML_TAG_RE.sub(" ", text)
    return " ".join(decode_entities(text).split())


class Enricher:
    """Synchronous URL snippet fetcher."""

    def __init__(
        self,
        field_name: str = "Summary",
        skip_patterns: Iterable[str] = (),
        *,
        resolve_hosts: bool = True,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.field_name = field_name
        self.skip_patterns = tuple(skip_patterns)
        self.resolve_hosts = resolve_hosts
        self.client = httpx.Client(
            timeout=10.0,
            follow_redirects=True,
            transport=transport,
            headers={"User-Agent": "feedsync/1.0 (enricher)"},
        )

    def should_enrich(self, record: Record) -> bool:
        return not matches_any(self.skip_patterns, record.source_id, record.url)

    def enrich(self, record: Record) -> dict[str, Any]:
        """Extra fields for *record*; ``{}`` when skipped or on any failure."""
        if record.extra_fields.get(self.field_name):
            return {}
        if not self.should_enrich(record):
            logger.debug("Enrichment skipped for %s (pattern match)", record.url)
            return {}
        res = self.fetch_snippet(record.url)
        if not res.get("enriched") or not res.get("snippet"):
            return {}
        return {self.field_name: res["snippet"]}

    def _blocked(self, url: str) -> Optional[str]:
        parsed = urlparse(url)
        if parsed.scheme not in _ALLOWED_SCHEMES:
            return f"blocked scheme: {parsed.scheme}"
        host = (parsed.hostname or "").lower()
        if not host or _BLOCKED_HOST_RE.search(host):
            return f"blocked host: {host}"
        if not self.resolve_hosts:
            return None
        # Resolve hostname to detect DNS rebinding / decimal IP bypass
        try:
            infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
        except (socket.gaierror, UnicodeError):
            return None  # DNS failure → httpx will also fail → handled by caller
        for _fam, _typ, _proto, _canon, addr in infos:
            ip = ipaddress.ip_address(addr[0])
            if ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_reserved:
                return f"blocked resolved IP: {ip}"
        return None

    def fetch_snippet(self, url: Optional[str]) -> dict[str, Any]:
        """Fetch *url* and return a short plain-text snippet.

        Non-critical: any failure returns ``{"enriched": False}``.
        The body is capped to 1 MB during download.
        """
        if not url:
            return {"enriched": False}
        blocked = self._blocked(url)
        if blocked:
            return {"enriched": False, "error": blocked}
        try:
            with self.client.stream("GET", url) as r:
                if r.status_code >= 400:
                    return {"enriched": False, "http_status": r.status_code, "error": f"HTTP {r.status_code}"}
                chunks: list[bytes] = []
                total = 0
                for chunk in r.iter_bytes(chunk_size=8192):
                    remaining = _MAX_CONTENT_BYTES - total
                    if remaining <= 0:
                        break
                    chunk = chunk[:remaining]
                    chunks.append(chunk)
                    total += len(chunk)
                raw = b"".join(chunks).decode(r.encoding or "utf-8", errors="replace")
                return {
                    "enriched": True,
                    "url_final": str(r.url),
                    "http_status": r.status_code,
                    "snippet": html_to_text(raw)[:SNIPPET_LEN],
                }
        except (httpx.HTTPError, LookupError) as exc:
            logger.debug("Enrich failed for %s: %s", url, exc)
            return {"enriched": False, "error": str(exc)}

    def close(self) -> None:
        self.client.close()
