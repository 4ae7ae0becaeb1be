"""Internal schema shared by sources, the engine and destination stores.

Every source adapter produces ``RawItem`` objects; the normaliser turns
them into ``Record`` objects keyed by a stable identity key before they
reach the engine.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

FieldValue = Union[str, int, float, datetime, None]


@dataclass(frozen=True)
class RawItem:
    """Source-supplied item before normalisation (never persisted)."""

    source_id: str
    title: str
    url: str
    published_at: Optional[datetime] = None
    body: Optional[str] = None
    # Secondary values supplied by the adapter (ticker, stock code, price …)
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Record:
    """Normalised, persistence-ready item."""

    identity_key: str
    title: str
    url: str
    extra_fields: dict[str, FieldValue]
    created_at: datetime
    published_at: Optional[datetime] = None
    source_id: str = ""


@dataclass(frozen=True)
class StoredRecord:
    """Flattened view of one row already in the destination store."""

    stored_id: str
    fields: dict[str, Any]  # property name → plain value
    created_time: Optional[datetime] = None


@dataclass(frozen=True)
class QueryPage:
    """One page of a paginated destination scan."""

    records: list[StoredRecord]
    next_page_token: Optional[str] = None


class Outcome(str, enum.Enum):
    DUPLICATE = "duplicate"
    COMMITTED = "committed"
    FAILED = "failed"
    # Not terminal outcomes of the sync state machine: the item never got
    # as far as the duplicate check.
    DISCARDED = "discarded"
    FILTERED = "filtered"


@dataclass(frozen=True)
class ItemOutcome:
    item: RawItem
    outcome: Outcome
    record: Optional[Record] = None
    reason: str = ""
    action: str = ""  # "create" | "update" for committed items


@dataclass
class SyncResult:
    """Per-run tally of item outcomes."""

    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    filtered: int = 0
    discarded: int = 0
    failures: list[tuple[RawItem, str]] = field(default_factory=list)

    @property
    def committed(self) -> int:
        return self.created + self.updated

    def record(self, out: ItemOutcome) -> None:
        """Fold one item outcome into the tally."""
        if out.outcome is Outcome.COMMITTED:
            if out.action == "update":
                self.updated += 1
            else:
                self.created += 1
        elif out.outcome is Outcome.DUPLICATE:
            self.skipped += 1
        elif out.outcome is Outcome.FAILED:
            self.failed += 1
            self.failures.append((out.item, out.reason))
        elif out.outcome is Outcome.FILTERED:
            self.filtered += 1
        else:
            self.discarded += 1

    def merge(self, other: "SyncResult") -> None:
        self.created += other.created
        self.updated += other.updated
        self.skipped += other.skipped
        self.failed += other.failed
        self.filtered += other.filtered
        self.discarded += other.discarded
        self.failures.extend(other.failures)

    def as_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "filtered": self.filtered,
            "discarded": self.discarded,
        }

    def summary(self, label: str = "") -> str:
        """Human-readable end-of-run report with enumerated failures."""
        head = f"[{label}] " if label else ""
        lines = [
            f"{head}created={self.created} updated={self.updated} "
            f"skipped={self.skipped} failed={self.failed} "
            f"filtered={self.filtered} discarded={self.discarded}"
        ]
        for item, reason in self.failures:
            lines.append(f"  ✗ {(item.title or '')[:80]!r} ({item.url}): {reason}")
        return "\n".join(lines)
