"""Published spreadsheet (CSV export) source.

Typical use is a Google Sheet of tickers and prices:
``https://docs.google.com/spreadsheets/d/<id>/export?format=csv``.
Each data row becomes one ``RawItem``; rows have no natural URL, so a
``url_template`` formatted with the row's columns provides the locator.
"""

from __future__ import annotations

import csv
import io
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ._http import sanitize_exc, sanitize_url
from .common_types import RawItem
from .errors import SourceParseError, SourceUnavailable

logger = logging.getLogger(__name__)

SHEET_CSV_URL = "https://docs.google.com/spreadsheets/d/{sheet_id}/export?format=csv"

# Anything but digits, dot and minus ("$1,234.50" → "1234.50").
_NON_NUMERIC_RE = re.compile(r"[^0-9.\-]+")


def parse_number(text: Any) -> Optional[float]:
    """Lenient numeric parse for sheet cells; ``None`` when not a number."""
    if text is None:
        return None
    cleaned = _NON_NUMERIC_RE.sub("", str(text))
    if cleaned in ("", "-", ".", "-."):
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


class CsvSheetSource:
    """Rows of a CSV export, one item per row."""

    def __init__(
        self,
        source_id: str,
        csv_url: str,
        *,
        title_column: str,
        url_template: str = "",
        url_column: str = "",
        columns: Sequence[str] = (),
        numeric_columns: Sequence[str] = (),
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        if not url_template and not url_column:
            raise ValueError("CsvSheetSource needs url_template or url_column")
        self.source_id = source_id
        self.csv_url = csv_url
        self.title_column = title_column
        self.url_template = url_template
        self.url_column = url_column
        self.columns = tuple(columns)
        self.numeric_columns = frozenset(numeric_columns)
        self.client = httpx.Client(timeout=30.0, follow_redirects=True, transport=transport)

    @classmethod
    def for_sheet(cls, source_id: str, sheet_id: str, **kwargs: Any) -> "CsvSheetSource":
        return cls(source_id, SHEET_CSV_URL.format(sheet_id=sheet_id), **kwargs)

    def fetch_items(self) -> List[RawItem]:
        try:
            r = self.client.get(self.csv_url)
            r.raise_for_status()
        except httpx.HTTPError as exc:
            raise SourceUnavailable(
                f"{sanitize_url(self.csv_url)}: {type(exc).__name__}: {sanitize_exc(exc)}",
                source_id=self.source_id,
            ) from exc
        return self.parse(r.text)

    def parse(self, text: str) -> List[RawItem]:
        """Turn CSV text into raw items (header row required)."""
        if not text.strip():
            logger.info("%s: sheet is empty", self.source_id)
            return []
        reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
        header = [h.strip() for h in (reader.fieldnames or [])]
        if self.title_column not in header:
            raise SourceParseError(
                f"column {self.title_column!r} not in header {header}",
                source_id=self.source_id,
            )

        items: List[RawItem] = []
        for lineno, row in enumerate(reader, start=2):
            clean: Dict[str, Any] = {
                (k or "").strip(): (v or "").strip() for k, v in row.items() if k is not None
            }
            title = clean.get(self.title_column, "")
            if not title:
                continue
            fields: Dict[str, Any] = {}
            for col in self.columns or [h for h in header if h not in (self.title_column, self.url_column)]:
                val: Any = clean.get(col)
                if col in self.numeric_columns:
                    val = parse_number(val)
                    if val is None:
                        logger.warning("%s: row %d has non-numeric %s=%r", self.source_id, lineno, col, clean.get(col))
                fields[col] = val
            if self.url_column:
                url = clean.get(self.url_column, "")
            else:
                try:
                    url = self.url_template.format(**clean)
                except (KeyError, IndexError, ValueError) as exc:
                    raise SourceParseError(
                        f"url_template {self.url_template!r} does not fit row {lineno}: {exc}",
                        source_id=self.source_id,
                    ) from exc
            items.append(RawItem(source_id=self.source_id, title=title, url=url, fields=fields))
        logger.info("%s: %d rows from sheet", self.source_id, len(items))
        return items

    def close(self) -> None:
        self.client.close()
