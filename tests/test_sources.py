"""Tests for source adapters (RSS, Notion feed list, CSV sheet, JSON dump) and the sources file."""

from __future__ import annotations

import json
import os
import tempfile
import unittest
from datetime import datetime, timezone
from unittest.mock import patch

import httpx

from feedsync.config import Config
from feedsync.errors import ConfigError, PermanentError, SourceParseError, SourceUnavailable
from feedsync.ingest_feed_list import FeedListSource
from feedsync.ingest_rss import RssSource
from feedsync.ingest_sheet import CsvSheetSource, parse_number
from feedsync.normalize import ByTitleAndField, ByUrl
from feedsync.sources import JsonFileSource, fetch_safely, load_sources
from tests.fakes import FakeStore

RSS_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example Markets</title>
    <link>https://example.com/</link>
    <item>
      <title>Fed holds rates &amp;amp; signals patience</title>
      <link>https://example.com/news/1</link>
      <pubDate>Wed, 01 May 2024 10:00:00 GMT</pubDate>
      <description>Short summary.</description>
    </item>
    <item>
      <title>Oil slips</title>
      <link>https://example.com/news/2</link>
    </item>
    <item>
      <title>Third</title>
      <link>https://example.com/news/3</link>
    </item>
  </channel>
</rss>
"""

CSV_TEXT = "\ufeffTicker,Company,Current Price,Change %\nAAPL,Apple,\"$1,234.50\",1.2%\nMSFT,Microsoft,n/a,-0.5%\n,Blank,1,1\n"


# ── RSS ─────────────────────────────────────────────────────────


class TestRssSource(unittest.TestCase):

    def test_entries_become_raw_items(self):
        src = RssSource("markets", "https://example.com/rss", limit=2, feed_field="Feed",
                        transport=httpx.MockTransport(lambda r: httpx.Response(200, content=RSS_XML)))
        items = src.fetch_items()
        self.assertEqual(len(items), 2)
        first = items[0]
        self.assertEqual(first.url, "https://example.com/news/1")
        self.assertEqual(first.published_at, datetime(2024, 5, 1, 10, tzinfo=timezone.utc))
        self.assertEqual(first.body, "Short summary.")
        self.assertEqual(first.fields, {"Feed": "Example Markets"})
        self.assertIsNone(items[1].published_at)

    def test_no_feed_field_by_default(self):
        src = RssSource("markets", "https://example.com/rss",
                        transport=httpx.MockTransport(lambda r: httpx.Response(200, content=RSS_XML)))
        self.assertTrue(all(it.fields == {} for it in src.fetch_items()))

    def test_http_error_is_source_unavailable(self):
        src = RssSource("markets", "https://example.com/rss?token=abc",
                        transport=httpx.MockTransport(lambda r: httpx.Response(404)))
        with self.assertRaises(SourceUnavailable) as cm:
            src.fetch_items()
        self.assertEqual(cm.exception.source_id, "markets")
        self.assertIn("token=***", str(cm.exception))
        self.assertNotIn("token=abc", str(cm.exception))


# ── CSV sheet ───────────────────────────────────────────────────


class TestCsvSheetSource(unittest.TestCase):

    def _src(self, **kw):
        kw.setdefault("title_column", "Ticker")
        kw.setdefault("url_template", "https://finance.yahoo.com/quote/{Ticker}")
        return CsvSheetSource("prices", "https://sheet.example/export.csv", **kw)

    def test_parse_rows(self):
        items = self._src(numeric_columns=("Current Price",)).parse(CSV_TEXT)
        self.assertEqual([it.title for it in items], ["AAPL", "MSFT"])
        self.assertEqual(items[0].url, "https://finance.yahoo.com/quote/AAPL")
        self.assertEqual(items[0].fields["Current Price"], 1234.5)
        self.assertEqual(items[0].fields["Company"], "Apple")
        self.assertIsNone(items[1].fields["Current Price"])
        self.assertNotIn("Ticker", items[0].fields)

    def test_selected_columns_only(self):
        items = self._src(columns=("Company",)).parse(CSV_TEXT)
        self.assertEqual(items[0].fields, {"Company": "Apple"})

    def test_url_column(self):
        text = "Name,Link\nReport A,https://x/a\n"
        items = CsvSheetSource("r", "https://s/e.csv", title_column="Name", url_column="Link").parse(text)
        self.assertEqual((items[0].url, items[0].fields), ("https://x/a", {}))

    def test_missing_title_column(self):
        with self.assertRaises(SourceParseError):
            self._src(title_column="Symbol").parse(CSV_TEXT)

    def test_template_not_matching_row(self):
        with self.assertRaises(SourceParseError):
            self._src(url_template="https://q/{Symbol}").parse(CSV_TEXT)

    def test_needs_a_locator(self):
        with self.assertRaises(ValueError):
            CsvSheetSource("x", "https://s/e.csv", title_column="Ticker")

    def test_empty_sheet(self):
        self.assertEqual(self._src().parse("  \n"), [])

    def test_fetch_uses_http(self):
        src = self._src(transport=httpx.MockTransport(lambda r: httpx.Response(200, text=CSV_TEXT)))
        self.assertEqual(len(src.fetch_items()), 2)
        broken = self._src(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        with self.assertRaises(SourceUnavailable):
            broken.fetch_items()

    def test_parse_number(self):
        self.assertEqual(parse_number("$1,234.50"), 1234.5)
        self.assertEqual(parse_number("-0.5%"), -0.5)
        self.assertIsNone(parse_number("n/a"))
        self.assertIsNone(parse_number(None))


# ── JSON dump ───────────────────────────────────────────────────


class TestJsonFileSource(unittest.TestCase):

    def test_reads_items(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "fisc.json")
            with open(path, "w", encoding="utf-8") as f:
                json.dump([
                    {"title": "Báo cáo ngành", "link": "/r/1.pdf", "date": "2024-05-01", "stockCode": "HPG"},
                    "not an object",
                ], f)
            items = JsonFileSource("fisc", path).fetch_items()
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0].url, "/r/1.pdf")
        self.assertEqual(items[0].fields, {"stockCode": "HPG"})
        self.assertEqual(items[0].published_at.year, 2024)

    def test_wrapped_object_and_errors(self):
        with tempfile.TemporaryDirectory() as tmp:
            good = os.path.join(tmp, "a.json")
            bad = os.path.join(tmp, "b.json")
            with open(good, "w", encoding="utf-8") as f:
                json.dump({"reports": [{"title": "T", "url": "https://x/1"}]}, f)
            with open(bad, "w", encoding="utf-8") as f:
                f.write("{not json")
            self.assertEqual(len(JsonFileSource("a", good).fetch_items()), 1)
            with self.assertRaises(SourceParseError):
                JsonFileSource("b", bad).fetch_items()
            with self.assertRaises(SourceUnavailable):
                JsonFileSource("c", os.path.join(tmp, "missing.json")).fetch_items()


class TestFetchSafely(unittest.TestCase):

    def test_source_failure_becomes_reason(self):
        src = JsonFileSource("gone", "/nonexistent/feedsync/items.json")
        items, err = fetch_safely(src)
        self.assertEqual(items, [])
        self.assertIn("items.json", err)

    def test_success(self):
        class Static:
            source_id = "static"

            def fetch_items(self):
                return []

        self.assertEqual(fetch_safely(Static()), ([], None))


# ── Feed list in Notion ─────────────────────────────────────────


def _feeds_transport(request: httpx.Request) -> httpx.Response:
    if request.url.host == "example.com":
        return httpx.Response(200, content=RSS_XML)
    return httpx.Response(503)


class TestFeedListSource(unittest.TestCase):

    def _source(self, rows, transport=_feeds_transport):
        return FeedListSource("reader", FakeStore(rows), limit=2, feed_field="Feed",
                              transport=httpx.MockTransport(transport))

    def test_feed_urls_from_link_or_url_property(self):
        src = self._source([
            {"Name": "Markets", "Link": "https://example.com/rss"},
            {"Name": "Other", "URL": "https://other.com/feed"},
            {"Name": "No address"},
            {"Name": "Markets again", "Link": "https://example.com/rss"},
        ])
        self.assertEqual(src.feed_urls(), ["https://example.com/rss", "https://other.com/feed"])

    def test_failed_feed_skipped(self):
        src = self._source([{"Link": "https://other.com/feed"}, {"Link": "https://example.com/rss"}])
        items = src.fetch_items()
        self.assertEqual([it.url for it in items], ["https://example.com/news/1", "https://example.com/news/2"])
        self.assertTrue(all(it.source_id == "reader" for it in items))
        self.assertEqual(items[0].fields, {"Feed": "Example Markets"})

    def test_all_feeds_failing_is_source_unavailable(self):
        src = self._source([{"Link": "https://other.com/feed"}])
        with self.assertRaises(SourceUnavailable) as cm:
            src.fetch_items()
        self.assertEqual(cm.exception.source_id, "reader")

    def test_empty_list(self):
        self.assertEqual(self._source([]).fetch_items(), [])

    def test_unreadable_list_is_source_unavailable(self):
        src = self._source([{"Link": "https://example.com/rss"}])
        src.feed_store.fail("query", PermanentError("HTTP 401", status=401))
        with self.assertRaises(SourceUnavailable) as cm:
            src.fetch_items()
        self.assertIn("feed list unreadable", str(cm.exception))

    def test_close_closes_list_store(self):
        src = self._source([])
        src.close()
        self.assertIn(("close", None), src.feed_store.calls)


# ── Sources file ────────────────────────────────────────────────


class TestLoadSources(unittest.TestCase):

    def _write(self, tmp, data):
        path = os.path.join(tmp, "sources.json")
        with open(path, "w", encoding="utf-8") as f:
            f.write(data if isinstance(data, str) else json.dumps(data))
        return path

    def test_all_adapter_types(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = self._write(tmp, {"sources": [
                {"id": "rss", "type": "rss", "feed_url": "https://e/rss", "limit": 5},
                {"id": "fisc", "type": "json", "path": "fisc.json", "base_url": "https://fisc.vn",
                 "identity": {"by": "title_and_field", "field": "Name"}, "enrich": False},
                {"id": "prices", "type": "sheet", "sheet_id": "abc", "title_column": "Ticker",
                 "url_template": "https://q/{Ticker}", "refresh_fields": ["Current Price"]},
            ]})
            pairs = load_sources(path)
        adapters = [a for a, _ in pairs]
        cfgs = {c.source_id: c for _, c in pairs}
        self.assertIsInstance(adapters[0], RssSource)
        self.assertEqual(adapters[0].limit, 5)
        self.assertIsInstance(adapters[1], JsonFileSource)
        self.assertIsInstance(adapters[2], CsvSheetSource)
        self.assertIn("/d/abc/export", adapters[2].csv_url)
        self.assertEqual(cfgs["rss"].identity, ByUrl())
        self.assertEqual(cfgs["fisc"].identity, ByTitleAndField("Name"))
        self.assertFalse(cfgs["fisc"].enrich)
        self.assertEqual(cfgs["prices"].refresh_fields, ("Current Price",))

    def test_notion_feed_list(self):
        env = {"NOTION_API_TOKEN": "tok", "NOTION_FEEDS_DATABASE_ID": "feeds-db"}
        with patch.dict(os.environ, env, clear=True):
            config = Config()
        with tempfile.TemporaryDirectory() as tmp:
            path = self._write(tmp, {"sources": [
                {"id": "reader", "type": "notion_feeds", "feed_field": "Feed", "match_titles": True},
                {"id": "other", "type": "notion_feeds", "database_id": "other-db", "limit": 5},
            ]})
            pairs = load_sources(path, config)
        (reader, reader_cfg), (other, _) = pairs
        try:
            self.assertIsInstance(reader, FeedListSource)
            self.assertEqual((reader.feed_store.database_id, reader.limit, reader.feed_field), ("feeds-db", 2, "Feed"))
            self.assertEqual((other.feed_store.database_id, other.limit), ("other-db", 5))
            self.assertTrue(reader_cfg.match_titles)
        finally:
            reader.close()
            other.close()

    def test_notion_feed_list_needs_a_database(self):
        with patch.dict(os.environ, {"NOTION_API_TOKEN": "tok"}, clear=True):
            config = Config()
        with tempfile.TemporaryDirectory() as tmp:
            path = self._write(tmp, {"sources": [{"id": "reader", "type": "notion_feeds"}]})
            with self.assertRaises(ConfigError):
                load_sources(path, config)

    def test_invalid_files(self):
        cases = [
            "{broken",
            {"sources": []},
            {"sources": [{"type": "rss", "feed_url": "https://e"}]},
            {"sources": [{"id": "a", "type": "ftp"}]},
            {"sources": [{"id": "a", "type": "rss"}]},
            {"sources": [{"id": "a", "type": "json", "path": "x"}, {"id": "a", "type": "json", "path": "y"}]},
            {"sources": [{"id": "a", "type": "json", "path": "x", "identity": {"by": "title_and_field"}}]},
        ]
        for data in cases:
            with tempfile.TemporaryDirectory() as tmp:
                path = self._write(tmp, data)
                with self.assertRaises(ConfigError, msg=repr(data)):
                    load_sources(path)

    def test_missing_file(self):
        with self.assertRaises(ConfigError):
            load_sources("/nonexistent/sources.json")


if __name__ == "__main__":
    unittest.main()
