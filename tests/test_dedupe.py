"""Tests for the destination clean-up tool."""

from __future__ import annotations

import io
import os
import unittest
from unittest.mock import patch

from feedsync.backoff import BackoffPolicy
from feedsync.common_types import StoredRecord
from feedsync.dedupe import archive_duplicates, dedupe_store, find_duplicates, main
from feedsync.errors import PermanentError, RateLimited
from feedsync.normalize import ByTitleAndField, SourceConfig
from tests.fakes import FakeStore

RSS = SourceConfig("rss")


def _rows():
    # FakeStore stamps later rows with later created times.
    return FakeStore([
        {"Title": "A", "Link": "https://a/1"},
        {"Title": "A copy", "Link": "http://a/1"},
        {"Title": "B", "Link": "https://a/2"},
        {"Title": "A again", "Link": "HTTPS://A/1#top"},
        {"Title": "no link"},
    ])


class TestFindDuplicates(unittest.TestCase):

    def test_keep_newest(self):
        groups = find_duplicates(_rows().rows, RSS, keep="newest")
        self.assertEqual(len(groups), 1)
        self.assertEqual(groups[0].key, "https://a/1")
        self.assertEqual(groups[0].keep.stored_id, "page-4")
        self.assertEqual([r.stored_id for r in groups[0].archive], ["page-2", "page-1"])

    def test_keep_oldest(self):
        groups = find_duplicates(_rows().rows, RSS, keep="oldest")
        self.assertEqual(groups[0].keep.stored_id, "page-1")
        self.assertEqual([r.stored_id for r in groups[0].archive], ["page-2", "page-4"])

    def test_missing_created_time_sorts_oldest(self):
        rows = [
            StoredRecord("undated", {"Link": "https://a/1"}),
            StoredRecord("dated", {"Link": "https://a/1"}, _rows().rows[0].created_time),
        ]
        self.assertEqual(find_duplicates(rows, RSS, keep="newest")[0].keep.stored_id, "dated")
        self.assertEqual(find_duplicates(rows, RSS, keep="oldest")[0].keep.stored_id, "undated")

    def test_title_and_field_identity(self):
        cfg = SourceConfig("fisc", identity=ByTitleAndField("Name"))
        rows = [
            StoredRecord("p1", {"Title": "Steel", "Name": "HPG"}),
            StoredRecord("p2", {"Title": "STEEL", "Name": "HPG"}),
            StoredRecord("p3", {"Title": "Steel", "Name": "HSG"}),
        ]
        groups = find_duplicates(rows, cfg)
        self.assertEqual([g.key for g in groups], ["steel|HPG"])

    def test_no_duplicates(self):
        self.assertEqual(find_duplicates([StoredRecord("p1", {"Link": "https://a/1"})], RSS), [])

    def test_invalid_keep(self):
        with self.assertRaises(ValueError):
            find_duplicates([], RSS, keep="random")


class TestArchiveDuplicates(unittest.TestCase):

    def test_archives_all_but_survivor(self):
        store = _rows()
        report = dedupe_store(store, RSS)
        self.assertEqual(sorted(store.archived), ["page-1", "page-2"])
        self.assertEqual((report.scanned, report.groups, report.archived, report.failed), (5, 1, 2, 0))

    def test_dry_run_writes_nothing(self):
        store = _rows()
        report = dedupe_store(store, RSS, dry_run=True)
        self.assertEqual(store.archived, [])
        self.assertEqual(report.archived, 2)
        self.assertIn("would archive=2", report.summary(dry_run=True))

    def test_row_failure_not_fatal(self):
        store = _rows()
        store.fail("archive", PermanentError("HTTP 404", status=404))
        groups = find_duplicates(store.rows, RSS)
        report = archive_duplicates(store, groups)
        self.assertEqual((report.archived, report.failed), (1, 1))
        self.assertEqual(report.failures[0][0], "page-2")
        self.assertIn("page-2", report.summary())

    def test_rate_limits_retried_with_backoff(self):
        store = _rows()
        store.fail("archive", RateLimited(), RateLimited(), RateLimited())
        sleeps = []
        report = archive_duplicates(store, find_duplicates(store.rows, RSS), BackoffPolicy(sleep=sleeps.append))
        self.assertEqual((report.archived, report.failed), (1, 1))
        self.assertIn("gave up after 3 attempt(s)", report.failures[0][1])
        self.assertEqual(sleeps, [15.0, 30.0])

    def test_inter_call_delay(self):
        store = _rows()
        sleeps = []
        archive_duplicates(
            store, find_duplicates(store.rows, RSS), BackoffPolicy(sleep=sleeps.append), inter_call_delay_s=0.35,
        )
        self.assertEqual(sleeps, [0.35])


class TestDedupeMain(unittest.TestCase):

    def test_missing_credentials_exit_1(self):
        with patch.dict(os.environ, {}, clear=True), patch("feedsync.dedupe.load_dotenv"):
            with self.assertRaises(SystemExit) as cm:
                main([])
        self.assertEqual(cm.exception.code, 1)

    def test_unknown_source_exit_1(self):
        env = {"FEEDSYNC_DESTINATION": "sqlite", "FEEDSYNC_SOURCES": "/nonexistent/sources.json"}
        with patch.dict(os.environ, env, clear=True), patch("feedsync.dedupe.load_dotenv"):
            with self.assertRaises(SystemExit) as cm:
                main(["--source", "rss"])
        self.assertEqual(cm.exception.code, 1)

    def test_runs_against_opened_store(self):
        store = _rows()
        env = {"FEEDSYNC_DESTINATION": "sqlite", "INTER_CALL_DELAY_S": "0"}
        with patch.dict(os.environ, env, clear=True), patch("feedsync.dedupe.load_dotenv"), \
                patch("feedsync.dedupe.open_store", return_value=store), \
                patch("sys.stdout", new_callable=io.StringIO) as out:
            main(["--keep", "oldest"])
        self.assertEqual(sorted(store.archived), ["page-2", "page-4"])
        self.assertIn("archived=2", out.getvalue())
        self.assertIn(("close", None), store.calls)


if __name__ == "__main__":
    unittest.main()
