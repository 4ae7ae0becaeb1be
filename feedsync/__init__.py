"""feedsync – dedup-and-sync core for scraped feeds.

Source adapters (RSS, sheet CSV, JSON dumps from external scrapers) hand
``RawItem`` records to the ``SyncEngine``, which normalises them, checks
them against a preloaded ``ExistingIndex`` of the destination database,
and creates only what is missing – with bounded backoff on rate limits.

Designed as a run-once batch job: ``python -m feedsync.run``.
"""
