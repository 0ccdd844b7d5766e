"""
Unit tests for DataGateway against an in-memory store.
"""

import asyncio

from conftest import FakeStore, make_gateway, ms, txn

from tabular_query.domain.models import Status, TimeRange
from tabular_query.engine.gateway import overfetch_size

JAN_2025 = TimeRange(since_ms=ms("2025-01-01T00:00:00Z"), until_ms=ms("2025-02-01T00:00:00Z") - 1, label="jan 2025")


class TestFetchFull:
    """Tests for fetch_full."""

    def test_filters_locally_when_store_ignores_range(self, store):
        """Should apply the range even when the store returns everything."""
        rows = asyncio.run(make_gateway(store).fetch_full(JAN_2025))
        assert sorted(r["trn"] for r in rows) == ["SPBTR25RFC000004", "SPBTR25RFC000005"]
        request = store.requests[0]
        assert request.url.path == "/workdesk/full"
        assert request.url.params["limit"] == "0"
        assert request.url.params["sinceMs"] == str(JAN_2025.since_ms)

    def test_filtering_is_idempotent(self, sample_rows):
        """A store that already filtered gives the same result."""
        honoring = FakeStore(sample_rows, honor_ranges=True)
        ignoring = FakeStore(sample_rows, honor_ranges=False)
        a = asyncio.run(make_gateway(honoring).fetch_full(JAN_2025))
        b = asyncio.run(make_gateway(ignoring).fetch_full(JAN_2025))
        assert a == b

    def test_drops_undated_rows_in_range(self):
        """Rows without a timestamp never appear in a range fetch."""
        store = FakeStore([txn("A", "2025-01-05T00:00:00Z"), {"trn": "B", "status": "Registered"}])
        rows = asyncio.run(make_gateway(store).fetch_full(JAN_2025))
        assert [r["trn"] for r in rows] == ["A"]

    def test_failure_returns_empty(self, store):
        """A failing store degrades to an empty list."""
        store.fail_paths["/workdesk/full"] = 500
        assert asyncio.run(make_gateway(store).fetch_full()) == []

    def test_flattens_envelopes(self):
        """Should flatten base/derived rows from the store."""
        store = FakeStore([{"base": {"trn": "A", "receivedAt": "2025-01-05T00:00:00Z"}, "derived": {"status": "Pending"}}])
        rows = asyncio.run(make_gateway(store).fetch_full())
        assert rows == [{"trn": "A", "receivedAt": "2025-01-05T00:00:00Z", "status": "Pending"}]


class TestFetchRecent:
    """Tests for fetch_recent, fetch_latest and fetch_oldest."""

    def test_resorts_locally(self, sample_rows):
        """Should re-sort newest-first even when the store does not sort."""
        store = FakeStore(sample_rows, honor_sort=False)
        rows = asyncio.run(make_gateway(store).fetch_recent(2))
        assert [r["trn"] for r in rows] == ["SPBTR25RFC000005", "SPBTR25RFC000004"]
        assert store.requests[0].url.params["order"] == "desc"

    def test_falls_back_to_full(self, store):
        """A failing list endpoint falls back to the full dataset."""
        store.fail_paths["/workdesk"] = 503
        rows = asyncio.run(make_gateway(store).fetch_recent(1))
        assert [r["trn"] for r in rows] == ["SPBTR25RFC000005"]
        assert store.paths() == ["/workdesk", "/workdesk/full"]

    def test_latest_with_status_overfetches(self, store):
        """A status filter over-fetches and keeps only matching rows."""
        rows = asyncio.run(make_gateway(store).fetch_latest(1, Status.PENDING))
        assert [r["trn"] for r in rows] == ["SPBTR25RFC000004"]
        assert store.requests[0].url.params["limit"] == str(overfetch_size(1))

    def test_overfetch_size(self):
        """Over-fetch is max(5n, n + 10)."""
        assert overfetch_size(1) == 11
        assert overfetch_size(10) == 50

    def test_oldest(self, sample_rows):
        """Should return the single oldest row."""
        store = FakeStore(sample_rows, honor_sort=False)
        row = asyncio.run(make_gateway(store).fetch_oldest())
        assert row["trn"] == "SPBTR23RFC000001"

    def test_oldest_empty_store(self):
        """An empty store has no oldest row."""
        assert asyncio.run(make_gateway(FakeStore([])).fetch_oldest()) is None


class TestFetchByKey:
    """Tests for fetch_by_key."""

    def test_found(self, store):
        """Should return the row for a known key."""
        lookup = asyncio.run(make_gateway(store).fetch_by_key("SPBTR24RFC000002"))
        assert lookup.found
        assert lookup.row["product"] == "LC"
        assert store.paths() == ["/txn/SPBTR24RFC000002"]

    def test_not_found(self, store):
        """A 404 is a normal not-found result."""
        lookup = asyncio.run(make_gateway(store).fetch_by_key("SPBTR99RFC999999"))
        assert not lookup.found
        assert lookup.key == "SPBTR99RFC999999"
