"""
Unit tests for the temporal resolver.

Tests timestamp parsing, bucket alignment/labels and range expressions.
"""

import math
from datetime import datetime, timezone

import pytest

from tabular_query.domain.models import Granularity, TimeRange
from tabular_query.engine.temporal import (
    DAY_MS,
    bucket_iterator,
    default_window,
    MAX_VALID_MS,
    filter_by_range,
    is_valid_ms,
    iter_bucket_starts,
    parse_range_expression,
    parse_timestamp,
)

NOW = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)


def ms(text: str) -> int:
    return int(datetime.fromisoformat(text).replace(tzinfo=timezone.utc).timestamp() * 1000)


class TestParseTimestamp:
    """Tests for parse_timestamp."""

    def test_epoch_milliseconds(self):
        """Should keep numbers at or above 1e12 as milliseconds."""
        assert parse_timestamp(1700000000000) == 1700000000000

    def test_epoch_seconds(self):
        """Should scale numbers between 1e9 and 1e12 from seconds."""
        assert parse_timestamp(1700000000) == 1700000000000
        assert parse_timestamp("1700000000") == 1700000000000

    def test_small_number_is_nan(self):
        """Numbers below 1e9 are not timestamps."""
        assert math.isnan(parse_timestamp(12345))

    def test_epoch_microseconds_and_nanoseconds_are_nan(self):
        """Numbers past the representable datetime range are not timestamps."""
        assert math.isnan(parse_timestamp(1704067200000000))
        assert math.isnan(parse_timestamp("1704067200000000000"))

    def test_far_future_iso_is_nan(self):
        """Dates in the last representable year cannot be bucketed and are NaN."""
        assert math.isnan(parse_timestamp("9999-06-01"))

    def test_is_valid_ms_bounds(self):
        """Should reject NaN, infinities and out-of-range instants."""
        assert is_valid_ms(ms("2025-01-01T00:00:00"))
        assert not is_valid_ms(float("nan"))
        assert not is_valid_ms(float("inf"))
        assert not is_valid_ms(MAX_VALID_MS)
        assert not is_valid_ms(1704067200000000)

    def test_iso_with_zone(self):
        """Should parse ISO-8601 with Z and with an explicit offset."""
        assert parse_timestamp("2025-02-03T04:05:06Z") == ms("2025-02-03T04:05:06")
        assert parse_timestamp("2025-02-03T04:05:06+02:00") == ms("2025-02-03T02:05:06")

    def test_iso_space_separator_without_zone_is_utc(self):
        """Space-separated ISO without a zone is read as UTC."""
        assert parse_timestamp("2025-02-03 04:05:06") == ms("2025-02-03T04:05:06")

    def test_iso_fractional_seconds(self):
        """Should keep millisecond precision from fractional seconds."""
        assert parse_timestamp("2025-02-03T04:05:06.5Z") == ms("2025-02-03T04:05:06") + 500

    def test_iso_date_only(self):
        """A bare ISO date is midnight UTC."""
        assert parse_timestamp("2025-02-03") == ms("2025-02-03T00:00:00")

    def test_slashed_is_day_first(self):
        """Ambiguous slashed dates read day-first."""
        assert parse_timestamp("03/02/2025") == ms("2025-02-03T00:00:00")

    def test_slashed_month_first_when_forced(self):
        """A second component above 12 forces month-first."""
        assert parse_timestamp("02/13/2025") == ms("2025-02-13T00:00:00")

    def test_slashed_with_time(self):
        """Should parse an optional time after a slashed date."""
        assert parse_timestamp("13/02/2025 14:30") == ms("2025-02-13T14:30:00")

    def test_impossible_slashed_date_is_nan(self):
        """An impossible calendar date is NaN, not an exception."""
        assert math.isnan(parse_timestamp("31/02/2025"))

    def test_free_text_month_name(self):
        """Should parse free text containing a month name."""
        assert parse_timestamp("3 Feb 2025") == ms("2025-02-03T00:00:00")

    @pytest.mark.parametrize("value", [None, True, "", "   ", "hello", {"a": 1}, float("inf")])
    def test_unparseable_is_nan(self, value):
        """Everything else resolves to NaN."""
        assert math.isnan(parse_timestamp(value))


class TestBuckets:
    """Tests for bucket alignment, stepping and labels."""

    def test_labels_per_granularity(self):
        """Should label buckets in their canonical form."""
        ts = ms("2025-05-20T13:00:00")
        assert bucket_iterator("year").describe(bucket_iterator("year").align(ts)) == "2025"
        assert bucket_iterator("quarter").describe(bucket_iterator("quarter").align(ts)) == "2025-Q2"
        assert bucket_iterator("month").describe(bucket_iterator("month").align(ts)) == "2025-05"
        assert bucket_iterator("day").describe(bucket_iterator("day").align(ts)) == "2025-05-20"

    def test_week_aligns_to_monday(self):
        """Weeks start on Monday 00:00 UTC and carry the ISO week label."""
        weeks = bucket_iterator(Granularity.WEEK)
        start = weeks.align(ms("2025-02-12T10:00:00"))
        assert start == ms("2025-02-10T00:00:00")
        assert weeks.describe(start) == "2025-W07"

    def test_week_label_uses_iso_year(self):
        """A week starting in December can belong to the next ISO year."""
        weeks = bucket_iterator(Granularity.WEEK)
        assert weeks.describe(weeks.align(ms("2024-12-31T08:00:00"))) == "2025-W01"

    def test_headers(self):
        """Each granularity has its column header."""
        assert [bucket_iterator(g).header for g in Granularity] == ["Year", "Quarter", "Month", "Week", "Day"]

    def test_bucket_starts_inclusive(self):
        """Should yield every aligned start from since through until."""
        starts = list(iter_bucket_starts(ms("2025-01-15T00:00:00"), ms("2025-03-03T00:00:00"), "month"))
        assert starts == [ms("2025-01-01T00:00:00"), ms("2025-02-01T00:00:00"), ms("2025-03-01T00:00:00")]

    def test_month_step_from_month_end(self):
        """Stepping an aligned month start lands on the next month start."""
        months = bucket_iterator("month")
        assert months.step(ms("2025-01-01T00:00:00")) == ms("2025-02-01T00:00:00")

    @pytest.mark.parametrize(
        "granularity,since,until,count",
        [
            ("year", "2022-06-01T00:00:00", "2025-01-15T00:00:00", 4),
            ("quarter", "2024-11-20T00:00:00", "2025-05-01T00:00:00", 3),
            ("month", "2024-12-15T00:00:00", "2025-02-01T00:00:00", 3),
            ("week", "2024-12-25T00:00:00", "2025-01-08T00:00:00", 3),
            ("day", "2024-12-30T23:00:00", "2025-01-02T01:00:00", 4),
        ],
    )
    def test_step_stays_aligned_and_covers_range(self, granularity, since, until, count):
        """Stepping an aligned start lands on an aligned start; the series is inclusive."""
        buckets = bucket_iterator(granularity)
        starts = list(iter_bucket_starts(ms(since), ms(until), granularity))
        assert len(starts) == count
        assert starts[0] == buckets.align(ms(since))
        assert starts[-1] == buckets.align(ms(until))
        for t in (ms(since), ms(until)):
            stepped = buckets.step(buckets.align(t))
            assert buckets.align(stepped) == stepped
        for current, following in zip(starts, starts[1:]):
            assert buckets.align(current) == current
            assert buckets.step(current) == following


class TestRanges:
    """Tests for parse_range_expression and range helpers."""

    def test_huge_relative_span_is_clamped(self):
        """A relative span reaching before year 2 starts at the earliest valid instant."""
        r = parse_range_expression("last 5000 years", now=NOW)
        assert is_valid_ms(r.since_ms)
        assert r.until_ms == ms("2025-01-15T10:00:00")

    def test_year_span_past_range_is_ignored(self):
        """A year span ending in 9999 does not resolve."""
        assert parse_range_expression("between 2020 and 9999", now=NOW) is None

    def test_absolute_iso_range(self):
        """Should cover both ISO days inclusively."""
        r = parse_range_expression("between 2025-01-01 and 2025-01-31", now=NOW)
        assert r.since_ms == ms("2025-01-01T00:00:00")
        assert r.until_ms == ms("2025-01-31T00:00:00") + DAY_MS - 1

    def test_on_single_day(self):
        """Should resolve 'on <date>' to one day."""
        r = parse_range_expression("transactions on 2025-01-05", now=NOW)
        assert r.until_ms - r.since_ms == DAY_MS - 1

    def test_year_span(self):
        """Should resolve a year span to whole years."""
        r = parse_range_expression("from 2022 to 2024", now=NOW)
        assert r.since_ms == ms("2022-01-01T00:00:00")
        assert r.until_ms == ms("2025-01-01T00:00:00") - 1
        assert r.label == "2022-2024"

    def test_short_year_span(self):
        """Should expand a two-digit tail year."""
        r = parse_range_expression("volumes 2021-23", now=NOW)
        assert r.label == "2021-2023"

    def test_single_year(self):
        """Should resolve 'in YYYY' to that calendar year."""
        r = parse_range_expression("how many in 2024", now=NOW)
        assert r.since_ms == ms("2024-01-01T00:00:00")
        assert r.until_ms == ms("2025-01-01T00:00:00") - 1

    def test_month_range_with_year(self):
        """Should cover the first day of the first month through the last instant of the last."""
        r = parse_range_expression("per month between Feb and Aug 2025", now=NOW)
        assert r.since_ms == ms("2025-02-01T00:00:00")
        assert r.until_ms == ms("2025-09-01T00:00:00") - 1

    def test_reversed_month_range_is_sorted(self):
        """Reversed month names still give an ascending range in the current year."""
        r = parse_range_expression("between aug and feb", now=NOW)
        assert r.since_ms == ms("2025-02-01T00:00:00")
        assert r.until_ms == ms("2025-09-01T00:00:00") - 1

    def test_single_month_defaults_to_current_year(self):
        """Should resolve a bare month in the current year."""
        r = parse_range_expression("in march", now=NOW)
        assert r.since_ms == ms("2025-03-01T00:00:00")

    def test_last_month_name_rolls_back(self):
        """'last <month>' not yet reached this year means last year."""
        r = parse_range_expression("last december", now=NOW)
        assert r.since_ms == ms("2024-12-01T00:00:00")

    def test_may_as_verb_is_ignored(self):
        """A bare 'may' is not a month."""
        assert parse_range_expression("may I see something", now=NOW) is None

    def test_relative_days(self):
        """Should resolve 'last N days' relative to now."""
        r = parse_range_expression("last 30 days", now=NOW)
        assert r.until_ms == ms("2025-01-15T10:00:00")
        assert r.until_ms - r.since_ms == 30 * DAY_MS

    def test_relative_unit(self):
        """Should resolve 'last week' to seven days."""
        r = parse_range_expression("what came in last week", now=NOW)
        assert r.until_ms - r.since_ms == 7 * DAY_MS

    def test_no_range(self):
        """Should return None when nothing matches."""
        assert parse_range_expression("hello there", now=NOW) is None
        assert parse_range_expression("", now=NOW) is None

    def test_default_window(self):
        """Month granularity without a range covers the last 12 months."""
        r = default_window(Granularity.MONTH, NOW)
        assert r.until_ms - r.since_ms == 360 * DAY_MS
        assert r.label == "last 12 months"

    def test_filter_excludes_undated(self):
        """Rows without a timestamp never survive a range."""
        r = TimeRange(since_ms=0, until_ms=ms("2030-01-01T00:00:00"))
        rows = [{"ts": float("nan")}, {"ts": 5.0}]
        assert filter_by_range(rows, r, lambda row: row["ts"]) == [{"ts": 5.0}]

    def test_inverted_range_rejected(self):
        """A range with since after until is invalid."""
        with pytest.raises(ValueError):
            TimeRange(since_ms=10, until_ms=5)
