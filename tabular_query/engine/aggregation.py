"""
Aggregation Engine.

Builds the tables the router shows and remembers: zero-filled time-bucket
series split by status, per-year totals, year-over-year comparisons and
detail selections. `present` summarizes a row set into the compact payload
handed to the chat collaborator.
"""

from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Union

from tabular_query.core.constants import DETAIL_ROW_CAP, FACET_TOP_K, LATEST_SAMPLE_SIZE
from tabular_query.core.profile import KEY_FIELD, STATUS_FIELD, TIMESTAMP_FIELD, DatasetProfile, DetailColumn
from tabular_query.domain.models import Aggregation, AggregationMeta, Granularity, Status, TimeRange
from tabular_query.engine.row_shape import Row, RowShape, resolve_path
from tabular_query.engine.temporal import bucket_iterator, from_ms, is_valid_ms, iter_bucket_starts
from tabular_query.utils.text import slugify

TOTAL = "Total"
REGISTERED = "Registered"
PENDING = "Pending"


def _dated(rows: Iterable[Row], shape: RowShape) -> List[tuple]:
    dated = []
    for row in rows:
        ts = shape.timestamp_ms(row)
        if is_valid_ms(ts):
            dated.append((ts, row))
    return dated


def aggregate(
    rows: List[Row],
    time_range: Optional[TimeRange],
    granularity: Union[Granularity, str],
    shape: RowShape,
) -> Aggregation:
    """
    Bucket rows by granularity into (bucket, total, registered, pending).

    Every bucket from the aligned range start through the aligned range end
    is emitted, zero-filled. Open range bounds fall back to the earliest or
    latest row timestamp. Rows belong to the bucket whose aligned start is
    the greatest one not after their timestamp.
    """
    granularity = Granularity(granularity)
    buckets = bucket_iterator(granularity)
    dated = _dated(rows, shape)
    if time_range is not None:
        dated = [(ts, row) for ts, row in dated if time_range.contains(ts)]

    since = time_range.since_ms if time_range and time_range.since_ms is not None else None
    until = time_range.until_ms if time_range and time_range.until_ms is not None else None
    if since is None and dated:
        since = min(ts for ts, _ in dated)
    if until is None and dated:
        until = max(ts for ts, _ in dated)

    columns = [buckets.header, TOTAL, REGISTERED, PENDING]
    name = f"per-{granularity.value}"
    if time_range is not None and time_range.label:
        name = f"{name}-{slugify(time_range.label)}"
    if since is None or until is None:
        return Aggregation(columns=columns, rows=[], meta=AggregationMeta(name=name))

    totals: Counter = Counter()
    pending: Counter = Counter()
    for ts, row in dated:
        start = buckets.align(ts)
        totals[start] += 1
        if shape.status(row) == Status.PENDING:
            pending[start] += 1

    table = []
    for start in iter_bucket_starts(since, until, granularity):
        total = totals.get(start, 0)
        table.append([buckets.describe(start), str(total), str(total - pending.get(start, 0)), str(pending.get(start, 0))])
    return Aggregation(columns=columns, rows=table, meta=AggregationMeta(name=name))


def per_year_totals(rows: List[Row], shape: RowShape) -> Aggregation:
    """All-time per-year totals from the earliest to the latest year, zero-filled."""
    years = Counter(from_ms(ts).year for ts, _ in _dated(rows, shape))
    if not years:
        return Aggregation(columns=["Year", TOTAL], rows=[])
    table = [[str(year), str(years.get(year, 0))] for year in range(min(years), max(years) + 1)]
    return Aggregation(columns=["Year", TOTAL], rows=table)


def year_over_year(rows: List[Row], shape: RowShape, years: Optional[List[int]] = None) -> Aggregation:
    """Count per year with share of total and change against the previous listed year."""
    counts = Counter(from_ms(ts).year for ts, _ in _dated(rows, shape))
    selected = sorted(set(years)) if years else sorted(counts)
    grand_total = sum(counts.get(y, 0) for y in selected)

    table = []
    previous: Optional[int] = None
    for year in selected:
        count = counts.get(year, 0)
        share = f"{(count / grand_total * 100):.1f}%" if grand_total else "0.0%"
        if previous:
            change = f"{((count - previous) / previous * 100):+.1f}%"
        else:
            change = "n/a"
        table.append([str(year), str(count), share, change])
        previous = count
    return Aggregation(
        columns=["Year", "Count", "% of Total", "YoY % Change"],
        rows=table,
        meta=AggregationMeta(name="year-over-year"),
    )


def detail_value(row: Row, column: DetailColumn, shape: RowShape) -> str:
    if column.field == KEY_FIELD:
        return shape.key(row)
    if column.field == STATUS_FIELD:
        return shape.status(row).value
    if column.field == TIMESTAMP_FIELD:
        ts = shape.timestamp_ms(row)
        return from_ms(ts).strftime("%Y-%m-%dT%H:%M:%SZ") if is_valid_ms(ts) else ""
    value = resolve_path(row, column.field)
    return "" if value is None else str(value)


def detail_selection(
    rows: List[Row],
    shape: RowShape,
    columns: List[DetailColumn],
    name: str = "selection",
    cap: int = DETAIL_ROW_CAP,
) -> Aggregation:
    """Newest-first detail table of at most `cap` rows."""
    ordered = shape.sort_newest_first(rows)[:cap]
    table = [[detail_value(row, column, shape) for column in columns] for row in ordered]
    return Aggregation(columns=[c.label for c in columns], rows=table, meta=AggregationMeta(name=name))


def _ranked(counter: Counter) -> List[tuple]:
    # Counter keeps first-seen order and sorted() is stable, so ties keep it too
    return sorted(counter.items(), key=lambda item: -item[1])


def present(
    intent: str,
    rows: List[Row],
    shape: RowShape,
    profile: Optional[DatasetProfile] = None,
    **extras: Any,
) -> Dict[str, Any]:
    """
    Summarize rows into the DEEP_FETCH payload.

    Tallies are ordered by descending count, first-seen order on ties.
    Undated rows count toward the total but not toward any year.
    """
    profile = profile or DatasetProfile()
    per_year: Counter = Counter()
    per_year_status: Dict[int, Counter] = {}
    status_mix: Counter = Counter()
    facets: Dict[str, Counter] = {name: Counter() for name in profile.facet_fields}
    undated = 0

    for row in rows:
        status = shape.status(row)
        status_mix[status.value] += 1
        ts = shape.timestamp_ms(row)
        if is_valid_ms(ts):
            year = from_ms(ts).year
            per_year[year] += 1
            per_year_status.setdefault(year, Counter())[status.value] += 1
        else:
            undated += 1
        for name, counter in facets.items():
            value = resolve_path(row, name)
            if value is not None and str(value).strip():
                counter[str(value)] += 1

    ranked_years = _ranked(per_year)
    payload: Dict[str, Any] = {
        "kind": "DEEP_FETCH",
        "intent": intent,
        "totals": {"count": len(rows), "undated": undated},
        "perYear": [[year, count] for year, count in ranked_years],
        "statusMix": dict(_ranked(status_mix)),
        "perYearByStatus": {
            str(year): {
                Status.REGISTERED.value: per_year_status[year].get(Status.REGISTERED.value, 0),
                Status.PENDING.value: per_year_status[year].get(Status.PENDING.value, 0),
            }
            for year, _ in ranked_years
        },
        "facets": {name: _ranked(counter)[:FACET_TOP_K] for name, counter in facets.items() if counter},
        "latestSample": [sample_row(row, shape, profile) for row in shape.sort_newest_first(rows)[:LATEST_SAMPLE_SIZE]],
    }
    payload.update(extras)
    payload["DEEP_FETCH_READY"] = True
    return payload


def sample_row(row: Row, shape: RowShape, profile: DatasetProfile) -> Dict[str, Any]:
    ts = shape.timestamp_ms(row)
    sample: Dict[str, Any] = {
        "key": shape.key(row),
        "status": shape.status(row).value,
        "timestampMs": int(ts) if is_valid_ms(ts) else None,
    }
    for name in profile.sample_fields:
        value = resolve_path(row, name)
        if value is not None:
            sample[name] = value
    return sample
