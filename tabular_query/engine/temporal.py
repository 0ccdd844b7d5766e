"""
Temporal resolver.

Turns the timestamp encodings found in store rows (epoch ms, epoch seconds,
ISO-8601, dd/mm/yyyy, mm/dd/yyyy, free month-name text) into UTC
milliseconds, turns free-text range expressions into inclusive ranges, and
aligns/steps time buckets per granularity.

Unparseable timestamps are NaN. Callers must exclude NaN rows, never treat
them as zero.
"""

import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Iterator, List, Optional, TypeVar, Union

from dateutil import parser as dateutil_parser

from tabular_query.core.constants import utc_now
from tabular_query.domain.models import Granularity, TimeRange

NAN = float("nan")
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
DAY_MS = 24 * 60 * 60 * 1000

# Instants outside these bounds cannot be aligned and stepped as datetimes
MIN_VALID_MS = (datetime(2, 1, 1, tzinfo=timezone.utc) - EPOCH) // timedelta(milliseconds=1)
MAX_VALID_MS = (datetime(9999, 1, 1, tzinfo=timezone.utc) - EPOCH) // timedelta(milliseconds=1)

MONTH_PATTERN = (
    r"(jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|jun(?:e)?|jul(?:y)?|"
    r"aug(?:ust)?|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)"
)
_MONTH_NUMBERS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

_NUMERIC_RE = re.compile(r"^\d+(?:\.\d+)?$")
_ISO_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}(?:[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?)?\s*(?:Z|[+-]\d{2}:?\d{2})?$",
    re.IGNORECASE,
)
_SLASHED_RE = re.compile(
    r"^(\d{1,2})[/.\-](\d{1,2})[/.\-](\d{4})(?:[ T,]+(\d{1,2}):(\d{2})(?::(\d{2}))?)?$"
)
_MONTH_WORD_RE = re.compile(r"\b" + MONTH_PATTERN + r"\b", re.IGNORECASE)

T = TypeVar("T")


# =============================================================================
# Instants
# =============================================================================

def to_ms(dt: datetime) -> int:
    """Exact UTC milliseconds for a datetime (naive means UTC)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - EPOCH) // timedelta(milliseconds=1)


def from_ms(ms: float) -> datetime:
    return EPOCH + timedelta(milliseconds=ms)


def is_valid_ms(ts: float) -> bool:
    return ts == ts and math.isfinite(ts) and MIN_VALID_MS <= ts < MAX_VALID_MS


def parse_timestamp(value: Any) -> float:
    """
    Parse any supported timestamp encoding into UTC milliseconds.

    Precedence: numbers (>= 1e12 ms, >= 1e9 seconds), ISO-8601 (space or T
    separator, zone optional and UTC when absent), slashed day/month/year
    dates, then free text containing a month name. Everything else is NaN,
    including instants that fall outside years 2 to 9998.
    """
    ts = _parse_any(value)
    return ts if is_valid_ms(ts) else NAN


def _parse_any(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return NAN
    if isinstance(value, datetime):
        return float(to_ms(value))
    if isinstance(value, date):
        return float(to_ms(datetime(value.year, value.month, value.day)))
    if isinstance(value, (int, float)):
        return _from_epoch_number(float(value))
    if not isinstance(value, str):
        return NAN

    text = value.strip()
    if not text:
        return NAN
    if _NUMERIC_RE.match(text):
        return _from_epoch_number(float(text))
    if _ISO_RE.match(text):
        return _parse_iso(text)
    match = _SLASHED_RE.match(text)
    if match:
        return _parse_slashed(match)
    if _MONTH_WORD_RE.search(text):
        return _parse_free_text(text)
    return NAN


def _from_epoch_number(n: float) -> float:
    if not math.isfinite(n):
        return NAN
    if n >= 1e12:
        return float(n)
    if n >= 1e9:
        return n * 1000.0
    return NAN


def _parse_iso(text: str) -> float:
    normalized = re.sub(r"\s+(?=[Zz+-]\d{0,2}:?\d{0,2}$)", "", text)
    normalized = normalized.replace(" ", "T", 1)
    normalized = re.sub(r"[zZ]$", "+00:00", normalized)
    normalized = re.sub(r"T(.*)([+-]\d{2})(\d{2})$", r"T\1\2:\3", normalized)
    # fromisoformat only takes 3 or 6 fractional digits on older interpreters
    normalized = re.sub(r"\.(\d+)", lambda m: "." + (m.group(1) + "000000")[:6], normalized)
    try:
        dt = datetime.fromisoformat(normalized)
    except ValueError:
        return NAN
    return float(to_ms(dt))


def _parse_slashed(match: re.Match) -> float:
    first, second, year = int(match.group(1)), int(match.group(2)), int(match.group(3))
    # Day-first unless only a month-first reading is possible
    if first > 12:
        day, month = first, second
    elif second > 12:
        month, day = first, second
    else:
        day, month = first, second
    hour = int(match.group(4) or 0)
    minute = int(match.group(5) or 0)
    second_of_minute = int(match.group(6) or 0)
    try:
        dt = datetime(year, month, day, hour, minute, second_of_minute, tzinfo=timezone.utc)
    except ValueError:
        return NAN
    return float(to_ms(dt))


def _parse_free_text(text: str) -> float:
    default = datetime(utc_now().year, 1, 1)
    try:
        dt = dateutil_parser.parse(text, default=default, dayfirst=True)
    except (ValueError, OverflowError):
        return NAN
    return float(to_ms(dt))


# =============================================================================
# Buckets
# =============================================================================

@dataclass(frozen=True)
class BucketIterator:
    """Alignment, stepping and labelling for one granularity."""
    granularity: Granularity
    header: str
    align: Callable[[float], int]
    step: Callable[[int], int]
    describe: Callable[[int], str]


def _add_months(dt: datetime, months: int) -> datetime:
    years, month_index = divmod(dt.month - 1 + months, 12)
    year = dt.year + years
    month = month_index + 1
    next_month_first = datetime(year + (month // 12), month % 12 + 1, 1, tzinfo=dt.tzinfo)
    last_day = (next_month_first - timedelta(days=1)).day
    return dt.replace(year=year, month=month, day=min(dt.day, last_day))


def _midnight(dt: datetime) -> datetime:
    return datetime(dt.year, dt.month, dt.day, tzinfo=timezone.utc)


def _align_year(ts: float) -> int:
    dt = from_ms(ts)
    return to_ms(datetime(dt.year, 1, 1, tzinfo=timezone.utc))


def _align_quarter(ts: float) -> int:
    dt = from_ms(ts)
    return to_ms(datetime(dt.year, ((dt.month - 1) // 3) * 3 + 1, 1, tzinfo=timezone.utc))


def _align_month(ts: float) -> int:
    dt = from_ms(ts)
    return to_ms(datetime(dt.year, dt.month, 1, tzinfo=timezone.utc))


def _align_week(ts: float) -> int:
    day = _midnight(from_ms(ts))
    return to_ms(day - timedelta(days=day.weekday()))


def _align_day(ts: float) -> int:
    return to_ms(_midnight(from_ms(ts)))


def _describe_week(ts: int) -> str:
    iso_year, iso_week, _ = from_ms(ts).isocalendar()
    return f"{iso_year}-W{iso_week:02d}"


def _describe_quarter(ts: int) -> str:
    dt = from_ms(ts)
    return f"{dt.year}-Q{(dt.month - 1) // 3 + 1}"


_ITERATORS = {
    Granularity.YEAR: BucketIterator(
        granularity=Granularity.YEAR,
        header="Year",
        align=_align_year,
        step=lambda ts: to_ms(_add_months(from_ms(ts), 12)),
        describe=lambda ts: str(from_ms(ts).year),
    ),
    Granularity.QUARTER: BucketIterator(
        granularity=Granularity.QUARTER,
        header="Quarter",
        align=_align_quarter,
        step=lambda ts: to_ms(_add_months(from_ms(ts), 3)),
        describe=_describe_quarter,
    ),
    Granularity.MONTH: BucketIterator(
        granularity=Granularity.MONTH,
        header="Month",
        align=_align_month,
        step=lambda ts: to_ms(_add_months(from_ms(ts), 1)),
        describe=lambda ts: from_ms(ts).strftime("%Y-%m"),
    ),
    Granularity.WEEK: BucketIterator(
        granularity=Granularity.WEEK,
        header="Week",
        align=_align_week,
        step=lambda ts: int(ts) + 7 * DAY_MS,
        describe=_describe_week,
    ),
    Granularity.DAY: BucketIterator(
        granularity=Granularity.DAY,
        header="Day",
        align=_align_day,
        step=lambda ts: int(ts) + DAY_MS,
        describe=lambda ts: from_ms(ts).strftime("%Y-%m-%d"),
    ),
}


def bucket_iterator(granularity: Union[Granularity, str]) -> BucketIterator:
    return _ITERATORS[Granularity(granularity)]


def iter_bucket_starts(since_ms: float, until_ms: float, granularity: Union[Granularity, str]) -> Iterator[int]:
    """Aligned bucket starts from align(since) through align(until), inclusive."""
    buckets = bucket_iterator(granularity)
    current = buckets.align(since_ms)
    last = buckets.align(until_ms)
    while current <= last:
        yield current
        current = buckets.step(current)


# =============================================================================
# Ranges
# =============================================================================

def filter_by_range(rows: Iterable[T], time_range: Optional[TimeRange], timestamp_of: Callable[[T], float]) -> List[T]:
    """Keep rows whose timestamp falls inside the range. NaN rows never survive a range."""
    if time_range is None:
        return list(rows)
    return [row for row in rows if time_range.contains(timestamp_of(row))]


def default_window(granularity: Union[Granularity, str], now: Optional[datetime] = None) -> TimeRange:
    """Window used when a granularity is asked for without any range."""
    now_ms = to_ms(now or utc_now())
    spans = {
        Granularity.YEAR: (3 * 365 * DAY_MS, "last 3 years"),
        Granularity.QUARTER: (12 * 30 * DAY_MS, "last 12 months"),
        Granularity.MONTH: (12 * 30 * DAY_MS, "last 12 months"),
        Granularity.WEEK: (12 * 7 * DAY_MS, "last 12 weeks"),
        Granularity.DAY: (30 * DAY_MS, "last 30 days"),
    }
    span, label = spans[Granularity(granularity)]
    return TimeRange(since_ms=now_ms - span, until_ms=now_ms, label=label)


def _month_number(token: str) -> int:
    return _MONTH_NUMBERS[token.lower()[:3]]


def _month_bounds(year: int, month: int) -> tuple:
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    end = _add_months(start, 1)
    return to_ms(start), to_ms(end) - 1


def _year_bounds(first: int, last: int) -> tuple:
    start = datetime(first, 1, 1, tzinfo=timezone.utc)
    end = datetime(last + 1, 1, 1, tzinfo=timezone.utc)
    return to_ms(start), to_ms(end) - 1


def _parse_absolute(q: str, now: datetime) -> Optional[TimeRange]:
    m = re.search(r"\b(?:between|from)\s+(\d{4}-\d{2}-\d{2})\s+(?:and|to|-)\s+(\d{4}-\d{2}-\d{2})\b", q)
    if m:
        start, end = parse_timestamp(m.group(1)), parse_timestamp(m.group(2))
        if is_valid_ms(start) and is_valid_ms(end):
            since, until = int(min(start, end)), int(max(start, end)) + DAY_MS - 1
            return TimeRange(since_ms=since, until_ms=until, label=f"{m.group(1)} to {m.group(2)}")
    m = re.search(r"\bon\s+(\d{4}-\d{2}-\d{2})\b", q)
    if m:
        day = parse_timestamp(m.group(1))
        if is_valid_ms(day):
            return TimeRange(since_ms=int(day), until_ms=int(day) + DAY_MS - 1, label=f"on {m.group(1)}")
    return None


def _parse_year_span(q: str, now: datetime) -> Optional[TimeRange]:
    m = re.search(
        r"(?<![\d-])(?:between\s+)?((?:19|20)\d{2})\s*(?:[-–—]|to|and|vs\.?|versus)\s*(\d{4}|\d{2})\b(?![-/.]\d)",
        q,
    )
    if not m:
        return None
    first = int(m.group(1))
    tail = m.group(2)
    last = int(tail) if len(tail) == 4 else int(m.group(1)[:2] + tail)
    lo, hi = min(first, last), max(first, last)
    if hi >= 9999:
        return None
    since, until = _year_bounds(lo, hi)
    return TimeRange(since_ms=since, until_ms=until, label=f"{lo}-{hi}")


def _parse_single_year(q: str, now: datetime) -> Optional[TimeRange]:
    m = re.search(r"\b(?:in|for|during|vs\.?|versus|against)\s+((?:19|20)\d{2})\b(?![-/.]\d)", q)
    if not m:
        return None
    year = int(m.group(1))
    since, until = _year_bounds(year, year)
    return TimeRange(since_ms=since, until_ms=until, label=f"year {year}")


def _parse_month_range(q: str, now: datetime) -> Optional[TimeRange]:
    m = re.search(
        r"\b(?:between|from)\s+" + MONTH_PATTERN + r"\s*(?:[-–—]|to|and)\s*" + MONTH_PATTERN
        + r"(?:\s+((?:19|20)\d{2}))?\b",
        q,
    )
    if not m:
        return None
    year = int(m.group(3)) if m.group(3) else now.year
    first, last = sorted((_month_number(m.group(1)), _month_number(m.group(2))))
    since, _ = _month_bounds(year, first)
    _, until = _month_bounds(year, last)
    return TimeRange(since_ms=since, until_ms=until, label=f"{m.group(1)}-{m.group(2)} {year}")


def _parse_single_month(q: str, now: datetime) -> Optional[TimeRange]:
    m = re.search(r"\b(?:(last|in|of|during)\s+)?" + MONTH_PATTERN + r"(?:\s+((?:19|20)\d{2}))?\b", q)
    if not m:
        return None
    qualifier, token, year_text = m.group(1), m.group(2), m.group(3)
    # "may" on its own is almost always the verb
    if token == "may" and not qualifier and not year_text:
        return None
    month = _month_number(token)
    year = int(year_text) if year_text else now.year
    if not year_text and qualifier == "last" and month >= now.month:
        year -= 1
    since, until = _month_bounds(year, month)
    return TimeRange(since_ms=since, until_ms=until, label=f"{token} {year}")


def _parse_relative(q: str, now: datetime) -> Optional[TimeRange]:
    now_ms = to_ms(now)
    spans = {"day": DAY_MS, "week": 7 * DAY_MS, "month": 30 * DAY_MS, "year": 365 * DAY_MS}

    m = re.search(r"\b(?:last|past)\s+(\d+)\s*(day|week|month|year)s?\b", q)
    if m:
        n, unit = int(m.group(1)), m.group(2)
        return TimeRange(since_ms=max(now_ms - n * spans[unit], MIN_VALID_MS), until_ms=now_ms, label=f"last {n} {unit}s")
    if re.search(r"\b(?:last\s+two\s+weeks|fortnight)\b", q):
        return TimeRange(since_ms=now_ms - 14 * DAY_MS, until_ms=now_ms, label="last 2 weeks")
    m = re.search(r"\b(?:previous|last|past)\s+(week|month|year)\b", q)
    if m:
        unit = m.group(1)
        return TimeRange(since_ms=now_ms - spans[unit], until_ms=now_ms, label=f"last {unit}")
    return None


# Precedence is significant: the first family that matches wins.
RANGE_PARSERS = (
    _parse_absolute,
    _parse_year_span,
    _parse_single_year,
    _parse_month_range,
    _parse_single_month,
    _parse_relative,
)


def parse_range_expression(text: str, now: Optional[datetime] = None) -> Optional[TimeRange]:
    """Resolve a free-text range expression, or None when nothing matches."""
    if not text:
        return None
    q = text.lower()
    now = now or utc_now()
    for parser in RANGE_PARSERS:
        resolved = parser(q, now)
        if resolved is not None:
            return resolved
    return None
