"""
Row shape: how a raw store row yields its timestamp, status and natural key.

Each accessor is an ordered list of candidate field paths tried in sequence;
the first one that parses wins. Caller-supplied accessor functions run
first when given. The candidate lists and parse functions are separate so
each can be tested on its own.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from tabular_query.domain.models import Status
from tabular_query.engine.temporal import NAN, is_valid_ms, parse_timestamp
from tabular_query.utils.log_utils import get_logger

logger = get_logger(__name__)

Row = Dict[str, Any]

TIMESTAMP_CANDIDATES: Tuple[str, ...] = (
    "__receivedAtMs",
    "receivedAt",
    "receivedDate",
    "createdAt",
    "__createdAtMs",
    "timestamp",
    "date",
    "updatedAt",
)
STATUS_CANDIDATES: Tuple[str, ...] = ("status", "workflowStatus", "workflowStage", "stage")
KEY_CANDIDATES: Tuple[str, ...] = ("trn", "id")

# Any other field whose name looks temporal is tried after the explicit candidates
TEMPORAL_NAME_RE = re.compile(r"date|time|at|received|created|updated|processed", re.IGNORECASE)
PENDING_RE = re.compile(r"\b(pending|initiated|in[-\s]?progress|awaiting|on[-\s]?hold|review|draft)\b", re.IGNORECASE)


def flatten_row(row: Any) -> Row:
    """Merge a {base, derived} envelope into one flat dict; derived overrides base."""
    if not isinstance(row, dict):
        return {}
    base = row.get("base")
    derived = row.get("derived")
    if not isinstance(base, dict) and not isinstance(derived, dict):
        return dict(row)
    flat: Row = {k: v for k, v in row.items() if k not in ("base", "derived")}
    if isinstance(base, dict):
        flat.update(base)
    if isinstance(derived, dict):
        flat.update(derived)
    return flat


def resolve_path(row: Row, path: str) -> Any:
    """Look up a dotted path; a literal key containing dots wins over traversal."""
    if path in row:
        return row[path]
    current: Any = row
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def first_timestamp(row: Row, candidates: Iterable[str]) -> float:
    for path in candidates:
        ts = parse_timestamp(resolve_path(row, path))
        if is_valid_ms(ts):
            return ts
    return NAN


def classify_status(value: Any) -> Status:
    if value is None:
        return Status.REGISTERED
    return Status.PENDING if PENDING_RE.search(str(value)) else Status.REGISTERED


def first_present(row: Row, candidates: Iterable[str]) -> Optional[Any]:
    for path in candidates:
        value = resolve_path(row, path)
        if value is not None and str(value).strip() != "":
            return value
    return None


@dataclass
class RowShape:
    """Accessors for timestamp, status and key over flattened rows."""
    timestamp_candidates: Tuple[str, ...] = TIMESTAMP_CANDIDATES
    status_candidates: Tuple[str, ...] = STATUS_CANDIDATES
    key_candidates: Tuple[str, ...] = KEY_CANDIDATES
    timestamp_accessor: Optional[Callable[[Row], Any]] = None
    status_accessor: Optional[Callable[[Row], Any]] = None
    key_accessor: Optional[Callable[[Row], Any]] = None
    heuristic_timestamps: bool = True
    _warned: set = field(default_factory=set, repr=False)

    def _call_override(self, accessor: Optional[Callable[[Row], Any]], row: Row, name: str) -> Any:
        if accessor is None:
            return None
        try:
            return accessor(row)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            if name not in self._warned:
                self._warned.add(name)
                logger.warning(f"[RowShape] {name} accessor failed, falling back to candidates: {e}")
            return None

    def timestamp_ms(self, row: Row) -> float:
        ts = parse_timestamp(self._call_override(self.timestamp_accessor, row, "timestamp"))
        if is_valid_ms(ts):
            return ts
        ts = first_timestamp(row, self.timestamp_candidates)
        if is_valid_ms(ts) or not self.heuristic_timestamps:
            return ts
        heuristic = [k for k in row.keys() if k not in self.timestamp_candidates and TEMPORAL_NAME_RE.search(k)]
        return first_timestamp(row, heuristic)

    def status(self, row: Row) -> Status:
        value = self._call_override(self.status_accessor, row, "status")
        if value is None or str(value).strip() == "":
            value = first_present(row, self.status_candidates)
        return classify_status(value)

    def key(self, row: Row) -> str:
        value = self._call_override(self.key_accessor, row, "key")
        if value is None or str(value).strip() == "":
            value = first_present(row, self.key_candidates)
        return "" if value is None else str(value).strip()

    def sort_newest_first(self, rows: List[Row]) -> List[Row]:
        """Stable newest-first sort; rows without a timestamp go last."""
        return sorted(rows, key=lambda r: -_sortable(self.timestamp_ms(r)))

    def sort_oldest_first(self, rows: List[Row]) -> List[Row]:
        """Stable oldest-first sort; rows without a timestamp go last."""
        return sorted(rows, key=lambda r: _sortable(self.timestamp_ms(r), missing=float("inf")))


def _sortable(ts: float, missing: float = float("-inf")) -> float:
    return ts if is_valid_ms(ts) else missing
