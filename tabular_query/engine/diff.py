"""
Diff Engine: baseline rows from the store against an uploaded row set.

Both sides are canonicalized onto a shared field space (lowercase,
alphanumeric-only names collapsed through a fixed alias table) and keyed by
`trn`, then `id`. Each key is then New, Deleted, or Updated, and an Updated
key carries two separate things:

- changes: fields present on both sides whose normalized values differ
- newly populated: fields the baseline never had that the upload fills in

Keys with neither are not reported at all.
"""

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from tabular_query.domain.models import Aggregation, AggregationMeta
from tabular_query.engine.row_shape import flatten_row

KEY_FIELDS: Tuple[str, ...] = ("trn", "id")

FIELD_ALIASES: Dict[str, str] = {
    "trn": "trn",
    "trnnumber": "trn",
    "trnno": "trn",
    "trnnum": "trn",
    "trnref": "trn",
    "transactionnumber": "trn",
    "transactionreference": "trn",
    "transactionref": "trn",
    "txnref": "trn",
    "id": "id",
    "arn": "arn",
    "arnnumber": "arn",
    "arnno": "arn",
    "workflowstage": "stage",
    "stage": "stage",
    "product": "product",
    "bookinglocation": "bookinglocation",
    "customerreference": "customerref",
    "customerref": "customerref",
    "submissionmode": "submissionmode",
    "regdate": "regdate",
    "registrationdate": "regdate",
    "reldate": "reldate",
    "releasedate": "reldate",
    "segment": "segment",
    "subsegment": "subsegment",
    "splitid": "splitid",
    "lockedby": "lockedby",
    "customer": "customer",
    "counterparty": "counterparty",
    "step": "step",
    "substep": "substep",
    "receivedat": "receivedat",
    "receivedatms": "receivedatms",
    "status": "status",
}

# Identifier-like fields keep an empty value instead of being dropped
TRACK_EMPTY = frozenset({"trn", "id", "arn", "customerref", "splitid"})

FIELD_LABELS: Dict[str, str] = {
    "trn": "TRN",
    "arn": "ARN",
    "stage": "STAGE",
    "product": "PRODUCT",
    "bookinglocation": "BOOKING LOCATION",
    "customerref": "CUSTOMER REF",
    "submissionmode": "SUBMISSION MODE",
    "regdate": "REG DATE",
    "reldate": "REL DATE",
    "subsegment": "SUB SEGMENT",
    "splitid": "SPLIT ID",
    "lockedby": "LOCKED BY",
    "substep": "SUB STEP",
    "receivedat": "RECEIVED AT",
}

_EMPTY_LITERAL_RE = re.compile(r"^(null|undefined|n/a|na|nan)$", re.IGNORECASE)

DIFF_COLUMNS = ["ChangeType", "TRN", "Field", "Before (baseline)", "After (upload)"]


def canonical_field_name(name: Any) -> str:
    raw = re.sub(r"[^a-z0-9]+", "", str(name or "").lower())
    return FIELD_ALIASES.get(raw, raw)


def normalize_value(value: Any) -> str:
    """Trimmed text; nested values and null-like literals are empty."""
    if value is None or isinstance(value, (dict, list, tuple, set)):
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if value != value:
            return ""
        if value.is_integer():
            return str(int(value))
    text = str(value).strip()
    return "" if _EMPTY_LITERAL_RE.match(text) else text


def field_label(canonical: str, headers: Optional[Dict[str, str]] = None) -> str:
    if headers and headers.get(canonical):
        return headers[canonical]
    return FIELD_LABELS.get(canonical, canonical.upper())


def canonicalize_row(row: Dict[str, Any]) -> Tuple[Dict[str, str], Dict[str, str]]:
    """
    Canonical field map for one row, plus the original header per canonical field.

    When several headers collapse onto one canonical name, the first
    non-empty value wins.
    """
    canon: Dict[str, str] = {}
    headers: Dict[str, str] = {}
    for name, value in flatten_row(row).items():
        key = canonical_field_name(name)
        if not key:
            continue
        text = normalize_value(value)
        if text == "" and key not in TRACK_EMPTY:
            continue
        if key not in canon or canon[key] == "":
            canon[key] = text
            headers[key] = str(name).strip()
    return canon, headers


def row_key(canon: Dict[str, str]) -> str:
    for name in KEY_FIELDS:
        if canon.get(name):
            return canon[name]
    return ""


@dataclass
class FieldChange:
    field: str
    label: str
    before: str
    after: str


@dataclass
class KeyUpdate:
    key: str
    changes: List[FieldChange] = field(default_factory=list)
    newly_populated: List[str] = field(default_factory=list)

    @property
    def newly_populated_count(self) -> int:
        return len(self.newly_populated)


@dataclass
class DiffResult:
    new: List[str] = field(default_factory=list)
    updated: List[KeyUpdate] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    baseline_count: int = 0
    upload_count: int = 0
    unkeyed_upload_rows: int = 0
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def field_changes_by_key(self) -> Dict[str, List[FieldChange]]:
        return {u.key: u.changes for u in self.updated}

    @property
    def total_changes(self) -> int:
        return sum(len(u.changes) for u in self.updated)

    @property
    def total_newly_populated(self) -> int:
        return sum(u.newly_populated_count for u in self.updated)

    def is_empty(self) -> bool:
        return not (self.new or self.updated or self.deleted)

    def changes_by_field(self) -> List[Tuple[str, int]]:
        """Changed-field labels by descending frequency, first-seen order on ties."""
        counts: Counter = Counter()
        for update in self.updated:
            for change in update.changes:
                counts[change.label] += 1
        return sorted(counts.items(), key=lambda item: -item[1])

    def to_aggregation(self) -> Aggregation:
        """The full, untruncated diff as a table."""
        rows: List[List[str]] = []
        for update in self.updated:
            for change in update.changes:
                rows.append(["UPDATED", update.key, change.label, change.before, change.after])
            if update.newly_populated:
                labels = ", ".join(field_label(f, self.headers) for f in update.newly_populated)
                rows.append(["NEW_COLUMNS_SUMMARY", update.key, labels, "", f"{update.newly_populated_count} newly populated"])
        for key in self.new:
            rows.append(["NEW", key, "", "", ""])
        for key in self.deleted:
            rows.append(["DELETED", key, "", "", ""])
        return Aggregation(columns=list(DIFF_COLUMNS), rows=rows, meta=AggregationMeta(name="diff"))


def diff(baseline_rows: Iterable[Dict[str, Any]], uploaded_rows: Iterable[Dict[str, Any]]) -> DiffResult:
    """Classify every key as New, Updated or Deleted and collect field-level changes."""
    result = DiffResult()

    baseline: Dict[str, Dict[str, str]] = {}
    for row in baseline_rows:
        canon, _ = canonicalize_row(row)
        key = row_key(canon)
        result.baseline_count += 1
        if key and key not in baseline:
            baseline[key] = canon

    uploaded: Dict[str, Dict[str, str]] = {}
    for row in uploaded_rows:
        canon, headers = canonicalize_row(row)
        key = row_key(canon)
        result.upload_count += 1
        if not key:
            result.unkeyed_upload_rows += 1
            continue
        for name, header in headers.items():
            result.headers.setdefault(name, header)
        if key not in uploaded:
            uploaded[key] = canon

    for key, after in uploaded.items():
        before = baseline.get(key)
        if before is None:
            result.new.append(key)
            continue
        update = KeyUpdate(key=key)
        for name, value in after.items():
            if name in KEY_FIELDS:
                continue
            if name in before:
                if before[name] != value:
                    update.changes.append(FieldChange(
                        field=name,
                        label=field_label(name, result.headers),
                        before=before[name],
                        after=value,
                    ))
            elif value != "":
                update.newly_populated.append(name)
        if update.changes or update.newly_populated:
            result.updated.append(update)

    result.deleted = [key for key in baseline if key not in uploaded]
    return result


def truncate(items: List[Any], limit: int) -> Tuple[List[Any], int]:
    """Display slice plus the count left out, for "…N more" tails."""
    if limit < 0 or len(items) <= limit:
        return list(items), 0
    return list(items[:limit]), len(items) - limit
