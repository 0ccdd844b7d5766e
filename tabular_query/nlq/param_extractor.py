"""
NLQ Parameter Extractor - Extracts query parameters from a chat turn.

This module provides deterministic, regex-based extraction for:
- Time range ("between Feb and Aug 2025", "last 30 days", "in 2024")
- Granularity ("per month", "quarterly", "by iso week")
- TopN limit ("top 5", "latest 20 transactions", "latest transaction")
- Status filter ("pending", "registered")
- Record key (dataset key pattern, e.g. SPBTR25RFC000123)
- Output flags (spreadsheet format, explicit "all", table wording)

No LLM required - all extraction uses pattern matching.
"""
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from tabular_query.core.constants import MAX_TOP_N
from tabular_query.domain.models import Granularity, Status, TimeRange
from tabular_query.engine.temporal import parse_range_expression
from tabular_query.nlq.intent_patterns import (
    EXPLICIT_ALL_PATTERNS,
    ROW_NOUN,
    SHEET_FORMAT_PATTERNS,
    TABLE_NOW_PATTERNS,
    matches_any,
)


@dataclass
class QueryParams:
    """Parameters extracted from one turn."""
    time_range: Optional[TimeRange] = None
    granularity: Optional[Granularity] = None
    top_n: Optional[int] = None
    status: Optional[Status] = None
    key: Optional[str] = None
    wants_sheet: bool = False
    explicit_all: bool = False
    wants_table: bool = False

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.time_range is not None:
            result["range"] = self.time_range.to_payload()
        if self.granularity is not None:
            result["granularity"] = self.granularity.value
        if self.top_n is not None:
            result["topN"] = self.top_n
        if self.status is not None:
            result["status"] = self.status.value
        if self.key:
            result["key"] = self.key
        return result

    def has_scope(self) -> bool:
        return self.time_range is not None or self.top_n is not None


GRANULARITY_PATTERNS = [
    (r"\b(?:yearly|per\s+year|by\s+year|annual(?:ly)?)\b", Granularity.YEAR),
    (r"\b(?:quarterly|per\s+quarter|by\s+quarter)\b", Granularity.QUARTER),
    (r"\b(?:monthly|per\s+month|by\s+month)\b", Granularity.MONTH),
    (r"\b(?:weekly|per\s+week|by\s+week|iso\s*week)\b", Granularity.WEEK),
    (r"\b(?:daily|per\s+day|by\s+day)\b", Granularity.DAY),
]

WORD_NUMBERS = {
    'one': 1, 'two': 2, 'three': 3, 'four': 4, 'five': 5,
    'six': 6, 'seven': 7, 'eight': 8, 'nine': 9, 'ten': 10,
    'twenty': 20, 'fifty': 50, 'hundred': 100
}

_RECENCY = r"(?:top|latest|newest|most\s+recent)"
_TIME_UNIT = r"(?:days?|weeks?|months?|quarters?|years?)"
_SINGULAR_ROW = r"(?:transaction|txn|row|record|entry|item)"


def extract_limit(question: str) -> Optional[int]:
    """
    Extract the top-N request from a question.

    Patterns:
    - "top 5", "latest 20", "most recent 3"
    - "last 10 transactions", "50 records"
    - "top five"
    - "latest transaction" (means 1)

    Returns None if no limit found. "last 30 days" is a range, not a limit.
    """
    question_lower = question.lower()

    match = re.search(rf"\b{_RECENCY}\s+(\d+)\b(?!\s*{_TIME_UNIT}\b)", question_lower)
    if match:
        return int(match.group(1))

    match = re.search(rf"\blast\s+(\d+)\s+{ROW_NOUN}\b", question_lower)
    if match:
        return int(match.group(1))

    match = re.search(rf"\b(\d+)\s+(?:(?:latest|newest|most\s+recent)\s+)?{ROW_NOUN}\b", question_lower)
    if match and not re.fullmatch(r"(?:19|20)\d{2}", match.group(1)):
        return int(match.group(1))

    for word, num in WORD_NUMBERS.items():
        if re.search(rf"\b{_RECENCY}\s+{word}\b", question_lower):
            return num

    if re.search(rf"\b(?:latest|newest|most\s+recent|last)\s+{_SINGULAR_ROW}\b", question_lower):
        return 1

    return None


def extract_granularity(question: str) -> Optional[Granularity]:
    question_lower = question.lower()
    for pattern, granularity in GRANULARITY_PATTERNS:
        if re.search(pattern, question_lower):
            return granularity
    return None


def extract_status(question: str) -> Optional[Status]:
    question_lower = question.lower()
    if re.search(r"\bpending\b", question_lower):
        return Status.PENDING
    if re.search(r"\bregistered\b", question_lower):
        return Status.REGISTERED
    return None


def extract_key(question: str, key_pattern: str) -> Optional[str]:
    match = re.search(key_pattern, question, re.IGNORECASE)
    if not match:
        return None
    return match.group(1) if match.groups() else match.group(0)


def apply_limit_clamp(limit: Optional[int], max_limit: int = MAX_TOP_N) -> Optional[int]:
    """Clamp limit into 1..max_limit."""
    if limit is None:
        return None
    return max(1, min(limit, max_limit))


def extract_params(question: str, key_pattern: str, now: Optional[datetime] = None) -> QueryParams:
    """
    Extract every query parameter from a question.

    Args:
        question: Raw turn text
        key_pattern: Regex recognizing dataset record keys
        now: Clock for relative ranges (default: current UTC time)
    """
    return QueryParams(
        time_range=parse_range_expression(question, now=now),
        granularity=extract_granularity(question),
        top_n=apply_limit_clamp(extract_limit(question)),
        status=extract_status(question),
        key=extract_key(question, key_pattern),
        wants_sheet=matches_any(question, SHEET_FORMAT_PATTERNS),
        explicit_all=matches_any(question, EXPLICIT_ALL_PATTERNS),
        wants_table=matches_any(question, TABLE_NOW_PATTERNS),
    )
