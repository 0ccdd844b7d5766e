"""
Intent patterns - the regex families the router's predicates test.

Every family is a plain list of patterns so new phrasings can be added
without touching routing code. Matching is case-insensitive over the raw
turn text.
"""
import re
from typing import Iterable

# =============================================================================
# EXPORT
# =============================================================================
EXPORT_PATTERNS = [
    r"\bexport(?:\s+it)?\b",
    r"\bdownload(?:able)?\b",
    r"\bsave\b",
    r"\bdump\b",
    r"\bextract\b",
    r"\bcreate\s+a\s+downloadable\s+file\b",
]

# A bare format mention ("as xlsx", "to csv") also asks for a file
FORMAT_REQUEST_PATTERNS = [
    r"\b(?:as|to|in|into)\s+(?:an?\s+)?(?:csv|xlsx|excel|spreadsheet)\b",
]

SHEET_FORMAT_PATTERNS = [
    r"\bxlsx\b",
    r"\bexcel\b",
    r"\bspreadsheet\b",
]

EXPLICIT_ALL_PATTERNS = [
    r"\ball\b",
    r"\bentire\b",
    r"\bfull\b",
    r"\beverything\b",
]

EXPORT_UPLOAD_PATTERNS = [
    r"\buploaded\s+file\b",
    r"\blast\s+upload\b",
    r"\bthe\s+upload\b",
    r"\bprevious\s+upload\b",
]

# =============================================================================
# COMPARE
# =============================================================================
COMPARE_PATTERNS = [
    r"\bcompare\b",
    r"\bdiff\b",
    r"\bdifferences?\b",
    r"\bwhat'?s\s+new\b",
    r"\bwhat\s+changed\b",
    r"\bchanges?\b",
]

YOY_PATTERNS = [
    r"\byoy\b",
    r"\by-o-y\b",
    r"\byear[\s-]+over[\s-]+year\b",
    r"\byear[\s-]+on[\s-]+year\b",
]

FILE_REFERENCE_PATTERNS = [
    r"\bfile\b",
    r"\bcsv\b",
    r"\bxlsx\b",
    r"\bspreadsheet\b",
    r"\bupload(?:ed)?\b",
    r"\bthis\s+file\b",
    r"\bthat\s+file\b",
]

YEAR_MENTION_PATTERN = r"\b(?:19|20)\d{2}\b"

# =============================================================================
# SMALL TALK
# =============================================================================
META_PATTERNS = [
    r"\bwhat\s+can\s+(?:you|i)\s+(?:do|ask)\b",
    r"\bhelp\b",
    r"\bcommands\b",
    r"\bcapabilities\b",
    r"\bexamples\b",
    r"\bhow\s+do\s+i\s+use\b",
    r"\bwho\s+are\s+you\b",
]

SERVICE_PATTERNS = [
    r"\bweather\b",
    r"\bforecast\b",
    r"\btemperature\b",
    r"\bwhat\s+time\s+is\s+it\b",
    r"\bcurrent\s+time\b",
    r"\btime\s+in\s+[a-z]",
    r"\btime\s*zone\b",
    r"\bmaps?\b",
    r"\bdirections?\b",
    r"\btraffic\b",
]

# =============================================================================
# RECORD SELECTION
# =============================================================================
ROW_NOUN = r"(?:transactions?|txns?|rows?|records?|entries|entry|items?)"

OLDEST_PATTERNS = [
    rf"\b(?:oldest|earliest|first)\s+{ROW_NOUN}\b",
]
OLDEST_WORD_PATTERN = r"\b(?:oldest|earliest)\b"

TABLE_REQUEST_PATTERNS = [
    r"\b(?:use|show|format|render)\b.*\btables?\b",
]
TABLE_DEFAULT_PATTERNS = [
    r"\balways\b",
    r"\bdefault\b",
]
TABLE_NOW_PATTERNS = [
    r"\btables?\b",
    r"\btabular\b",
    r"\bgrid\b",
]


def matches_any(text: str, patterns: Iterable[str]) -> bool:
    return any(re.search(p, text, re.IGNORECASE) for p in patterns)


def mentions_year(text: str) -> bool:
    return re.search(YEAR_MENTION_PATTERN, text) is not None


def mentions_brand(text: str, brand_names: Iterable[str]) -> bool:
    lowered = text.lower()
    return any(name and name.lower() in lowered for name in brand_names)


def is_oldest_request(text: str) -> bool:
    if matches_any(text, OLDEST_PATTERNS):
        return True
    return matches_any(text, [OLDEST_WORD_PATTERN]) and matches_any(text, [rf"\b{ROW_NOUN}\b"])
