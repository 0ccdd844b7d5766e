"""
Small text helpers shared by the export and presenter layers.
"""

import re
from datetime import datetime, timezone
from typing import Optional


def slugify(value: str, fallback: str = "file") -> str:
    """Lowercase, collapse anything non-alphanumeric into single dashes."""
    slug = re.sub(r"[^a-z0-9]+", "-", (value or "").lower()).strip("-")
    return slug or fallback


def strip_extension(filename: str) -> str:
    return re.sub(r"\.[^.]+$", "", filename or "")


def file_timestamp(now: Optional[datetime] = None) -> str:
    """ISO-8601 UTC instant with ':' and '.' removed, safe for filenames."""
    now = now or datetime.now(timezone.utc)
    iso = now.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return iso.replace("+00:00", "Z").replace(":", "").replace(".", "")
