"""
Exception hierarchy for the tabular query engine.

Engines raise these internally; each is caught at exactly one degradation
seam (gateway, export materializer, intent router) and never escapes to the
caller.
"""

from typing import Optional


class TabularQueryError(Exception):
    """Base class for engine errors."""


class GatewayError(TabularQueryError):
    """Upstream store answered non-2xx, returned junk, or was unreachable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SheetCodecUnavailable(TabularQueryError):
    """Spreadsheet encoding/decoding capability is missing or failed."""


class LinkIssueError(TabularQueryError):
    """The download-link issuer failed to register a file."""
