"""
Core domain models shared by the engines, the router and the API.
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, Field, model_validator

from tabular_query.domain.base import CamelCaseModel


class Granularity(str, Enum):
    YEAR = "year"
    QUARTER = "quarter"
    MONTH = "month"
    WEEK = "week"
    DAY = "day"


class Status(str, Enum):
    PENDING = "PENDING"
    REGISTERED = "REGISTERED"


class TimeRange(CamelCaseModel):
    """Inclusive millisecond range; either bound may be open."""
    since_ms: Optional[int] = None
    until_ms: Optional[int] = None
    label: str = ""

    @model_validator(mode="after")
    def _check_order(self) -> "TimeRange":
        if self.since_ms is not None and self.until_ms is not None and self.since_ms > self.until_ms:
            raise ValueError(f"since_ms {self.since_ms} is after until_ms {self.until_ms}")
        return self

    def contains(self, ts: float) -> bool:
        if ts != ts:  # NaN
            return False
        if self.since_ms is not None and ts < self.since_ms:
            return False
        if self.until_ms is not None and ts > self.until_ms:
            return False
        return True


class AggregationMeta(CamelCaseModel):
    name: Optional[str] = None


class Aggregation(CamelCaseModel):
    """A rendered table: ordered column labels plus string row tuples."""
    columns: List[str]
    rows: List[List[str]] = Field(default_factory=list)
    meta: Optional[AggregationMeta] = None

    @model_validator(mode="after")
    def _check_widths(self) -> "Aggregation":
        width = len(self.columns)
        for index, row in enumerate(self.rows):
            if len(row) != width:
                raise ValueError(f"row {index} has {len(row)} cells, expected {width}")
        return self

    @property
    def name_hint(self) -> Optional[str]:
        return self.meta.name if self.meta else None


class Message(CamelCaseModel):
    """An outbound instruction/data message for the presentation layer."""
    role: Literal["system", "user", "assistant"] = "system"
    content: str


class ChatMessage(CamelCaseModel):
    """An inbound conversation message; content may be text or rich parts."""
    id: Optional[str] = None
    role: str = "user"
    content: Any = ""

    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        if isinstance(self.content, list):
            parts = []
            for part in self.content:
                if isinstance(part, str):
                    parts.append(part)
                elif isinstance(part, dict) and isinstance(part.get("text"), str):
                    parts.append(part["text"])
            return " ".join(parts)
        return ""


class Attachment(CamelCaseModel):
    """An uploaded file as delivered by the chat surface."""
    name: str = ""
    mime: str = Field(default="", validation_alias=AliasChoices("mime", "type"))
    bytes_b64: Optional[str] = Field(default=None, validation_alias=AliasChoices("bytesB64", "bytes_b64", "base64"))
    data_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("dataUrl", "data_url"))


class ChatContext(CamelCaseModel):
    session_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("sessionId", "session_id", "conversationId"))
    attachments: List[Attachment] = Field(default_factory=list)


class UploadedFile(CamelCaseModel):
    """A parsed upload remembered for compare and re-export."""
    name: str
    kind: Literal["csv", "xlsx"]
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    headers_original: List[str] = Field(default_factory=list)
    headers_canon: List[str] = Field(default_factory=list)
