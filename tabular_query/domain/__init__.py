from .models import (
    Granularity,
    Status,
    TimeRange,
    AggregationMeta,
    Aggregation,
    Message,
    ChatMessage,
    Attachment,
    ChatContext,
    UploadedFile,
)

__all__ = [
    "Granularity",
    "Status",
    "TimeRange",
    "AggregationMeta",
    "Aggregation",
    "Message",
    "ChatMessage",
    "Attachment",
    "ChatContext",
    "UploadedFile",
]
