"""
Base Pydantic models with camelCase serialization support.

Everything the engine hands to the chat surface (ranges, uploads, memory
snapshots) is emitted with camelCase keys, and inbound bodies may use
either spelling.
"""

from typing import Any, Dict

from pydantic import BaseModel, ConfigDict
from humps import camelize


def to_camel(string: str) -> str:
    return camelize(string)


class CamelCaseModel(BaseModel):
    """
    Base model that serializes to camelCase for API bodies and fenced payloads.

    Usage:
        class TimeRange(CamelCaseModel):
            since_ms: int  # "sinceMs" in payload JSON
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    def to_payload(self) -> Dict[str, Any]:
        """camelCase dict for embedding in a fenced JSON payload."""
        return self.model_dump(by_alias=True)
