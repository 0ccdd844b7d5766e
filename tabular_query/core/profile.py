"""
Dataset profile: what the dataset is called, how its rows are keyed, which
columns the detail tables show, and where the backing store lives.

Profiles load from a YAML file named by TQ_PROFILE_PATH. Without one, the
built-in workdesk profile is used.
"""

from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import quote

import yaml
from pydantic import BaseModel, Field

from tabular_query.core import constants
from tabular_query.utils.log_utils import get_logger

logger = get_logger(__name__)

# Detail-column fields starting with "$" resolve through the row shape
# accessors instead of a literal field lookup.
KEY_FIELD = "$key"
STATUS_FIELD = "$status"
TIMESTAMP_FIELD = "$timestamp"


class Endpoints(BaseModel):
    """Paths of the three store operations, relative to base_url."""
    base_url: str = constants.DATA_API_BASE_URL
    list_endpoint: str = constants.LIST_ENDPOINT
    full_endpoint: str = constants.FULL_ENDPOINT
    by_key_endpoint: str = constants.BY_KEY_ENDPOINT
    sort_field: str = constants.LIST_SORT_FIELD

    def by_key_path(self, key: str) -> str:
        return self.by_key_endpoint.format(key=quote(str(key), safe=""))


class DetailColumn(BaseModel):
    label: str
    field: str


class DatasetProfile(BaseModel):
    dataset_name: str = "Workdesk"
    item_singular: str = "transaction"
    item_plural: str = "transactions"
    synonyms: List[str] = Field(default_factory=lambda: ["workdesk", "transactions", "txns", "records"])
    key_pattern: str = r"\b(SPBTR\d{2}RFC\d{6})\b"
    brand_names: List[str] = Field(default_factory=list)
    knowledge_base: Dict[str, str] = Field(default_factory=dict)
    detail_columns: List[DetailColumn] = Field(default_factory=lambda: [
        DetailColumn(label="TRN/ID", field=KEY_FIELD),
        DetailColumn(label="Received At", field="receivedAt"),
        DetailColumn(label="Status", field=STATUS_FIELD),
        DetailColumn(label="Product", field="product"),
        DetailColumn(label="Booking Location", field="bookingLocation"),
        DetailColumn(label="Workflow Stage", field="workflowStage"),
    ])
    sample_fields: List[str] = Field(default_factory=lambda: [
        "trn", "product", "bookingLocation", "workflowStage", "receivedAt",
    ])
    facet_fields: List[str] = Field(default_factory=lambda: ["product", "bookingLocation", "workflowStage"])
    preferred_headers: List[str] = Field(default_factory=lambda: [
        "trn", "id", "receivedAt", "__receivedAtMs", "workflowStage", "status", "product", "bookingLocation",
    ])
    always_deep_fetch_all: bool = constants.ALWAYS_DEEP_FETCH_ALL
    hotset_limit: int = constants.HOTSET_LIMIT
    endpoints: Endpoints = Field(default_factory=Endpoints)


def load_profile(path: Optional[str] = None) -> DatasetProfile:
    """Load a profile from YAML, falling back to the built-in default."""
    path = path or constants.PROFILE_PATH
    if not path:
        return DatasetProfile()

    try:
        with open(Path(path), "r") as f:
            cfg = yaml.safe_load(f) or {}
        profile = DatasetProfile.model_validate(cfg)
        logger.info(f"[Profile] Loaded dataset profile '{profile.dataset_name}' from {path}")
        return profile
    except (OSError, yaml.YAMLError, ValueError) as e:
        logger.warning(f"[Profile] Could not load {path}, using default profile: {e}")
        return DatasetProfile()
