"""
Centralized constants for the tabular query engine.

Every value reads from an environment variable with the hardcoded value as
default, so a deployment requires zero configuration.
"""
import os
from datetime import datetime, timezone

# --- API Version ---
API_VERSION = os.getenv("TQ_API_VERSION", "1.0.0")

# --- Backing store ---
DATA_API_BASE_URL = os.getenv("TQ_DATA_API_BASE_URL", "http://localhost:4000")
LIST_ENDPOINT = os.getenv("TQ_LIST_ENDPOINT", "/workdesk")
FULL_ENDPOINT = os.getenv("TQ_FULL_ENDPOINT", "/workdesk/full")
BY_KEY_ENDPOINT = os.getenv("TQ_BY_KEY_ENDPOINT", "/txn/{key}")
GATEWAY_TIMEOUT = float(os.getenv("TQ_GATEWAY_TIMEOUT", "30.0"))
LIST_SORT_FIELD = os.getenv("TQ_LIST_SORT_FIELD", "receivedAt")

# --- Dataset profile ---
PROFILE_PATH = os.getenv("TQ_PROFILE_PATH", "")

# --- Export ---
INLINE_EXPORT_MAX_BYTES = int(os.getenv("TQ_INLINE_EXPORT_MAX_BYTES", "2000000"))
DOWNLOAD_TTL_MS = int(os.getenv("TQ_DOWNLOAD_TTL_MS", str(10 * 60 * 1000)))
EXPORT_ROW_CAP = int(os.getenv("TQ_EXPORT_ROW_CAP", "250000"))
PUBLIC_API_ORIGIN = os.getenv("TQ_PUBLIC_API_ORIGIN", "")
CSV_MIME = "text/csv;charset=utf-8"
XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

# --- Query limits ---
MAX_TOP_N = int(os.getenv("TQ_MAX_TOP_N", "2000"))
OVERFETCH_FACTOR = int(os.getenv("TQ_OVERFETCH_FACTOR", "5"))
OVERFETCH_MIN_EXTRA = int(os.getenv("TQ_OVERFETCH_MIN_EXTRA", "10"))
DETAIL_ROW_CAP = int(os.getenv("TQ_DETAIL_ROW_CAP", "200"))
LATEST_SAMPLE_SIZE = int(os.getenv("TQ_LATEST_SAMPLE_SIZE", "50"))
FACET_TOP_K = int(os.getenv("TQ_FACET_TOP_K", "12"))
HOTSET_LIMIT = int(os.getenv("TQ_HOTSET_LIMIT", "0"))
HOTSET_FETCH_LIMIT = int(os.getenv("TQ_HOTSET_FETCH_LIMIT", "500"))

# --- Compare report display caps ---
MAX_UPDATED_SHOWN = int(os.getenv("TQ_MAX_UPDATED_SHOWN", "5"))
MAX_NEW_SHOWN = int(os.getenv("TQ_MAX_NEW_SHOWN", "10"))
MAX_DELETED_SHOWN = int(os.getenv("TQ_MAX_DELETED_SHOWN", "10"))

# --- Routing ---
DEFAULT_CONVERSATION_ID = os.getenv("TQ_DEFAULT_CONVERSATION_ID", "default")
ALWAYS_DEEP_FETCH_ALL = os.getenv("TQ_ALWAYS_DEEP_FETCH_ALL", "true").lower() == "true"

# --- Message conventions ---
EMIT_TOKEN = "[[EMIT]]"
DEEP_FETCH_LABEL = "DEEP_FETCH_JSON"
MEMORY_LABEL = "MEMORY_JSON"
KB_LABEL = "KB_JSON"
CAPABILITIES_LABEL = "CAPABILITIES_JSON"

# --- CORS ---
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

# --- Logging ---
LOG_LEVEL = os.getenv("TQ_LOG_LEVEL", "INFO").upper()


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)
