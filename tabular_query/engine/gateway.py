"""
Data Access Gateway.

Three read-only operations against the backing store:

1. list   - GET {list}?limit=N&sortBy=receivedAt&order=asc|desc
2. full   - GET {full}?limit=0&sinceMs=&untilMs=
3. byKey  - GET {byKey(id)}, 404 when absent

The store is not trusted to sort by our timestamp accessor or to honor range
parameters, so results are always re-sorted and re-filtered locally. Fetch
failures degrade to an empty row list; a missing key is a normal
"not found" result.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from tabular_query.core.constants import GATEWAY_TIMEOUT, OVERFETCH_FACTOR, OVERFETCH_MIN_EXTRA
from tabular_query.core.errors import GatewayError
from tabular_query.core.profile import Endpoints
from tabular_query.domain.models import Status, TimeRange
from tabular_query.engine.row_shape import Row, RowShape, flatten_row
from tabular_query.engine.temporal import filter_by_range, is_valid_ms
from tabular_query.utils.log_utils import get_logger

logger = get_logger(__name__)


@dataclass
class KeyLookup:
    """Outcome of a single-record lookup."""
    key: str
    row: Optional[Row] = None

    @property
    def found(self) -> bool:
        return self.row is not None


def overfetch_size(n: int) -> int:
    """Page size used when a status filter is applied after fetching."""
    return max(n * OVERFETCH_FACTOR, n + OVERFETCH_MIN_EXTRA)


def _extract_rows(payload: Any) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for name in ("rows", "items", "data"):
            if isinstance(payload.get(name), list):
                return payload[name]
    raise GatewayError("store payload carries no row list")


class DataGateway:
    """Async client for the backing store."""

    def __init__(
        self,
        endpoints: Optional[Endpoints] = None,
        shape: Optional[RowShape] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = GATEWAY_TIMEOUT,
    ):
        self.endpoints = endpoints or Endpoints()
        self.shape = shape or RowShape()
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.endpoints.base_url, timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "DataGateway":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = await self._get_client().get(path, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise GatewayError(f"HTTP {e.response.status_code} from {path}", e.response.status_code) from e
        except httpx.HTTPError as e:
            raise GatewayError(f"transport error on {path}: {e}") from e
        except ValueError as e:
            raise GatewayError(f"invalid JSON from {path}: {e}") from e

    async def _get_rows(self, path: str, params: Dict[str, Any]) -> List[Row]:
        payload = await self._get_json(path, params)
        return [flatten_row(r) for r in _extract_rows(payload) if isinstance(r, dict)]

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def fetch_full(self, time_range: Optional[TimeRange] = None) -> List[Row]:
        """
        Full dataset, optionally range-scoped.

        The local range filter always runs, even when the store filtered
        correctly already; filtering twice is a no-op.
        """
        params: Dict[str, Any] = {"limit": 0}
        if time_range is not None:
            if time_range.since_ms is not None:
                params["sinceMs"] = time_range.since_ms
            if time_range.until_ms is not None:
                params["untilMs"] = time_range.until_ms

        try:
            rows = await self._get_rows(self.endpoints.full_endpoint, params)
        except GatewayError as e:
            logger.warning(f"[DataGateway] Full fetch failed, returning no rows: {e}")
            return []

        if time_range is None:
            logger.info(f"[DataGateway] Full fetch returned {len(rows)} rows")
            return rows

        filtered = filter_by_range(rows, time_range, self.shape.timestamp_ms)
        logger.info(
            f"[DataGateway] Full fetch for '{time_range.label}': {len(rows)} rows, {len(filtered)} in range"
        )
        return filtered

    async def fetch_recent(self, limit: int) -> List[Row]:
        """
        Most-recent-first page of at most `limit` rows.

        Re-sorted locally by resolved timestamp before truncating. When the
        list endpoint fails or comes back empty, the full dataset is sorted
        instead.
        """
        params = {"limit": limit, "sortBy": self.endpoints.sort_field, "order": "desc"}
        try:
            rows = await self._get_rows(self.endpoints.list_endpoint, params)
        except GatewayError as e:
            logger.warning(f"[DataGateway] List fetch failed, falling back to full fetch: {e}")
            rows = []

        if not rows:
            rows = await self.fetch_full()

        return self.shape.sort_newest_first(rows)[:limit]

    async def fetch_oldest(self) -> Optional[Row]:
        """Single oldest row by resolved timestamp, or None when the store is empty."""
        params = {"limit": 1, "sortBy": self.endpoints.sort_field, "order": "asc"}
        try:
            rows = await self._get_rows(self.endpoints.list_endpoint, params)
        except GatewayError as e:
            logger.warning(f"[DataGateway] Oldest fetch failed, falling back to full fetch: {e}")
            rows = []

        # A first row without a resolvable timestamp says nothing about age
        if not rows or not is_valid_ms(self.shape.timestamp_ms(rows[0])):
            rows = await self.fetch_full()

        ordered = self.shape.sort_oldest_first(rows)
        return ordered[0] if ordered else None

    async def fetch_latest(self, n: int, status: Optional[Status] = None) -> List[Row]:
        """
        Latest `n` rows, optionally restricted to one status.

        Status is filtered client-side after over-fetching, which can still
        under-return for rare statuses.
        """
        if status is None:
            return await self.fetch_recent(n)

        rows = await self.fetch_recent(overfetch_size(n))
        matching = [r for r in rows if self.shape.status(r) == status]
        if len(matching) < n:
            logger.info(f"[DataGateway] Status filter {status.value} kept {len(matching)} of requested {n}")
        return matching[:n]

    async def fetch_by_key(self, key: str) -> KeyLookup:
        """Single-record lookup. 404 and fetch failures both surface as not found."""
        path = self.endpoints.by_key_path(key)
        try:
            payload = await self._get_json(path)
        except GatewayError as e:
            if e.status_code == 404:
                logger.info(f"[DataGateway] Key {key} not found")
            else:
                logger.warning(f"[DataGateway] Key lookup failed for {key}: {e}")
            return KeyLookup(key=key)

        if isinstance(payload, dict) and isinstance(payload.get("row"), dict):
            payload = payload["row"]
        if not isinstance(payload, dict) or not payload:
            return KeyLookup(key=key)
        return KeyLookup(key=key, row=flatten_row(payload))
