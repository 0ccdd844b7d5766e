"""
Shared fixtures: an in-memory backing store served through httpx.MockTransport
and a router wired against it with a fixed clock.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import unquote

import httpx
import pytest

from tabular_query.core.profile import DatasetProfile, Endpoints
from tabular_query.engine.export import ExportMaterializer
from tabular_query.engine.gateway import DataGateway
from tabular_query.engine.session import SessionStore
from tabular_query.nlq.intent_router import IntentRouter

FIXED_NOW = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)
STORE_URL = "http://store.test"


def ms(text: str) -> int:
    """UTC milliseconds for an ISO-8601 instant."""
    dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def txn(trn: str, received_at: str, status: str = "Registered", **fields: Any) -> Dict[str, Any]:
    row = {"trn": trn, "receivedAt": received_at, "status": status}
    row.update(fields)
    return row


class FakeStore:
    """
    Serves list/full/byKey like the real store and records every request.

    `honor_ranges` switches whether the full endpoint applies sinceMs/untilMs;
    `honor_sort` switches whether the list endpoint applies order and limit.
    The gateway must be correct either way.
    """

    def __init__(self, rows: Optional[List[Dict[str, Any]]] = None, honor_ranges: bool = False, honor_sort: bool = True):
        self.rows = list(rows or [])
        self.honor_ranges = honor_ranges
        self.honor_sort = honor_sort
        self.requests: List[httpx.Request] = []
        self.fail_paths: Dict[str, int] = {}

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]

    def _json(self, payload: Any, status_code: int = 200) -> httpx.Response:
        return httpx.Response(status_code, content=json.dumps(payload).encode(), headers={"content-type": "application/json"})

    def _ts(self, row: Dict[str, Any]) -> int:
        value = row.get("receivedAt")
        if isinstance(value, (int, float)):
            return int(value)
        try:
            return ms(value) if value else 0
        except ValueError:
            return 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in self.fail_paths:
            return self._json({"error": "boom"}, self.fail_paths[path])

        params = request.url.params
        if path == "/workdesk/full":
            rows = list(self.rows)
            if self.honor_ranges and "sinceMs" in params:
                rows = [r for r in rows if self._ts(r) >= int(params["sinceMs"])]
            if self.honor_ranges and "untilMs" in params:
                rows = [r for r in rows if self._ts(r) <= int(params["untilMs"])]
            return self._json({"rows": rows})

        if path == "/workdesk":
            rows = list(self.rows)
            if not self.honor_sort:
                return self._json(rows)
            rows.sort(key=self._ts, reverse=params.get("order") == "desc")
            limit = int(params.get("limit", "0"))
            return self._json(rows[:limit] if limit else rows)

        if path.startswith("/txn/"):
            key = unquote(path[len("/txn/"):])
            for row in self.rows:
                if row.get("trn") == key:
                    return self._json(row)
            return self._json({"error": "not found"}, 404)

        return self._json({"error": "unknown path"}, 404)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler), base_url=STORE_URL)


def make_gateway(store: FakeStore) -> DataGateway:
    return DataGateway(endpoints=Endpoints(base_url=STORE_URL), client=store.client())


def make_router(
    store: FakeStore,
    profile: Optional[DatasetProfile] = None,
    materializer: Optional[ExportMaterializer] = None,
) -> IntentRouter:
    return IntentRouter(
        gateway=make_gateway(store),
        sessions=SessionStore(),
        materializer=materializer or ExportMaterializer(),
        profile=profile or DatasetProfile(brand_names=["Giftlyph"], knowledge_base={"founded": "2019"}),
        clock=lambda: FIXED_NOW,
    )


SAMPLE_ROWS = [
    txn("SPBTR23RFC000001", "2023-03-10T09:00:00Z", product="Guarantee"),
    txn("SPBTR24RFC000002", "2024-02-05T12:00:00Z", "Pending Review", product="LC"),
    txn("SPBTR24RFC000003", "2024-07-21T08:30:00Z", product="LC"),
    txn("SPBTR25RFC000004", "2025-01-10T16:45:00Z", "Initiated", product="Collection"),
    txn("SPBTR25RFC000005", "2025-01-14T11:15:00Z", product="Guarantee"),
]


@pytest.fixture
def sample_rows():
    return [dict(r) for r in SAMPLE_ROWS]


@pytest.fixture
def store(sample_rows):
    return FakeStore(sample_rows)


@pytest.fixture
def router(store):
    return make_router(store)
