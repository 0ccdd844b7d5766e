"""
Session Memory.

Per (conversation, thread) store of what the user last saw, so a bare
"export it" re-exports exactly that. Lives for the process lifetime; tests
reset it with clear().
"""

import threading
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence

from tabular_query.core.constants import DEFAULT_CONVERSATION_ID
from tabular_query.domain.models import Aggregation, ChatMessage, Granularity, TimeRange, UploadedFile


@dataclass(frozen=True)
class SessionState:
    always_table: bool = False
    last_range: Optional[TimeRange] = None
    last_top_n: Optional[int] = None
    last_granularity: Optional[Granularity] = None
    last_aggregation: Optional[Aggregation] = None
    last_upload: Optional[UploadedFile] = None


_STATE_FIELDS = frozenset(f.name for f in fields(SessionState))


def derive_thread_id(messages: Sequence[ChatMessage]) -> str:
    """
    Thread id from the message history.

    The oldest user message carrying an id anchors the thread, so the id
    stays stable as the thread grows. Without one, the first message id is
    used, then a fixed position marker.
    """
    for message in messages:
        if message.role == "user" and message.id:
            return f"u:{message.id}"
    if messages and messages[0].id:
        return f"m:{messages[0].id}"
    return "t0"


def session_key(conversation_id: Optional[str], messages: Sequence[ChatMessage] = ()) -> str:
    return f"{conversation_id or DEFAULT_CONVERSATION_ID}::{derive_thread_id(messages)}"


class SessionStore:
    """Process-wide session map. Each call holds the lock for its whole read or merge."""

    def __init__(self):
        self._sessions: Dict[str, SessionState] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> SessionState:
        with self._lock:
            state = self._sessions.get(key)
            if state is None:
                state = SessionState()
                self._sessions[key] = state
            return state

    def set(self, key: str, update: Optional[Mapping[str, Any]] = None, **changes: Any) -> SessionState:
        """Shallow-merge `update` and keyword changes into the session."""
        merged = dict(update or {})
        merged.update(changes)
        unknown = set(merged) - _STATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")
        with self._lock:
            state = replace(self.get(key), **merged)
            self._sessions[key] = state
            return state

    def get_aggregation(self, key: str) -> Optional[Aggregation]:
        return self.get(key).last_aggregation

    def set_aggregation(self, key: str, aggregation: Aggregation) -> None:
        self.set(key, last_aggregation=aggregation)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._sessions)
