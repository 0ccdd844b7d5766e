"""
Unit tests for session memory.
"""

import pytest

from tabular_query.domain.models import Aggregation, ChatMessage
from tabular_query.engine.session import SessionStore, derive_thread_id, session_key


class TestThreadIds:
    """Tests for thread-id derivation."""

    def test_oldest_user_message_anchors_thread(self):
        """The thread id stays stable as the conversation grows."""
        first = [ChatMessage(id="s1", role="system"), ChatMessage(id="u1", role="user", content="per year")]
        grown = first + [ChatMessage(id="a1", role="assistant"), ChatMessage(id="u2", role="user", content="export it")]
        assert derive_thread_id(first) == "u:u1"
        assert derive_thread_id(grown) == "u:u1"

    def test_falls_back_to_first_message(self):
        """Without a user id, the first message id is used."""
        assert derive_thread_id([ChatMessage(id="s1", role="system"), ChatMessage(role="user")]) == "m:s1"

    def test_no_ids(self):
        """Without any ids the thread is positional."""
        assert derive_thread_id([]) == "t0"

    def test_session_key_default_conversation(self):
        """A missing conversation id falls back to the default."""
        assert session_key(None) == "default::t0"
        assert session_key("c1", [ChatMessage(id="u1")]) == "c1::u:u1"


class TestSessionStore:
    """Tests for SessionStore."""

    def setup_method(self):
        self.store = SessionStore()

    def test_get_creates_empty_session(self):
        """A fresh session has defaults."""
        state = self.store.get("k")
        assert state.always_table is False
        assert state.last_aggregation is None

    def test_set_is_shallow_merge(self):
        """Setting one field keeps the others."""
        self.store.set("k", always_table=True)
        self.store.set("k", {"last_top_n": 5})
        state = self.store.get("k")
        assert state.always_table is True
        assert state.last_top_n == 5

    def test_sessions_are_isolated(self):
        """Writes to one key are invisible to another."""
        agg = Aggregation(columns=["Year", "Total"], rows=[["2025", "1"]])
        self.store.set_aggregation("a::t0", agg)
        assert self.store.get_aggregation("a::t0") == agg
        assert self.store.get_aggregation("b::t0") is None

    def test_unknown_field_rejected(self):
        """Unknown fields raise instead of being silently stored."""
        with pytest.raises(ValueError):
            self.store.set("k", bogus=1)

    def test_clear(self):
        """clear() forgets every session."""
        self.store.set("k", always_table=True)
        self.store.clear()
        assert self.store.keys() == []
        assert self.store.get("k").always_table is False
