"""Tests for the session registry and its per-key locks."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import OTHER_SESSION_ID, SESSION_ID
from playground_gateway.exceptions import InvalidRequestError, SessionConflictError
from playground_gateway.sessions.models import (
    ProjectKind,
    Session,
    SessionStatus,
    derive_short_id,
    new_session_id,
    validate_session_id,
)
from playground_gateway.sessions.registry import SessionRegistry

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _session(session_id: str, short_id: str = None) -> Session:
    return Session(
        id=session_id,
        short_id=short_id or derive_short_id(session_id),
        project_kind=ProjectKind.NODE,
        created_at=NOW,
        last_accessed_at=NOW,
        deadline=NOW + timedelta(minutes=30),
        status=SessionStatus.RUNNING,
    )


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------


class TestIdentifiers:
    def test_short_id_is_last_twelve_characters(self):
        assert derive_short_id(SESSION_ID) == "xprao825hlkq"
        assert len(derive_short_id(SESSION_ID)) == 12

    def test_new_session_id_format(self):
        sid = new_session_id()
        prefix, millis, suffix = sid.split("-")
        assert prefix == "session"
        assert millis.isdigit()
        assert len(suffix) == 12
        validate_session_id(sid)

    @pytest.mark.parametrize("bad", ["", "a/b", "../etc", "x" * 129, "with space"])
    def test_invalid_session_ids_rejected(self, bad):
        with pytest.raises(InvalidRequestError):
            validate_session_id(bad)


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


class TestLookup:
    def test_get_unknown_returns_none(self):
        assert SessionRegistry().get("nope") is None

    def test_resolve_by_canonical_and_short_id(self):
        registry = SessionRegistry()
        session = _session(SESSION_ID)
        registry.upsert(session)
        assert registry.resolve(SESSION_ID) is session
        assert registry.resolve(session.short_id) is session

    def test_resolve_unknown_token(self):
        registry = SessionRegistry()
        registry.upsert(_session(SESSION_ID))
        assert registry.resolve("doesnotexist") is None

    def test_list_and_len(self):
        registry = SessionRegistry()
        registry.upsert(_session(SESSION_ID))
        registry.upsert(_session(OTHER_SESSION_ID))
        assert len(registry) == 2
        assert {s.id for s in registry.list()} == {SESSION_ID, OTHER_SESSION_ID}
        assert SESSION_ID in registry


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


class TestWrites:
    def test_short_id_collision_rejected(self):
        registry = SessionRegistry()
        registry.upsert(_session(SESSION_ID, short_id="abcdefabcdef"))
        with pytest.raises(SessionConflictError):
            registry.upsert(_session(OTHER_SESSION_ID, short_id="abcdefabcdef"))
        assert registry.get(OTHER_SESSION_ID) is None
        assert registry.resolve("abcdefabcdef").id == SESSION_ID

    def test_upsert_same_session_twice_is_fine(self):
        registry = SessionRegistry()
        session = _session(SESSION_ID)
        registry.upsert(session)
        registry.upsert(session)
        assert len(registry) == 1

    def test_remove_drops_short_id_index(self):
        registry = SessionRegistry()
        session = _session(SESSION_ID)
        registry.upsert(session)
        assert registry.remove(SESSION_ID) is session
        assert registry.resolve(session.short_id) is None
        assert registry.short_id_owner(session.short_id) is None

    def test_remove_unknown_returns_none(self):
        assert SessionRegistry().remove("ghost") is None


# ---------------------------------------------------------------------------
# Per-key locks
# ---------------------------------------------------------------------------


class TestLocks:
    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        registry = SessionRegistry()
        order = []

        async def worker(tag):
            async with registry.lock(SESSION_ID):
                order.append(f"{tag}-in")
                await asyncio.sleep(0.01)
                order.append(f"{tag}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order in (
            ["a-in", "a-out", "b-in", "b-out"],
            ["b-in", "b-out", "a-in", "a-out"],
        )

    @pytest.mark.asyncio
    async def test_different_keys_do_not_contend(self):
        registry = SessionRegistry()
        entered = asyncio.Event()

        async def holder():
            async with registry.lock(SESSION_ID):
                await asyncio.wait_for(entered.wait(), timeout=1)

        async def other():
            async with registry.lock(OTHER_SESSION_ID):
                entered.set()

        await asyncio.gather(holder(), other())

    @pytest.mark.asyncio
    async def test_lock_entries_are_dropped_when_released(self):
        registry = SessionRegistry()
        async with registry.lock(SESSION_ID):
            assert SESSION_ID in registry._locks
        assert registry._locks == {}
