"""In-memory session registry.

The authoritative map from session id to :class:`Session`. Instances are
constructed and injected explicitly (one per service, one per test), never
shared through module state.

Concurrency: all access happens on one event loop, so the dicts need no
lock of their own. Operations that must be atomic *per session*
(create / destroy / extend) hold ``registry.lock(session_id)``; locks for
different ids are independent, so sessions never contend with each other.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

from playground_gateway.exceptions import SessionConflictError

from .models import Session

logger = logging.getLogger(__name__)


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class SessionRegistry:
    """Session store with a short-id index and per-key locks."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._short_ids: dict[str, str] = {}
        self._locks: dict[str, _KeyLock] = {}

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def resolve(self, token: str) -> Optional[Session]:
        """Look up by canonical id first, then by short id."""
        session = self._sessions.get(token)
        if session is not None:
            return session
        owner = self._short_ids.get(token)
        return self._sessions.get(owner) if owner else None

    def short_id_owner(self, short_id: str) -> Optional[str]:
        return self._short_ids.get(short_id)

    def list(self) -> list[Session]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    # ── Writes ────────────────────────────────────────────────────────────────

    def reserve_short_id(self, session: Session) -> None:
        """Raise if the session's short id already routes to another session."""
        owner = self._short_ids.get(session.short_id)
        if owner is not None and owner != session.id:
            raise SessionConflictError(
                f"Short id '{session.short_id}' already belongs to another live session",
                {"session_id": session.id, "short_id": session.short_id},
            )

    def upsert(self, session: Session) -> None:
        self.reserve_short_id(session)
        self._sessions[session.id] = session
        self._short_ids[session.short_id] = session.id

    def remove(self, session_id: str) -> Optional[Session]:
        session = self._sessions.pop(session_id, None)
        if session is not None and self._short_ids.get(session.short_id) == session_id:
            del self._short_ids[session.short_id]
        return session

    # ── Per-key serialization ─────────────────────────────────────────────────

    @asynccontextmanager
    async def lock(self, session_id: str) -> AsyncIterator[None]:
        """Serialize operations on one session id.

        Lock entries are reference counted and dropped once nobody holds or
        waits on them, so the lock table never outgrows the live workload.
        """
        entry = self._locks.get(session_id)
        if entry is None:
            entry = self._locks[session_id] = _KeyLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0 and self._locks.get(session_id) is entry:
                del self._locks[session_id]
