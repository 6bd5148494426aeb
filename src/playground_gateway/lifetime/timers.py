"""Per-session deadline timers.

The cheapest enforcement layer: one ``loop.call_later`` handle per session,
armed on create and re-armed on extend. Timers live in process memory and
are lost on restart; the sweep and the reaper cover that case.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

ExpireCallback = Callable[[str], Awaitable[object]]


class SessionTimers:
    """Schedules ``on_expire(session_id)`` at each session's deadline."""

    def __init__(self, on_expire: ExpireCallback, clock: Callable[[], datetime]):
        self._on_expire = on_expire
        self._clock = clock
        self._handles: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    def arm(self, session_id: str, deadline: datetime) -> None:
        """(Re)arm the timer for ``session_id``. Must run on the event loop."""
        self.cancel(session_id)
        delay = max(0.0, (deadline - self._clock()).total_seconds())
        loop = asyncio.get_running_loop()
        self._handles[session_id] = loop.call_later(delay, self._fire, session_id)
        logger.debug("Timer armed  session=%s  in=%.0fs", session_id, delay)

    def cancel(self, session_id: str) -> None:
        handle = self._handles.pop(session_id, None)
        if handle is not None:
            handle.cancel()

    def cancel_all(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
        for task in self._tasks:
            task.cancel()

    def is_armed(self, session_id: str) -> bool:
        return session_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def _fire(self, session_id: str) -> None:
        self._handles.pop(session_id, None)
        logger.info("Session %s reached its deadline (timer)", session_id)
        task = asyncio.ensure_future(self._on_expire(session_id))
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Timer expiry failed: %s", task.exception(), exc_info=task.exception())
