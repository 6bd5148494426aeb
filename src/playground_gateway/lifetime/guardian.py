"""In-process lifetime sweep.

Runs every ``sweep_interval_seconds`` and:
  - marks running sessions idle after ``idle_after_seconds`` without access
  - destroys sessions past their deadline (covers a missed timer)
  - destroys sessions whose runtime-reported creation time exceeds the
    hard limit, whatever the in-memory deadline says
  - drops records whose real environment no longer exists (removed by the
    reaper or by Docker's own auto-removal)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Optional

from playground_gateway.sessions.models import SessionStatus, utcnow

from .policy import LifetimePolicy

if TYPE_CHECKING:
    from playground_gateway.provisioner import EnvironmentProvisioner

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    idled: list[str] = field(default_factory=list)
    expired: list[str] = field(default_factory=list)
    vanished: list[str] = field(default_factory=list)
    errors: int = 0


class LifetimeGuardian:
    """Periodic backstop for the per-session timers."""

    def __init__(
        self,
        provisioner: "EnvironmentProvisioner",
        policy: Optional[LifetimePolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.provisioner = provisioner
        self.policy = policy or provisioner.policy
        self.clock = clock
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._sweep_loop(), name="lifetime-sweep")
        logger.info(
            "Lifetime sweep started (every %.0fs, hard limit %.0fs)",
            self.policy.sweep_interval_seconds, self.policy.hard_limit_seconds,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Lifetime sweep stopped")

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.policy.sweep_interval_seconds)
                await self.sweep_once()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Sweep error: %s", exc, exc_info=True)

    async def sweep_once(self) -> SweepReport:
        """One pass over every live session. Failures on one session never stop the pass."""
        report = SweepReport()
        now = self.clock()

        for session in self.provisioner.list_sessions():
            try:
                if session.is_past_deadline(now):
                    reason = "deadline"
                elif session.environment is not None and self.policy.exceeds_hard_limit(
                    session.environment.created_at, now
                ):
                    reason = "hard_limit"
                elif not await self.provisioner.environment_alive(session):
                    reason = "vanished"
                else:
                    reason = None

                if reason is not None:
                    logger.info(
                        "Sweep removing session %s (%s)  age=%.0fs",
                        session.id, reason, (now - session.created_at).total_seconds(),
                    )
                    if await self.provisioner.destroy(session.id, reason=reason):
                        bucket = report.vanished if reason == "vanished" else report.expired
                        bucket.append(session.id)
                    continue

                if (
                    session.status is SessionStatus.RUNNING
                    and session.idle_seconds(now) >= self.policy.idle_after_seconds
                ):
                    session.status = SessionStatus.IDLE
                    report.idled.append(session.id)
            except Exception as exc:
                report.errors += 1
                logger.error("Sweep failed for session %s: %s", session.id, exc, exc_info=True)

        if report.expired or report.vanished or report.errors:
            logger.info(
                "Sweep done  expired=%d  vanished=%d  idled=%d  errors=%d",
                len(report.expired), len(report.vanished), len(report.idled), report.errors,
            )
        return report
