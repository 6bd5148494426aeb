"""The single lifetime ceiling shared by every enforcement layer."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from playground_gateway.config import PlaygroundSettings


@dataclass(frozen=True)
class LifetimePolicy:
    """Ceiling and grace values read by timers, sweep, reaper and self-removal.

    Attributes:
        ceiling_seconds: Base lifetime of a session.
        grace_seconds: One-time extension granted by ``extend_lifetime``.
        sweep_interval_seconds: Period of the in-process sweep.
        idle_after_seconds: Inactivity after which a running session is idle.
    """
    ceiling_seconds: float = 30 * 60
    grace_seconds: float = 10 * 60
    sweep_interval_seconds: float = 5 * 60
    idle_after_seconds: float = 5 * 60

    @classmethod
    def from_settings(cls, settings: "PlaygroundSettings") -> "LifetimePolicy":
        return cls(
            ceiling_seconds=settings.ceiling_seconds,
            grace_seconds=settings.grace_seconds,
            sweep_interval_seconds=settings.sweep_interval_seconds,
            idle_after_seconds=settings.idle_after_seconds,
        )

    @property
    def hard_limit_seconds(self) -> float:
        """Absolute maximum age: ceiling plus the one grace extension."""
        return self.ceiling_seconds + self.grace_seconds

    def initial_deadline(self, created_at: datetime) -> datetime:
        return created_at + timedelta(seconds=self.ceiling_seconds)

    def extended_deadline(self, deadline: datetime) -> datetime:
        return deadline + timedelta(seconds=self.grace_seconds)

    def exceeds_hard_limit(self, created_at: datetime, now: datetime) -> bool:
        return (now - created_at).total_seconds() > self.hard_limit_seconds
