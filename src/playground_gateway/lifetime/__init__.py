"""Layered lifetime enforcement: timers, sweep, reaper and self-removal."""

from .guardian import LifetimeGuardian, SweepReport
from .policy import LifetimePolicy
from .timers import SessionTimers

__all__ = [
    "LifetimeGuardian",
    "LifetimePolicy",
    "SessionTimers",
    "SweepReport",
]
