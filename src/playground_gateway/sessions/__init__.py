"""Session model and registry."""

from .models import (
    BackgroundProcess,
    EnvironmentHandle,
    ProjectKind,
    RealEnvironment,
    Session,
    SessionStatus,
    SimulatedEnvironment,
    derive_short_id,
    new_session_id,
    validate_session_id,
)
from .registry import SessionRegistry

__all__ = [
    "BackgroundProcess",
    "EnvironmentHandle",
    "ProjectKind",
    "RealEnvironment",
    "Session",
    "SessionRegistry",
    "SessionStatus",
    "SimulatedEnvironment",
    "derive_short_id",
    "new_session_id",
    "validate_session_id",
]
