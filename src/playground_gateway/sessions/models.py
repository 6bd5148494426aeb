"""Session data model.

A session is the client-visible handle bound to exactly one execution
environment. The environment identity is a tagged variant: either a real
container (:class:`RealEnvironment`) or an in-memory stand-in used when the
container runtime is unreachable (:class:`SimulatedEnvironment`).
"""

from __future__ import annotations

import re
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Optional, Union

from playground_gateway.exceptions import InvalidRequestError

SHORT_ID_LENGTH = 12

# Allowed characters for session IDs (alphanumeric, hyphens, underscores)
_SESSION_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,128}$")
_BASE36 = string.digits + string.ascii_lowercase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_session_id(session_id: str) -> None:
    """Reject ids that could not safely name a container or volume."""
    if not session_id or not _SESSION_ID_PATTERN.match(session_id):
        raise InvalidRequestError(
            f"Invalid session_id: must match {_SESSION_ID_PATTERN.pattern}"
        )


def new_session_id() -> str:
    """``session-<epoch ms>-<random base36 suffix>``."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(SHORT_ID_LENGTH))
    return f"session-{int(time.time() * 1000)}-{suffix}"


def derive_short_id(session_id: str) -> str:
    return session_id[-SHORT_ID_LENGTH:]


# ── Enums ────────────────────────────────────────────────────────────────────

class SessionStatus(str, Enum):
    PROVISIONING = "provisioning"
    RUNNING = "running"
    IDLE = "idle"
    EXPIRING = "expiring"
    DESTROYED = "destroyed"

    @property
    def is_live(self) -> bool:
        return self in (SessionStatus.RUNNING, SessionStatus.IDLE)


class ProjectKind(str, Enum):
    NODE = "node"
    TYPESCRIPT = "typescript"
    PYTHON = "python"
    STATIC = "static"

    @property
    def preview_port(self) -> int:
        """Container port published for the preview proxy."""
        return _PREVIEW_PORTS[self]

    def install_command(self, packages: list[str]) -> Optional[str]:
        joined = " ".join(packages)
        if self in (ProjectKind.NODE, ProjectKind.TYPESCRIPT):
            return f"([ -f package.json ] || npm init -y) && npm install --no-fund --no-audit {joined}"
        if self is ProjectKind.PYTHON:
            return f"pip install --no-cache-dir --user {joined}"
        return None


_PREVIEW_PORTS = {
    ProjectKind.NODE: 3000,
    ProjectKind.TYPESCRIPT: 3000,
    ProjectKind.PYTHON: 8000,
    ProjectKind.STATIC: 8080,
}


# ── Environment identity ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class RealEnvironment:
    """A container owned by the runtime, with its workspace volume."""
    container_id: str
    container_name: str
    volume_name: str
    created_at: datetime

    simulated: ClassVar[bool] = False

    @property
    def id(self) -> str:
        return self.container_id


@dataclass(frozen=True)
class SimulatedEnvironment:
    """In-memory stand-in used when the container runtime is unreachable."""
    id: str
    created_at: datetime = field(default_factory=utcnow)

    simulated: ClassVar[bool] = True


EnvironmentHandle = Union[RealEnvironment, SimulatedEnvironment]


# ── Session ──────────────────────────────────────────────────────────────────

@dataclass
class BackgroundProcess:
    """A supervised child process started inside a session's environment.

    It never outlives the environment: tearing the environment down kills it.
    """
    pid: int
    command: str
    log_path: str
    started_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "command": self.command,
            "log_path": self.log_path,
            "started_at": self.started_at.isoformat(),
        }


@dataclass
class Session:
    """Metadata for one playground session."""
    id: str
    short_id: str
    project_kind: ProjectKind
    created_at: datetime
    last_accessed_at: datetime
    deadline: datetime
    environment: Optional[EnvironmentHandle] = None
    status: SessionStatus = SessionStatus.PROVISIONING
    exposed_port: Optional[int] = None
    extended: bool = False
    processes: dict[int, BackgroundProcess] = field(default_factory=dict)

    def touch(self, now: datetime) -> None:
        self.last_accessed_at = now
        if self.status is SessionStatus.IDLE:
            self.status = SessionStatus.RUNNING

    @property
    def simulated(self) -> bool:
        return self.environment is not None and self.environment.simulated

    @property
    def environment_id(self) -> Optional[str]:
        return self.environment.id if self.environment is not None else None

    def idle_seconds(self, now: datetime) -> float:
        return (now - self.last_accessed_at).total_seconds()

    def is_past_deadline(self, now: datetime) -> bool:
        return now >= self.deadline

    def to_dict(self) -> dict:
        return {
            "session_id": self.id,
            "short_id": self.short_id,
            "environment_id": self.environment_id,
            "simulated": self.simulated,
            "project_kind": self.project_kind.value,
            "status": self.status.value,
            "created_at": self.created_at,
            "last_accessed_at": self.last_accessed_at,
            "expires_at": self.deadline,
            "extended": self.extended,
            "exposed_port": self.exposed_port,
            "processes": [p.to_dict() for p in self.processes.values()],
        }
