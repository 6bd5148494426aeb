"""Playground gateway: disposable per-session code environments behind one HTTP API."""

from .command_gateway import CommandGateway, CommandResult
from .config import PlaygroundSettings
from .exceptions import (
    EnvironmentGoneError,
    InvalidPathError,
    InvalidRequestError,
    PlaygroundError,
    ProcessNotFoundError,
    RateLimitExceededError,
    RuntimeUnavailableError,
    SessionConflictError,
    SessionNotFoundError,
    UpstreamNotReadyError,
    WorkspaceSyncError,
)
from .lifetime import LifetimeGuardian, LifetimePolicy
from .limiter import AdmissionLimiter
from .provisioner import EnvironmentProvisioner, ProvisionResult
from .proxy import IngressProxy, ProxyResponse
from .sessions import ProjectKind, Session, SessionRegistry, SessionStatus
from .workspace import FileNode, WorkspaceSynchronizer

__version__ = "0.1.0"

__all__ = [
    "AdmissionLimiter",
    "CommandGateway",
    "CommandResult",
    "EnvironmentGoneError",
    "EnvironmentProvisioner",
    "FileNode",
    "IngressProxy",
    "InvalidPathError",
    "InvalidRequestError",
    "LifetimeGuardian",
    "LifetimePolicy",
    "PlaygroundError",
    "PlaygroundSettings",
    "ProcessNotFoundError",
    "ProjectKind",
    "ProvisionResult",
    "ProxyResponse",
    "RateLimitExceededError",
    "RuntimeUnavailableError",
    "Session",
    "SessionConflictError",
    "SessionNotFoundError",
    "SessionRegistry",
    "SessionStatus",
    "UpstreamNotReadyError",
    "WorkspaceSyncError",
    "WorkspaceSynchronizer",
]
