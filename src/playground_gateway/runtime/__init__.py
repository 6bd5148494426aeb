"""Container runtimes: Docker-backed and simulated."""

from .base import WORKSPACE_DIR, ContainerRuntime, ExecResult, WorkspaceEntry
from .docker_runtime import DockerRuntime
from .simulated import SimulatedRuntime

__all__ = [
    "WORKSPACE_DIR",
    "ContainerRuntime",
    "DockerRuntime",
    "ExecResult",
    "SimulatedRuntime",
    "WorkspaceEntry",
]
