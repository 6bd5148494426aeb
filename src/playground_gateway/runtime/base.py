"""Abstract container runtime interface.

The provisioner, workspace synchronizer and command gateway only talk to a
runtime through this interface. Two implementations exist: the Docker-backed
runtime and the in-memory simulated runtime used as a fallback.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from playground_gateway.sessions.models import EnvironmentHandle, ProjectKind

WORKSPACE_DIR = "/workspace"


@dataclass(frozen=True)
class ExecResult:
    """Captured output of a finished command."""
    stdout: str
    stderr: str
    exit_code: int


@dataclass(frozen=True)
class WorkspaceEntry:
    """One path in a workspace, relative to the workspace root.

    ``content`` is ``None`` for directories.
    """
    path: str
    content: Optional[bytes] = None

    @property
    def is_dir(self) -> bool:
        return self.content is None


class ContainerRuntime(ABC):
    """Create, drive and destroy isolated environments."""

    simulated: bool = False

    @abstractmethod
    async def create_environment(
        self,
        session_id: str,
        project_kind: ProjectKind,
        lifetime_seconds: float,
    ) -> EnvironmentHandle:
        """Allocate an environment that removes itself after ``lifetime_seconds``."""

    @abstractmethod
    async def destroy_environment(self, env: EnvironmentHandle) -> None:
        """Tear down the environment and its storage. Idempotent."""

    @abstractmethod
    async def environment_exists(self, env: EnvironmentHandle) -> bool:
        ...

    @abstractmethod
    async def exec(
        self,
        env: EnvironmentHandle,
        command: str,
        *,
        workdir: str = WORKSPACE_DIR,
        timeout: Optional[int] = None,
    ) -> ExecResult:
        """Run ``sh -c command`` and wait for it."""

    @abstractmethod
    async def start_background(
        self,
        env: EnvironmentHandle,
        command: str,
        log_path: str,
        *,
        workdir: str = WORKSPACE_DIR,
    ) -> int:
        """Start a detached process writing to ``log_path``; return its pid."""

    @abstractmethod
    async def stop_process(self, env: EnvironmentHandle, pid: int) -> bool:
        ...

    @abstractmethod
    async def read_file(self, env: EnvironmentHandle, path: str) -> bytes:
        """Read one file by absolute path inside the environment."""

    @abstractmethod
    async def write_entries(
        self, env: EnvironmentHandle, entries: list[WorkspaceEntry]
    ) -> None:
        """Materialize entries under the workspace root, overwriting in place."""

    @abstractmethod
    async def read_entries(
        self, env: EnvironmentHandle, ignored_dirs: frozenset[str]
    ) -> list[WorkspaceEntry]:
        """Snapshot the workspace, skipping directories named in ``ignored_dirs``."""

    @abstractmethod
    async def probe_exposed_port(self, env: EnvironmentHandle) -> Optional[int]:
        """Host port of a published container port that has a listener, if any."""

    async def close(self) -> None:
        return None
