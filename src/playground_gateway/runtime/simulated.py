"""In-memory stand-in runtime.

Used when the Docker daemon cannot be reached, so the playground keeps
working (file sync, reads, session lifecycle) without real isolation.
Commands are not executed: they return a synthetic success that says so,
and no preview port ever becomes available.
"""

from __future__ import annotations

import itertools
import logging
import uuid
from typing import Optional

from playground_gateway.exceptions import EnvironmentGoneError
from playground_gateway.sessions.models import (
    EnvironmentHandle,
    ProjectKind,
    SimulatedEnvironment,
)

from .base import WORKSPACE_DIR, ContainerRuntime, ExecResult, WorkspaceEntry

logger = logging.getLogger(__name__)


class SimulatedRuntime(ContainerRuntime):
    """Keeps one in-memory file table per simulated environment."""

    simulated = True

    def __init__(self) -> None:
        self._workspaces: dict[str, dict[str, Optional[bytes]]] = {}
        self._pids = itertools.count(1000)

    def _workspace(self, env: EnvironmentHandle) -> dict[str, Optional[bytes]]:
        try:
            return self._workspaces[env.id]
        except KeyError as exc:
            raise EnvironmentGoneError(env.id) from exc

    async def create_environment(
        self,
        session_id: str,
        project_kind: ProjectKind,
        lifetime_seconds: float,
    ) -> SimulatedEnvironment:
        env = SimulatedEnvironment(id=f"sim-{uuid.uuid4().hex[:12]}")
        self._workspaces[env.id] = {}
        logger.info("Simulated environment %s created  session=%s", env.id, session_id)
        return env

    async def destroy_environment(self, env: EnvironmentHandle) -> None:
        self._workspaces.pop(env.id, None)

    async def environment_exists(self, env: EnvironmentHandle) -> bool:
        return env.id in self._workspaces

    async def exec(
        self,
        env: EnvironmentHandle,
        command: str,
        *,
        workdir: str = WORKSPACE_DIR,
        timeout: Optional[int] = None,
    ) -> ExecResult:
        self._workspace(env)
        return ExecResult(
            stdout=f"[simulated] $ {command}\n",
            stderr="Container runtime unavailable: command was not executed.\n",
            exit_code=0,
        )

    async def start_background(
        self,
        env: EnvironmentHandle,
        command: str,
        log_path: str,
        *,
        workdir: str = WORKSPACE_DIR,
    ) -> int:
        files = self._workspace(env)
        files[log_path] = f"[simulated] $ {command}\n".encode()
        return next(self._pids)

    async def stop_process(self, env: EnvironmentHandle, pid: int) -> bool:
        self._workspace(env)
        return True

    async def read_file(self, env: EnvironmentHandle, path: str) -> bytes:
        files = self._workspace(env)
        key = path
        if path.startswith(WORKSPACE_DIR + "/"):
            key = path[len(WORKSPACE_DIR) + 1:]
        content = files.get(key)
        if content is None:
            raise FileNotFoundError(path)
        return content

    async def write_entries(
        self, env: EnvironmentHandle, entries: list[WorkspaceEntry]
    ) -> None:
        files = self._workspace(env)
        for entry in entries:
            files[entry.path] = entry.content

    async def read_entries(
        self, env: EnvironmentHandle, ignored_dirs: frozenset[str]
    ) -> list[WorkspaceEntry]:
        files = self._workspace(env)
        return [
            WorkspaceEntry(path, content)
            for path, content in files.items()
            if not path.startswith("/")
            and not any(part in ignored_dirs for part in path.split("/"))
        ]

    async def probe_exposed_port(self, env: EnvironmentHandle) -> Optional[int]:
        return None
