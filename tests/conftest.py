"""Shared fixtures: an in-memory container runtime and a controllable clock."""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from playground_gateway.exceptions import EnvironmentGoneError, RuntimeUnavailableError
from playground_gateway.lifetime import LifetimePolicy
from playground_gateway.provisioner import EnvironmentProvisioner
from playground_gateway.runtime import ContainerRuntime, ExecResult, SimulatedRuntime, WorkspaceEntry
from playground_gateway.sessions.models import EnvironmentHandle, RealEnvironment
from playground_gateway.sessions.registry import SessionRegistry


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeRuntime(ContainerRuntime):
    """Records every call; environments are plain dict entries."""

    simulated = False

    def __init__(self, clock=None):
        self.clock = clock or FakeClock()
        self.environments: dict[str, RealEnvironment] = {}
        self.files: dict[str, dict[str, Optional[bytes]]] = {}
        self.created: list[str] = []
        self.destroyed: list[str] = []
        self.commands: list[tuple[str, Optional[int]]] = []
        self.unavailable = False
        self.fail_destroy = False
        self.exec_result = ExecResult(stdout="ok\n", stderr="", exit_code=0)
        self.listening_port: Optional[int] = None
        self._ids = itertools.count(1)
        self._pids = itertools.count(4000)

    def _env(self, env: EnvironmentHandle) -> RealEnvironment:
        if env.id not in self.environments:
            raise EnvironmentGoneError(env.id)
        return self.environments[env.id]

    async def create_environment(self, session_id, project_kind, lifetime_seconds):
        if self.unavailable:
            raise RuntimeUnavailableError("Cannot connect to the Docker daemon")
        n = next(self._ids)
        env = RealEnvironment(
            container_id=f"ctr-{n}",
            container_name=f"playground-env-{session_id}",
            volume_name=f"playground-vol-{session_id}",
            created_at=self.clock(),
        )
        self.environments[env.id] = env
        self.files[env.id] = {}
        self.created.append(session_id)
        return env

    async def destroy_environment(self, env):
        if self.fail_destroy:
            raise RuntimeError("daemon hiccup")
        self.environments.pop(env.id, None)
        self.files.pop(env.id, None)
        self.destroyed.append(env.id)

    async def environment_exists(self, env):
        return env.id in self.environments

    async def exec(self, env, command, *, workdir="/workspace", timeout=None):
        self._env(env)
        self.commands.append((command, timeout))
        return self.exec_result

    async def start_background(self, env, command, log_path, *, workdir="/workspace"):
        self._env(env)
        self.commands.append((command, None))
        self.files[env.id][log_path] = b"server listening\n"
        return next(self._pids)

    async def stop_process(self, env, pid):
        self._env(env)
        return True

    async def read_file(self, env, path):
        self._env(env)
        content = self.files[env.id].get(path)
        if content is None:
            raise FileNotFoundError(path)
        return content

    async def write_entries(self, env, entries):
        self._env(env)
        for entry in entries:
            self.files[env.id][entry.path] = entry.content

    async def read_entries(self, env, ignored_dirs):
        self._env(env)
        return [
            WorkspaceEntry(path, content)
            for path, content in self.files[env.id].items()
            if not path.startswith("/")
            and not any(part in ignored_dirs for part in path.split("/"))
        ]

    async def probe_exposed_port(self, env):
        self._env(env)
        return self.listening_port

    def vanish(self, env_id: str) -> None:
        """Simulate the container disappearing behind the service's back."""
        self.environments.pop(env_id, None)
        self.files.pop(env_id, None)


SESSION_ID = "session-1767080834814-xprao825hlkq"
OTHER_SESSION_ID = "session-1767080899999-b7d2k9q0wzzz"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def runtime(clock):
    return FakeRuntime(clock)


@pytest.fixture
def simulated_runtime():
    return SimulatedRuntime()


@pytest.fixture
def policy():
    return LifetimePolicy()


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def provisioner(registry, runtime, policy, simulated_runtime, clock):
    return EnvironmentProvisioner(
        registry, runtime, policy, simulated_runtime=simulated_runtime, clock=clock,
    )
