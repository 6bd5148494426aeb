"""Command gateway: runs shell commands inside a session's environment.

Foreground commands block until they finish and return the real exit code
with stdout and stderr kept apart. A command that ran and failed is a normal
result with a nonzero ``exit_code``, never an exception.

Background commands (dev servers, watchers) are started detached with their
output redirected to a log file, recorded on the session as a
:class:`BackgroundProcess`, and followed by a port watcher that binds the
session's preview port once something starts listening.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shlex
import uuid
from dataclasses import asdict, dataclass
from typing import Optional

from .exceptions import (
    EnvironmentGoneError,
    InvalidRequestError,
    ProcessNotFoundError,
    SessionNotFoundError,
)
from .provisioner import EnvironmentProvisioner
from .sessions.models import BackgroundProcess, Session

logger = logging.getLogger(__name__)

_PACKAGE_PATTERN = re.compile(r"^[A-Za-z0-9@][A-Za-z0-9@/._~^<>=!+,\[\]-]{0,213}$")
LOG_TAIL_BYTES = 64 * 1024


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int
    background: bool = False
    pid: Optional[int] = None
    log_path: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class CommandGateway:
    """Executes commands in session environments."""

    def __init__(
        self,
        provisioner: EnvironmentProvisioner,
        *,
        default_timeout: int = 60,
        max_timeout: int = 300,
        max_command_length: int = 10_000,
        port_watch_seconds: float = 60,
        port_poll_interval: float = 1.0,
    ):
        self.provisioner = provisioner
        self.default_timeout = default_timeout
        self.max_timeout = max_timeout
        self.max_command_length = max_command_length
        self.port_watch_seconds = port_watch_seconds
        self.port_poll_interval = port_poll_interval
        self._watchers: set[asyncio.Task] = set()

    def _validate_command(self, command: str) -> None:
        if not command or not command.strip():
            raise InvalidRequestError("Command must not be empty")
        if len(command) > self.max_command_length:
            raise InvalidRequestError(
                f"Command exceeds {self.max_command_length} characters",
                {"length": len(command)},
            )

    def _effective_timeout(self, timeout: Optional[int]) -> int:
        if timeout is None or timeout <= 0:
            return self.default_timeout
        return min(timeout, self.max_timeout)

    async def _environment_gone(self, session: Session) -> SessionNotFoundError:
        logger.warning(
            "Environment %s of session %s vanished, dropping the session",
            session.environment_id, session.id,
        )
        await self.provisioner.destroy(session.id, reason="vanished")
        return SessionNotFoundError(session.id)

    # ── Exec ──────────────────────────────────────────────────────────────────

    async def exec(
        self,
        session_id: str,
        command: str,
        background: bool = False,
        timeout: Optional[int] = None,
    ) -> CommandResult:
        session = self.provisioner.touch(session_id)
        self._validate_command(command)
        try:
            if background:
                return await self._start_background(session, command)
            return await self._run_foreground(session, command, timeout)
        except EnvironmentGoneError:
            raise await self._environment_gone(session)

    async def _run_foreground(
        self, session: Session, command: str, timeout: Optional[int]
    ) -> CommandResult:
        runtime = self.provisioner.runtime_for(session.environment)
        effective = self._effective_timeout(timeout)
        result = await runtime.exec(session.environment, command, timeout=effective)
        logger.info(
            "Exec in session %s exited %d  cmd=%.80s",
            session.id, result.exit_code, command,
        )
        return CommandResult(
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
        )

    async def _start_background(self, session: Session, command: str) -> CommandResult:
        runtime = self.provisioner.runtime_for(session.environment)
        log_path = f"/tmp/bg-{uuid.uuid4().hex[:8]}.log"
        pid = await runtime.start_background(session.environment, command, log_path)
        session.processes[pid] = BackgroundProcess(pid=pid, command=command, log_path=log_path)
        logger.info(
            "Background process %d started in session %s  log=%s  cmd=%.80s",
            pid, session.id, log_path, command,
        )
        self._watch_port(session)
        return CommandResult(
            stdout=f"Process started in background (PID: {pid})\n",
            stderr="",
            exit_code=0,
            background=True,
            pid=pid,
            log_path=log_path,
        )

    # ── Port watcher ──────────────────────────────────────────────────────────

    def _watch_port(self, session: Session) -> None:
        if session.exposed_port is not None or session.simulated:
            return
        task = asyncio.create_task(
            self._port_watch_loop(session), name=f"port-watch-{session.id}"
        )
        self._watchers.add(task)
        task.add_done_callback(self._watchers.discard)

    async def _port_watch_loop(self, session: Session) -> None:
        loop = asyncio.get_running_loop()
        give_up_at = loop.time() + self.port_watch_seconds
        while session.status.is_live and loop.time() < give_up_at:
            try:
                if await self.provisioner.refresh_exposed_port(session) is not None:
                    return
            except EnvironmentGoneError:
                return
            except Exception as exc:
                logger.warning("Port probe failed for session %s: %s", session.id, exc)
            await asyncio.sleep(self.port_poll_interval)
        if session.status.is_live and session.exposed_port is None:
            logger.info(
                "No listener in session %s after %.0fs; proxy will retry on demand",
                session.id, self.port_watch_seconds,
            )

    # ── Packages ──────────────────────────────────────────────────────────────

    async def install(self, session_id: str, packages: list[str]) -> CommandResult:
        """Install packages with the project kind's package manager."""
        session = self.provisioner.touch(session_id)
        if not packages:
            raise InvalidRequestError("At least one package is required")
        for package in packages:
            if not _PACKAGE_PATTERN.match(package):
                raise InvalidRequestError(f"Invalid package name: {package!r}")

        command = session.project_kind.install_command([shlex.quote(p) for p in packages])
        if command is None:
            raise InvalidRequestError(
                f"Project kind '{session.project_kind.value}' has no package manager"
            )
        return await self.exec(session_id, command, timeout=self.max_timeout)

    # ── Background processes ──────────────────────────────────────────────────

    def _process(self, session: Session, pid: int) -> BackgroundProcess:
        process = session.processes.get(pid)
        if process is None:
            raise ProcessNotFoundError(session.id, pid)
        return process

    async def read_log(self, session_id: str, pid: int, tail_bytes: int = LOG_TAIL_BYTES) -> str:
        """Tail of a background process's output."""
        session = self.provisioner.touch(session_id)
        process = self._process(session, pid)
        runtime = self.provisioner.runtime_for(session.environment)
        try:
            data = await runtime.read_file(session.environment, process.log_path)
        except FileNotFoundError:
            return ""
        except EnvironmentGoneError:
            raise await self._environment_gone(session)
        return data[-tail_bytes:].decode("utf-8", errors="replace")

    async def stop_process(self, session_id: str, pid: int) -> bool:
        session = self.provisioner.touch(session_id)
        self._process(session, pid)
        runtime = self.provisioner.runtime_for(session.environment)
        try:
            stopped = await runtime.stop_process(session.environment, pid)
        except EnvironmentGoneError:
            raise await self._environment_gone(session)
        session.processes.pop(pid, None)
        return stopped

    async def close(self) -> None:
        for task in list(self._watchers):
            task.cancel()
        if self._watchers:
            await asyncio.gather(*self._watchers, return_exceptions=True)
        self._watchers.clear()
