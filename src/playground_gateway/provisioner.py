"""Execution environment provisioner.

Maps session_id to a disposable container. Each session gets its own
environment with:
  - A writable ``/workspace`` volume
  - A published preview port, bound once a listener is observed
  - A hard lifetime ceiling (plus one optional grace extension)

Usage::

    provisioner = EnvironmentProvisioner(registry, DockerRuntime(settings), policy,
                                         simulated_runtime=SimulatedRuntime())

    r1 = await provisioner.create("session-1767080834814-xprao825hlkq")
    r2 = await provisioner.create("session-1767080834814-xprao825hlkq")
    # r2.existing is True and r2.environment == r1.environment

    await provisioner.destroy("session-1767080834814-xprao825hlkq")

State machine::

    provisioning → running ⇄ idle → expiring → destroyed

``expiring`` is set under the session's lock before teardown starts, so a
racing destroy or extend sees the session as already on its way out.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .exceptions import RuntimeUnavailableError, SessionNotFoundError
from .lifetime.policy import LifetimePolicy
from .lifetime.timers import SessionTimers
from .observability import global_metrics, global_tracer
from .runtime.base import ContainerRuntime
from .sessions.models import (
    EnvironmentHandle,
    ProjectKind,
    Session,
    SessionStatus,
    SimulatedEnvironment,
    derive_short_id,
    utcnow,
    validate_session_id,
)
from .sessions.registry import SessionRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisionResult:
    session: Session
    existing: bool

    @property
    def environment(self) -> EnvironmentHandle:
        return self.session.environment

    @property
    def simulated(self) -> bool:
        return self.session.simulated


class EnvironmentProvisioner:
    """Creates, extends and destroys per-session environments."""

    def __init__(
        self,
        registry: SessionRegistry,
        runtime: ContainerRuntime,
        policy: Optional[LifetimePolicy] = None,
        *,
        simulated_runtime: Optional[ContainerRuntime] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.policy = policy or LifetimePolicy()
        self.clock = clock
        self._runtime = runtime
        self._simulated = simulated_runtime
        self._timers = SessionTimers(self._expire, clock)

    # ── Runtime selection ─────────────────────────────────────────────────────

    def runtime_for(self, env: EnvironmentHandle) -> ContainerRuntime:
        if isinstance(env, SimulatedEnvironment):
            if self._simulated is None:
                raise RuntimeUnavailableError("Simulated environments are disabled")
            return self._simulated
        return self._runtime

    @property
    def timers(self) -> SessionTimers:
        return self._timers

    # ── Create ────────────────────────────────────────────────────────────────

    async def create(
        self,
        session_id: str,
        project_kind: ProjectKind = ProjectKind.NODE,
    ) -> ProvisionResult:
        """Return the session's environment, allocating one if needed."""
        validate_session_id(session_id)

        async with self.registry.lock(session_id):
            current = self.registry.get(session_id)
            if current is not None and current.status.is_live:
                current.touch(self.clock())
                logger.info("Session %s already has environment %s", session_id, current.environment_id)
                return ProvisionResult(session=current, existing=True)

            now = self.clock()
            session = Session(
                id=session_id,
                short_id=derive_short_id(session_id),
                project_kind=project_kind,
                created_at=now,
                last_accessed_at=now,
                deadline=self.policy.initial_deadline(now),
            )
            # Raises before anything is allocated
            self.registry.reserve_short_id(session)
            self.registry.upsert(session)

            try:
                with global_tracer.start_span(
                    "playground.provision",
                    {"session.id": session_id, "project.kind": project_kind.value},
                ):
                    session.environment = await self._allocate(session_id, project_kind)
            except BaseException:
                self.registry.remove(session_id)
                raise

            # The deadline counts from the moment the environment exists
            now = self.clock()
            session.created_at = session.last_accessed_at = now
            session.deadline = self.policy.initial_deadline(now)
            session.status = SessionStatus.RUNNING
            self._timers.arm(session_id, session.deadline)

        global_metrics.increment_counter(
            "playground.sessions.created",
            tags={"simulated": str(session.simulated).lower(), "kind": project_kind.value},
        )
        logger.info(
            "Session %s → %s environment %s  deadline=%s",
            session_id,
            "simulated" if session.simulated else "real",
            session.environment_id,
            session.deadline.isoformat(),
        )
        return ProvisionResult(session=session, existing=False)

    async def _allocate(self, session_id: str, project_kind: ProjectKind) -> EnvironmentHandle:
        lifetime = self.policy.hard_limit_seconds
        try:
            return await self._runtime.create_environment(session_id, project_kind, lifetime)
        except RuntimeUnavailableError as exc:
            if self._simulated is None:
                raise
            logger.warning(
                "Container runtime unavailable, falling back to simulation  session=%s: %s",
                session_id, exc.message,
            )
            return await self._simulated.create_environment(session_id, project_kind, lifetime)

    # ── Destroy ───────────────────────────────────────────────────────────────

    async def destroy(self, session_id: str, reason: str = "requested") -> bool:
        """Tear down a session's environment. Unknown ids are a silent no-op.

        Returns True if this call destroyed the session.
        """
        async with self.registry.lock(session_id):
            session = self.registry.get(session_id)
            if session is None or session.status in (
                SessionStatus.EXPIRING, SessionStatus.DESTROYED,
            ):
                return False

            session.status = SessionStatus.EXPIRING
            self._timers.cancel(session_id)
            self.registry.remove(session_id)

            if session.environment is not None:
                try:
                    await self.runtime_for(session.environment).destroy_environment(
                        session.environment
                    )
                except Exception as exc:
                    # The record is gone either way; the reaper collects leftovers
                    logger.error(
                        "Teardown of %s failed  session=%s: %s",
                        session.environment_id, session_id, exc, exc_info=True,
                    )
            session.processes.clear()
            session.status = SessionStatus.DESTROYED

        global_metrics.increment_counter(
            "playground.sessions.destroyed", tags={"reason": reason}
        )
        logger.info("Session %s destroyed (reason=%s)", session_id, reason)
        return True

    async def _expire(self, session_id: str) -> None:
        await self.destroy(session_id, reason="deadline")

    # ── Extend ────────────────────────────────────────────────────────────────

    async def extend_lifetime(self, session_id: str) -> bool:
        """Push the deadline forward by the grace period, at most once."""
        async with self.registry.lock(session_id):
            session = self.registry.get(session_id)
            if session is None or not session.status.is_live or session.extended:
                return False
            session.extended = True
            session.deadline = self.policy.extended_deadline(session.deadline)
            session.touch(self.clock())
            self._timers.arm(session_id, session.deadline)

        logger.info("Session %s extended until %s", session_id, session.deadline.isoformat())
        return True

    # ── Access ────────────────────────────────────────────────────────────────

    def get(self, session_id: str) -> Optional[Session]:
        session = self.registry.get(session_id)
        if session is None or not session.status.is_live:
            return None
        return session

    def touch(self, session_id: str) -> Session:
        """Resolve a live session and bump its last access time."""
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        session.touch(self.clock())
        return session

    def status(self, session_id: str) -> Optional[dict]:
        session = self.get(session_id)
        return session.to_dict() if session is not None else None

    def list_sessions(self) -> list[Session]:
        return [s for s in self.registry.list() if s.status.is_live]

    async def environment_alive(self, session: Session) -> bool:
        if session.environment is None:
            return False
        return await self.runtime_for(session.environment).environment_exists(
            session.environment
        )

    async def refresh_exposed_port(self, session: Session) -> Optional[int]:
        """Bind ``exposed_port`` the first time a listener shows up."""
        if session.exposed_port is not None:
            return session.exposed_port
        if session.environment is None or not session.status.is_live:
            return None
        port = await self.runtime_for(session.environment).probe_exposed_port(
            session.environment
        )
        if port is not None and session.exposed_port is None:
            session.exposed_port = port
            logger.info("Session %s preview bound to host port %d", session.id, port)
        return session.exposed_port

    # ── Shutdown ──────────────────────────────────────────────────────────────

    async def shutdown(self) -> None:
        """Destroy every session (service shutdown)."""
        self._timers.cancel_all()
        sessions = self.registry.list()
        for session in sessions:
            await self.destroy(session.id, reason="shutdown")
        logger.info("Provisioner stopped (%d sessions closed)", len(sessions))
