"""Docker-backed container runtime.

Manages the full lifecycle of a playground container:
  1. Create a labelled workspace volume
  2. Run the container with resource limits, a published preview port and a
     self-terminating keep-alive command (``sleep <ceiling + grace>``)
     combined with ``auto_remove`` so Docker deletes it on its own
  3. Exec commands, move files in and out as tar archives
  4. Force-remove the container and its volume

The Docker SDK is blocking, so every call runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import functools
import io
import logging
import re
import shlex
import tarfile
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Optional

import docker
from docker.errors import APIError, DockerException, NotFound

from playground_gateway.config import PlaygroundSettings
from playground_gateway.exceptions import (
    EnvironmentGoneError,
    PlaygroundError,
    RuntimeUnavailableError,
    TransientRuntimeError,
    WorkspaceSyncError,
)
from playground_gateway.resilience import RUNTIME_RETRY_POLICY, retry_async
from playground_gateway.sessions.models import (
    EnvironmentHandle,
    ProjectKind,
    RealEnvironment,
)

from .base import WORKSPACE_DIR, ContainerRuntime, ExecResult, WorkspaceEntry

logger = logging.getLogger(__name__)

MANAGED_LABEL = "playground.managed"
SESSION_LABEL = "playground.session"
KIND_LABEL = "playground.kind"

_TCP_LISTEN = "0A"
_TIMESTAMP_RE = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<frac>\d+))?"
    r"(?P<tz>Z|[+-]\d{2}:\d{2})?$"
)


# ── Helpers shared with the reaper ───────────────────────────────────────────

def parse_docker_timestamp(value: str) -> datetime:
    """Parse Docker's RFC 3339 timestamps (nanosecond precision) as aware UTC."""
    match = _TIMESTAMP_RE.match(value.strip())
    if match is None:
        raise ValueError(f"Unrecognised Docker timestamp: {value!r}")
    frac = (match.group("frac") or "0")[:6].ljust(6, "0")
    tz = match.group("tz") or "Z"
    if tz == "Z":
        tz = "+00:00"
    parsed = datetime.fromisoformat(f"{match.group('base')}.{frac}{tz}")
    return parsed.astimezone(timezone.utc)


def parse_listening_ports(proc_net_tcp: str) -> set[int]:
    """Local ports in LISTEN state from ``/proc/net/tcp`` style text."""
    ports: set[int] = set()
    for line in proc_net_tcp.splitlines():
        fields = line.split()
        if len(fields) < 4 or ":" not in fields[1] or fields[3] != _TCP_LISTEN:
            continue
        try:
            ports.add(int(fields[1].rsplit(":", 1)[1], 16))
        except ValueError:
            continue
    return ports


def remove_container_quietly(client: docker.DockerClient, name_or_id: str) -> bool:
    """Force-remove a container. Returns False if it was already gone."""
    try:
        client.containers.get(name_or_id).remove(force=True)
        return True
    except NotFound:
        return False
    except APIError as exc:
        # 409: Docker is already removing it (auto_remove or a concurrent reaper)
        if exc.status_code == 409:
            logger.info("Container %s removal already in progress", name_or_id)
            return False
        raise


def remove_volume_quietly(client: docker.DockerClient, name: str) -> bool:
    """Force-remove a volume. Returns False if it was gone or still in use."""
    try:
        client.volumes.get(name).remove(force=True)
        return True
    except NotFound:
        return False
    except APIError as exc:
        if exc.status_code == 409:
            logger.warning("Volume %s still in use, leaving it for the reaper", name)
            return False
        raise


def build_archive(entries: list[WorkspaceEntry]) -> bytes:
    """Pack workspace entries into an uncompressed tar archive."""
    buf = io.BytesIO()
    now = int(time.time())
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for entry in entries:
            info = tarfile.TarInfo(name=entry.path)
            info.mtime = now
            if entry.is_dir:
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                tar.addfile(info)
            else:
                info.size = len(entry.content)
                info.mode = 0o644
                tar.addfile(info, io.BytesIO(entry.content))
    return buf.getvalue()


def entries_from_archive(data: bytes, ignored_dirs: frozenset[str]) -> list[WorkspaceEntry]:
    """Unpack a ``get_archive`` tarball of the workspace root.

    Docker names members after the archived directory (``workspace/...``),
    so the first path component is stripped.
    """
    entries: list[WorkspaceEntry] = []
    with tarfile.open(fileobj=io.BytesIO(data), mode="r") as tar:
        for member in tar:
            parts = PurePosixPath(member.name).parts[1:]
            if not parts or any(part in ignored_dirs for part in parts):
                continue
            path = "/".join(parts)
            if member.isdir():
                entries.append(WorkspaceEntry(path))
            elif member.isfile():
                extracted = tar.extractfile(member)
                entries.append(WorkspaceEntry(path, extracted.read() if extracted else b""))
    return entries


# ── Runtime ──────────────────────────────────────────────────────────────────

class DockerRuntime(ContainerRuntime):
    """Container runtime backed by the local Docker daemon."""

    simulated = False

    def __init__(
        self,
        settings: PlaygroundSettings,
        client: Optional[docker.DockerClient] = None,
    ):
        self.settings = settings
        self._client = client
        # Execs run on their own bounded pool, apart from lifecycle calls
        self._exec_pool = ThreadPoolExecutor(
            max_workers=settings.max_concurrent_execs,
            thread_name_prefix="playground-exec",
        )

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialization of the Docker client."""
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    async def _call(self, fn, *args, executor: Optional[ThreadPoolExecutor] = None, **kwargs):
        """Run a blocking SDK call in a thread and classify its failures."""
        try:
            if executor is None:
                return await asyncio.to_thread(fn, *args, **kwargs)
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(executor, functools.partial(fn, *args, **kwargs))
        except (PlaygroundError, FileNotFoundError):
            raise
        except APIError as exc:
            if exc.is_server_error():
                raise TransientRuntimeError(f"Docker API error: {exc}") from exc
            raise PlaygroundError(f"Docker API error: {exc}") from exc
        except (DockerException, OSError) as exc:
            raise RuntimeUnavailableError(f"Container runtime unreachable: {exc}") from exc

    def _container(self, env: EnvironmentHandle):
        try:
            return self.client.containers.get(env.id)
        except NotFound as exc:
            raise EnvironmentGoneError(env.id) from exc

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def create_environment(
        self,
        session_id: str,
        project_kind: ProjectKind,
        lifetime_seconds: float,
    ) -> RealEnvironment:
        return await self._create_with_retry(session_id, project_kind, lifetime_seconds)

    @retry_async(RUNTIME_RETRY_POLICY)
    async def _create_with_retry(
        self,
        session_id: str,
        project_kind: ProjectKind,
        lifetime_seconds: float,
    ) -> RealEnvironment:
        return await self._call(
            self._create_container, session_id, project_kind, lifetime_seconds
        )

    def _create_container(
        self,
        session_id: str,
        project_kind: ProjectKind,
        lifetime_seconds: float,
    ) -> RealEnvironment:
        """Create volume + container (blocking)."""
        s = self.settings
        client = self.client
        client.ping()

        name = f"{s.container_prefix}{session_id}"
        volume_name = f"{s.volume_prefix}{session_id}"
        labels = {
            MANAGED_LABEL: "true",
            SESSION_LABEL: session_id,
            KIND_LABEL: project_kind.value,
        }

        # A container left over from before a process restart has no registry
        # record anymore; it would only block the name.
        if remove_container_quietly(client, name):
            logger.warning("Removed stale container %s before re-create", name)

        client.volumes.create(name=volume_name, labels=labels)
        try:
            container = client.containers.run(
                s.image_for(project_kind),
                command=["sleep", str(int(lifetime_seconds))],
                name=name,
                detach=True,
                auto_remove=True,
                init=True,
                labels=labels,
                mem_limit=s.memory_limit,
                nano_cpus=int(s.cpu_limit * 1e9),
                pids_limit=s.pids_limit,
                network=s.network,
                ports={f"{project_kind.preview_port}/tcp": (s.publish_host_ip, None)},
                volumes={volume_name: {"bind": WORKSPACE_DIR, "mode": "rw"}},
                working_dir=WORKSPACE_DIR,
                security_opt=["no-new-privileges"],
                environment={"PORT": str(project_kind.preview_port)},
            )
        except Exception:
            remove_volume_quietly(client, volume_name)
            raise

        env = RealEnvironment(
            container_id=container.id,
            container_name=name,
            volume_name=volume_name,
            created_at=parse_docker_timestamp(container.attrs["Created"]),
        )
        logger.info(
            "Container %s created  session=%s  kind=%s  self_remove_after=%ds",
            container.short_id, session_id, project_kind.value, int(lifetime_seconds),
        )
        return env

    async def destroy_environment(self, env: EnvironmentHandle) -> None:
        await self._call(self._destroy, env)

    def _destroy(self, env: RealEnvironment) -> None:
        removed = remove_container_quietly(self.client, env.container_id)
        remove_volume_quietly(self.client, env.volume_name)
        logger.info(
            "Container %s %s", env.container_name, "removed" if removed else "already gone"
        )

    async def environment_exists(self, env: EnvironmentHandle) -> bool:
        def _exists() -> bool:
            try:
                container = self.client.containers.get(env.id)
            except NotFound:
                return False
            return container.status in ("created", "running", "restarting")

        return await self._call(_exists)

    # ── Commands ──────────────────────────────────────────────────────────────

    async def exec(
        self,
        env: EnvironmentHandle,
        command: str,
        *,
        workdir: str = WORKSPACE_DIR,
        timeout: Optional[int] = None,
    ) -> ExecResult:
        return await self._call(
            self._exec, env, command, workdir, timeout, executor=self._exec_pool
        )

    def _exec(
        self,
        env: EnvironmentHandle,
        command: str,
        workdir: str,
        timeout: Optional[int],
    ) -> ExecResult:
        container = self._container(env)
        argv = ["sh", "-c", command]
        if timeout:
            argv = ["timeout", str(timeout), *argv]
        try:
            result = container.exec_run(argv, workdir=workdir, demux=True)
        except APIError as exc:
            # 409: the container stopped between lookup and exec
            if exc.status_code == 409:
                raise EnvironmentGoneError(env.id) from exc
            raise
        stdout, stderr = result.output if result.output else (None, None)
        return ExecResult(
            stdout=(stdout or b"").decode("utf-8", errors="replace"),
            stderr=(stderr or b"").decode("utf-8", errors="replace"),
            exit_code=result.exit_code if result.exit_code is not None else -1,
        )

    async def start_background(
        self,
        env: EnvironmentHandle,
        command: str,
        log_path: str,
        *,
        workdir: str = WORKSPACE_DIR,
    ) -> int:
        script = (
            f"nohup sh -c {shlex.quote(command)} "
            f"> {shlex.quote(log_path)} 2>&1 < /dev/null & echo $!"
        )
        result = await self.exec(env, script, workdir=workdir)
        lines = result.stdout.strip().splitlines()
        if result.exit_code != 0 or not lines or not lines[-1].isdigit():
            raise PlaygroundError(
                "Failed to start background process",
                {"exit_code": result.exit_code, "stderr": result.stderr},
            )
        return int(lines[-1])

    async def stop_process(self, env: EnvironmentHandle, pid: int) -> bool:
        result = await self.exec(env, f"kill {int(pid)}")
        return result.exit_code == 0

    # ── Files ─────────────────────────────────────────────────────────────────

    async def read_file(self, env: EnvironmentHandle, path: str) -> bytes:
        return await self._call(self._read_file, env, path)

    def _read_file(self, env: EnvironmentHandle, path: str) -> bytes:
        container = self._container(env)
        try:
            bits, _ = container.get_archive(path)
        except NotFound as exc:
            raise FileNotFoundError(path) from exc
        with tarfile.open(fileobj=io.BytesIO(b"".join(bits)), mode="r") as tar:
            member = tar.next()
            extracted = tar.extractfile(member) if member is not None else None
            if extracted is None:
                raise FileNotFoundError(path)
            return extracted.read()

    async def write_entries(
        self, env: EnvironmentHandle, entries: list[WorkspaceEntry]
    ) -> None:
        archive = build_archive(entries)

        def _put() -> bool:
            return self._container(env).put_archive(WORKSPACE_DIR, archive)

        if not await self._call(_put):
            raise WorkspaceSyncError(
                "Container rejected workspace archive",
                {"environment_id": env.id, "entries": len(entries)},
            )

    async def read_entries(
        self, env: EnvironmentHandle, ignored_dirs: frozenset[str]
    ) -> list[WorkspaceEntry]:
        def _get() -> bytes:
            bits, _ = self._container(env).get_archive(WORKSPACE_DIR)
            return b"".join(bits)

        data = await self._call(_get)
        return entries_from_archive(data, ignored_dirs)

    # ── Ports ─────────────────────────────────────────────────────────────────

    async def probe_exposed_port(self, env: EnvironmentHandle) -> Optional[int]:
        return await self._call(self._probe, env)

    def _probe(self, env: EnvironmentHandle) -> Optional[int]:
        container = self._container(env)
        container.reload()
        bindings = (container.attrs.get("NetworkSettings") or {}).get("Ports") or {}
        result = container.exec_run(["cat", "/proc/net/tcp", "/proc/net/tcp6"])
        listening = parse_listening_ports((result.output or b"").decode("utf-8", errors="replace"))
        for port_key, hosts in bindings.items():
            container_port = int(port_key.split("/")[0])
            if container_port in listening and hosts:
                return int(hosts[0]["HostPort"])
        return None

    async def close(self) -> None:
        self._exec_pool.shutdown(wait=False, cancel_futures=True)
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
            self._client = None
