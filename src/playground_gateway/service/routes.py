"""REST endpoints for the playground gateway.

Playground endpoints are prefixed with ``/api/playground``. Preview traffic
is also reachable at ``/p/<short_id>/...`` for shorter links.
"""

from __future__ import annotations

import logging
import time
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse

from playground_gateway.limiter import client_key_from
from playground_gateway.proxy import ProxyResponse

from .schemas import (
    ContainerStatus,
    CreateContainerRequest,
    CreateContainerResponse,
    ExecRequest,
    ExecResponse,
    ExtendResponse,
    FilesResponse,
    HealthResponse,
    InstallRequest,
    InstallResponse,
    LogResponse,
    OkResponse,
    SessionListResponse,
    SyncRequest,
    SyncResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/playground", tags=["playground"])
short_router = APIRouter(tags=["preview"])
health_router = APIRouter(tags=["health"])

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


# ── Rate limit dependency ────────────────────────────────────────────────────

async def _enforce_rate_limit(request: Request) -> None:
    """Count the request against the caller's window; 429 once it is used up."""
    limiter = request.app.state.limiter
    await limiter.check(client_key_from(request))


RateLimited = Annotated[None, Depends(_enforce_rate_limit)]


# ── Container lifecycle ──────────────────────────────────────────────────────

@router.post("/container", response_model=CreateContainerResponse)
async def create_container(body: CreateContainerRequest, request: Request):
    """Create (or return the existing) environment for a session."""
    provisioner = request.app.state.provisioner
    result = await provisioner.create(body.session_id, body.project_kind)
    session = result.session
    return CreateContainerResponse(
        environment_id=session.environment_id,
        existing=result.existing,
        simulated=session.simulated,
        short_id=session.short_id,
        expires_at=session.deadline,
    )


@router.patch("/container/{session_id}/extend", response_model=ExtendResponse)
async def extend_container(session_id: str, request: Request):
    provisioner = request.app.state.provisioner
    extended = await provisioner.extend_lifetime(session_id)
    session = provisioner.get(session_id)
    return ExtendResponse(
        extended=extended,
        expires_at=session.deadline if session is not None else None,
    )


@router.delete("/container/{session_id}", response_model=OkResponse)
async def destroy_container(session_id: str, request: Request):
    """Destroy a session and its environment. Unknown ids succeed too."""
    await request.app.state.provisioner.destroy(session_id)
    return OkResponse()


@router.get("/container/{session_id}", response_model=ContainerStatus)
async def container_status(session_id: str, request: Request):
    status = request.app.state.provisioner.status(session_id)
    if status is None:
        return JSONResponse(status_code=404, content={"exists": False})
    return ContainerStatus(**status)


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(request: Request):
    sessions = request.app.state.provisioner.list_sessions()
    return SessionListResponse(
        sessions=[ContainerStatus(**s.to_dict()) for s in sessions],
        total=len(sessions),
    )


# ── Files ────────────────────────────────────────────────────────────────────

@router.post("/sync", response_model=SyncResponse)
async def sync_files(body: SyncRequest, request: Request):
    written = await request.app.state.workspace.write_tree(body.session_id, body.files)
    return SyncResponse(files_written=written)


@router.get("/files", response_model=FilesResponse)
async def read_files(request: Request, session_id: str = Query(..., min_length=1)):
    files = await request.app.state.workspace.read_tree(session_id)
    return FilesResponse(files=files)


# ── Commands ─────────────────────────────────────────────────────────────────

@router.post("/exec", response_model=ExecResponse)
async def exec_command(body: ExecRequest, request: Request, _: RateLimited):
    """Run a shell command in the session's workspace."""
    result = await request.app.state.commands.exec(
        body.session_id, body.command, background=body.background, timeout=body.timeout,
    )
    return ExecResponse(**result.to_dict())


@router.post("/install", response_model=InstallResponse)
async def install_packages(body: InstallRequest, request: Request):
    result = await request.app.state.commands.install(body.session_id, body.packages)
    return InstallResponse(
        ok=result.exit_code == 0,
        stdout=result.stdout,
        stderr=result.stderr,
        exit_code=result.exit_code,
    )


@router.get("/logs/{session_id}/{pid}", response_model=LogResponse)
async def read_log(session_id: str, pid: int, request: Request):
    content = await request.app.state.commands.read_log(session_id, pid)
    return LogResponse(pid=pid, content=content)


@router.delete("/logs/{session_id}/{pid}", response_model=OkResponse)
async def stop_process(session_id: str, pid: int, request: Request):
    stopped = await request.app.state.commands.stop_process(session_id, pid)
    return OkResponse(ok=stopped)


# ── Preview proxy ────────────────────────────────────────────────────────────

async def _proxy(request: Request, token: str, path: str) -> Response:
    body = await request.body()
    result: ProxyResponse = await request.app.state.proxy.handle(
        request.method,
        token,
        path,
        request.url.query,
        request.headers,
        body,
    )
    response = Response(content=result.body, status_code=result.status_code)
    for key, value in result.headers:
        if key.lower() == "content-length":
            response.headers[key] = value
        else:
            response.headers.append(key, value)
    return response


@router.api_route("/preview/{session_id}", methods=PROXY_METHODS, include_in_schema=False)
@router.api_route("/preview/{session_id}/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def preview(session_id: str, request: Request, path: str = ""):
    return await _proxy(request, session_id, path)


@short_router.api_route("/p/{short_id}", methods=PROXY_METHODS, include_in_schema=False)
@short_router.api_route("/p/{short_id}/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def preview_short(short_id: str, request: Request, path: str = ""):
    return await _proxy(request, short_id, path)


# ── Health ───────────────────────────────────────────────────────────────────

@health_router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    """Liveness probe."""
    provisioner = request.app.state.provisioner
    sessions = provisioner.list_sessions()
    simulated_mode = request.app.state.runtime.simulated or any(s.simulated for s in sessions)
    return HealthResponse(
        status="degraded" if simulated_mode else "healthy",
        sessions=len(sessions),
        simulated_mode=simulated_mode,
        uptime_seconds=round(time.monotonic() - request.app.state.start_time, 1),
    )
