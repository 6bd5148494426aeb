"""Request / response schemas for the playground REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from playground_gateway.sessions.models import ProjectKind
from playground_gateway.workspace import FileNode


# ── Container ────────────────────────────────────────────────────────────────

class CreateContainerRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=128)
    project_kind: ProjectKind = ProjectKind.NODE


class CreateContainerResponse(BaseModel):
    environment_id: str
    existing: bool
    simulated: bool
    short_id: str
    expires_at: datetime


class ExtendResponse(BaseModel):
    extended: bool
    expires_at: Optional[datetime] = None


class OkResponse(BaseModel):
    ok: bool = True


class ProcessInfo(BaseModel):
    pid: int
    command: str
    log_path: str
    started_at: datetime


class ContainerStatus(BaseModel):
    exists: bool = True
    session_id: str
    short_id: str
    environment_id: Optional[str] = None
    simulated: bool
    project_kind: ProjectKind
    status: str
    created_at: datetime
    last_accessed_at: datetime
    expires_at: datetime
    extended: bool
    exposed_port: Optional[int] = None
    processes: list[ProcessInfo] = []


class SessionListResponse(BaseModel):
    sessions: list[ContainerStatus]
    total: int


# ── Files ────────────────────────────────────────────────────────────────────

class SyncRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=128)
    files: list[FileNode]


class SyncResponse(BaseModel):
    ok: bool = True
    files_written: int = 0


class FilesResponse(BaseModel):
    files: list[FileNode]


# ── Commands ─────────────────────────────────────────────────────────────────

class ExecRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=128)
    command: str
    background: bool = False
    timeout: Optional[int] = Field(default=None, ge=1)


class ExecResponse(BaseModel):
    stdout: str
    stderr: str
    exit_code: int
    background: bool = False
    pid: Optional[int] = None
    log_path: Optional[str] = None


class InstallRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=128)
    packages: list[str] = Field(..., max_length=50)


class InstallResponse(BaseModel):
    ok: bool
    stdout: str
    stderr: str
    exit_code: int


class LogResponse(BaseModel):
    pid: int
    content: str


# ── Health ───────────────────────────────────────────────────────────────────

class HealthResponse(BaseModel):
    status: str
    sessions: int
    simulated_mode: bool
    uptime_seconds: float = 0.0
