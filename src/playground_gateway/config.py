"""Environment-based configuration for the playground gateway.

All settings are read from environment variables with the ``PLAYGROUND_``
prefix (e.g. ``PLAYGROUND_CEILING_SECONDS=1800``). The reaper reads the same
settings so every lifetime layer agrees on the ceiling and grace values.
"""

from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from playground_gateway.sessions.models import ProjectKind


class PlaygroundSettings(BaseSettings):
    """Playground gateway configuration."""

    # ── Container images ─────────────────────────────────────────────────
    node_image: str = "node:20-alpine"
    python_image: str = "python:3.12-alpine"
    static_image: str = "python:3.12-alpine"

    # ── Naming (the reaper matches on these) ─────────────────────────────
    container_prefix: str = "playground-env-"
    volume_prefix: str = "playground-vol-"

    # ── Container resources ──────────────────────────────────────────────
    memory_limit: str = "512m"
    cpu_limit: float = 0.5
    pids_limit: int = 256
    network: str = "bridge"
    publish_host_ip: str = "127.0.0.1"

    # ── Lifetime (shared by timers, sweep, reaper, self-removal) ─────────
    ceiling_seconds: float = 30 * 60
    grace_seconds: float = 10 * 60
    sweep_interval_seconds: float = 5 * 60
    idle_after_seconds: float = 5 * 60

    # ── Admission limiter ────────────────────────────────────────────────
    rate_limit_requests: int = 10
    rate_limit_window_seconds: float = 60
    rate_limit_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"

    # ── Command execution ────────────────────────────────────────────────
    exec_timeout_seconds: int = 60
    max_exec_timeout_seconds: int = 300
    max_concurrent_execs: int = 8
    max_command_length: int = 10_000
    port_watch_seconds: float = 60
    port_poll_interval_seconds: float = 1.0

    # ── Proxy ────────────────────────────────────────────────────────────
    proxy_timeout_seconds: float = 30.0
    upstream_host: str = "localhost"

    # ── Runtime fallback ─────────────────────────────────────────────────
    allow_simulation: bool = True

    # ── Observability ────────────────────────────────────────────────────
    log_level: str = "INFO"
    otlp_endpoint: str = ""

    # ── Server ───────────────────────────────────────────────────────────
    host: str = "0.0.0.0"
    port: int = 8080

    model_config = SettingsConfigDict(
        env_prefix="PLAYGROUND_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def image_for(self, kind: ProjectKind) -> str:
        if kind is ProjectKind.PYTHON:
            return self.python_image
        if kind is ProjectKind.STATIC:
            return self.static_image
        return self.node_image
