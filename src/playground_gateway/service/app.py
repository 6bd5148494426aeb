"""FastAPI application for the playground gateway.

Usage::

    uvicorn playground_gateway.service.app:app --host 0.0.0.0 --port 8080 --workers 1

NOTE: Must run with ``--workers 1``: sessions, timers and the preview
routing table are in-process asyncio state. Containers left behind by a
crashed worker are collected by ``playground-reaper``.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from playground_gateway.command_gateway import CommandGateway
from playground_gateway.config import PlaygroundSettings
from playground_gateway.exceptions import PlaygroundError, RateLimitExceededError
from playground_gateway.lifetime import LifetimeGuardian, LifetimePolicy
from playground_gateway.limiter import AdmissionLimiter, RateLimitStore, build_rate_limit_store
from playground_gateway.logger import setup_logging
from playground_gateway.observability import configure_opentelemetry, shutdown_opentelemetry
from playground_gateway.provisioner import EnvironmentProvisioner
from playground_gateway.proxy import IngressProxy
from playground_gateway.runtime import ContainerRuntime, DockerRuntime, SimulatedRuntime
from playground_gateway.sessions import SessionRegistry
from playground_gateway.workspace import WorkspaceSynchronizer

from .routes import health_router, router, short_router

logger = logging.getLogger(__name__)


# ── Exception handlers ───────────────────────────────────────────────────────

async def _rate_limited(request: Request, exc: RateLimitExceededError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "retry_after": exc.retry_after, "limit": exc.limit},
        headers={"Retry-After": str(exc.retry_after)},
    )


async def _playground_error(request: Request, exc: PlaygroundError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "details": exc.details},
    )


async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled error on %s %s: %s", request.method, request.url.path, exc, exc_info=exc
    )
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# ── App factory ──────────────────────────────────────────────────────────────

def create_app(
    settings: Optional[PlaygroundSettings] = None,
    *,
    runtime: Optional[ContainerRuntime] = None,
    proxy_client: Optional[httpx.AsyncClient] = None,
    rate_limit_store: Optional[RateLimitStore] = None,
) -> FastAPI:
    """Build the application. Arguments override the defaults (used by tests)."""
    settings = settings or PlaygroundSettings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Wire every component onto ``app.state``; tear it all down on shutdown."""
        configure_opentelemetry("playground-gateway", settings.otlp_endpoint or None)

        policy = LifetimePolicy.from_settings(settings)
        registry = SessionRegistry()
        container_runtime = runtime if runtime is not None else DockerRuntime(settings)
        simulated_runtime = SimulatedRuntime() if settings.allow_simulation else None
        provisioner = EnvironmentProvisioner(
            registry, container_runtime, policy, simulated_runtime=simulated_runtime,
        )
        guardian = LifetimeGuardian(provisioner, policy)
        limiter = AdmissionLimiter(
            settings.rate_limit_requests,
            settings.rate_limit_window_seconds,
            rate_limit_store
            if rate_limit_store is not None
            else build_rate_limit_store(settings),
        )
        commands = CommandGateway(
            provisioner,
            default_timeout=settings.exec_timeout_seconds,
            max_timeout=settings.max_exec_timeout_seconds,
            max_command_length=settings.max_command_length,
            port_watch_seconds=settings.port_watch_seconds,
            port_poll_interval=settings.port_poll_interval_seconds,
        )
        proxy = IngressProxy(
            provisioner,
            client=proxy_client,
            timeout=settings.proxy_timeout_seconds,
            upstream_host=settings.upstream_host,
        )

        app.state.settings = settings
        app.state.registry = registry
        app.state.runtime = container_runtime
        app.state.provisioner = provisioner
        app.state.guardian = guardian
        app.state.limiter = limiter
        app.state.commands = commands
        app.state.workspace = WorkspaceSynchronizer(provisioner)
        app.state.proxy = proxy
        app.state.start_time = time.monotonic()

        await guardian.start()
        await limiter.start()
        logger.info(
            "Playground gateway ready  ceiling=%.0fs  grace=%.0fs  sweep=%.0fs  simulation=%s",
            policy.ceiling_seconds, policy.grace_seconds,
            policy.sweep_interval_seconds, settings.allow_simulation,
        )

        yield

        logger.info("Shutting down playground gateway  sessions=%d", len(registry))
        await guardian.stop()
        await limiter.stop()
        await commands.close()
        await provisioner.shutdown()
        await proxy.aclose()
        await container_runtime.close()
        if simulated_runtime is not None:
            await simulated_runtime.close()
        shutdown_opentelemetry()
        logger.info("Playground gateway stopped")

    app = FastAPI(
        title="Playground Gateway",
        version="0.1.0",
        description=(
            "Short-lived, isolated code playgrounds: per-session containers, "
            "file sync, command execution and preview proxying."
        ),
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RateLimitExceededError, _rate_limited)
    app.add_exception_handler(PlaygroundError, _playground_error)
    app.add_exception_handler(Exception, _unhandled_error)

    app.include_router(router)
    app.include_router(short_router)
    app.include_router(health_router)

    FastAPIInstrumentor.instrument_app(app)
    return app


def main() -> None:
    import uvicorn

    settings = PlaygroundSettings()
    setup_logging(settings.log_level)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        workers=1,
        log_config=None,
    )


# ── Module-level app (for `uvicorn playground_gateway.service.app:app`) ──────

app = create_app()


if __name__ == "__main__":
    main()
