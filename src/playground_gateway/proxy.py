"""Ingress proxy: forwards preview traffic to the service a user runs in a session.

Two addressing forms reach the same upstream:

    /api/playground/preview/<session_id>/<path>   canonical id
    /p/<short_id>/<path>                          short id (last 12 chars)

The session is resolved once at entry. An unknown session gets a synthetic
404; a live session whose preview port is not bound yet (or refuses the
connection) gets a synthetic 503 so the browser can retry.
"""

from __future__ import annotations

import html
import json
import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

import httpx

from .exceptions import PlaygroundError, UpstreamNotReadyError
from .observability import global_metrics, global_tracer
from .provisioner import EnvironmentProvisioner
from .sessions.models import Session

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})
# The body is re-emitted decoded, so its original framing no longer applies
_STRIPPED_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {"content-encoding", "content-length"}
# HEAD carries no body, so the upstream content-length passes through
_STRIPPED_HEAD_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {"content-encoding"}
_STRIPPED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {"host", "content-length"}
_BODYLESS_METHODS = frozenset({"GET", "HEAD"})

_PAGE = """<!DOCTYPE html>
<html>
<head><title>{title}</title>{refresh}</head>
<body style="font-family: sans-serif; text-align: center; padding-top: 4em;">
<h1>{title}</h1>
<p>{message}</p>
</body>
</html>
"""


@dataclass
class ProxyResponse:
    status_code: int
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    reason_phrase: str = ""


def _wants_json(headers: Mapping[str, str]) -> bool:
    accept = next((v for k, v in headers.items() if k.lower() == "accept"), "")
    return "application/json" in accept and "text/html" not in accept


def _synthetic(
    status_code: int,
    title: str,
    message: str,
    headers: Mapping[str, str],
    *,
    retry: bool = False,
) -> ProxyResponse:
    if _wants_json(headers):
        body = json.dumps({"error": title, "message": message}).encode()
        content_type = "application/json"
    else:
        refresh = '<meta http-equiv="refresh" content="2">' if retry else ""
        body = _PAGE.format(
            title=html.escape(title), message=html.escape(message), refresh=refresh
        ).encode()
        content_type = "text/html; charset=utf-8"
    out = [("content-type", content_type), ("cache-control", "no-store")]
    if retry:
        out.append(("retry-after", "2"))
    return ProxyResponse(status_code, out, body, title)


class IngressProxy:
    """Reverse proxy from the gateway to session preview ports."""

    def __init__(
        self,
        provisioner: EnvironmentProvisioner,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        upstream_host: str = "localhost",
    ):
        self.provisioner = provisioner
        self.upstream_host = upstream_host
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=5.0),
            follow_redirects=False,
        )

    async def handle(
        self,
        method: str,
        token: str,
        sub_path: str,
        query: str,
        headers: Mapping[str, str],
        body: bytes = b"",
    ) -> ProxyResponse:
        session = self.provisioner.registry.resolve(token)
        if session is None:
            self._count("not_found")
            return _synthetic(
                404, "Session not found",
                "This playground session does not exist or has expired.", headers,
            )

        try:
            port = await self._ready_port(session)
            response = await self._forward(session, port, method, sub_path, query, headers, body)
        except UpstreamNotReadyError as exc:
            self._count("not_ready")
            logger.debug("Preview for session %s not ready: %s", session.id, exc.message)
            return _synthetic(
                503, "Service not ready",
                "The preview server is starting up. This page will retry shortly.",
                headers, retry=True,
            )

        if session.status.is_live:
            session.touch(self.provisioner.clock())
        self._count("forwarded")
        return response

    async def _ready_port(self, session: Session) -> int:
        if not session.status.is_live:
            raise UpstreamNotReadyError(f"Session {session.id} is {session.status.value}")
        try:
            port = await self.provisioner.refresh_exposed_port(session)
        except PlaygroundError as exc:
            # A teardown racing the request lands here
            raise UpstreamNotReadyError(exc.message) from exc
        if port is None:
            raise UpstreamNotReadyError(f"Session {session.id} has no listening port yet")
        return port

    async def _forward(
        self,
        session: Session,
        port: int,
        method: str,
        sub_path: str,
        query: str,
        headers: Mapping[str, str],
        body: bytes,
    ) -> ProxyResponse:
        method = method.upper()
        url = f"http://{self.upstream_host}:{port}/{sub_path.lstrip('/')}"
        if query:
            url = f"{url}?{query}"

        forward_headers = [
            (k, v) for k, v in headers.items() if k.lower() not in _STRIPPED_REQUEST_HEADERS
        ]
        forward_headers.append(("host", f"localhost:{port}"))
        content = None if method in _BODYLESS_METHODS else body

        with global_tracer.start_span(
            "playground.proxy", {"session.id": session.id, "http.method": method}
        ):
            try:
                upstream = await self._client.request(
                    method, url, headers=forward_headers, content=content
                )
            except httpx.TransportError as exc:
                raise UpstreamNotReadyError(
                    f"Upstream {self.upstream_host}:{port} unavailable: {exc}"
                ) from exc

        stripped = (
            _STRIPPED_HEAD_RESPONSE_HEADERS if method == "HEAD" else _STRIPPED_RESPONSE_HEADERS
        )
        return ProxyResponse(
            status_code=upstream.status_code,
            headers=[
                (k, v) for k, v in upstream.headers.multi_items()
                if k.lower() not in stripped
            ],
            body=b"" if method == "HEAD" else upstream.content,
            reason_phrase=upstream.reason_phrase,
        )

    def _count(self, outcome: str) -> None:
        global_metrics.increment_counter("playground.proxy.requests", tags={"outcome": outcome})

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
