from __future__ import annotations

from typing import AsyncIterator

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from .backend import Backend
from .events import log_event
from .orchestrator import Orchestrator
from .settings import settings

UNAVAILABLE_BODY = "Backend unavailable."

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]

# RFC 7230 section 6.1: connection-scoped headers are not forwarded.
HOP_BY_HOP = {
    b"connection",
    b"keep-alive",
    b"proxy-authenticate",
    b"proxy-authorization",
    b"te",
    b"trailer",
    b"transfer-encoding",
    b"upgrade",
}


class NoActiveBackend(Exception):
    pass


def select_backend(orchestrator: Orchestrator) -> Backend:
    """Return the app's active backend.

    Read fresh on every request; there is exactly one candidate, so no
    balancing happens here.
    """
    backend = orchestrator.active
    if backend is None:
        raise NoActiveBackend(f"No active backend for app '{orchestrator.name}'.")
    return backend


def _unavailable() -> Response:
    return PlainTextResponse(UNAVAILABLE_BODY, status_code=503)


def _forward_headers(raw: list[tuple[bytes, bytes]]) -> list[tuple[bytes, bytes]]:
    return [(k, v) for k, v in raw if k.lower() not in HOP_BY_HOP]


def upstream_url(host: str, port: int, request: Request) -> str:
    raw_path = request.scope.get("raw_path") or request.url.path.encode()
    # some servers leave the query string on raw_path
    raw_path = raw_path.split(b"?", 1)[0]
    url = f"http://{host}:{int(port)}{raw_path.decode('latin-1')}"
    query = request.scope.get("query_string", b"")
    if query:
        url += "?" + query.decode("latin-1")
    return url


def create_gateway_app(orchestrator: Orchestrator, client: httpx.AsyncClient | None = None) -> FastAPI:
    """Reverse proxy for one app: everything goes to the active backend.

    Clients only ever see the backend's own response or a 503.
    """
    app = FastAPI(title=f"rainbowd router ({orchestrator.name})", docs_url=None, redoc_url=None, openapi_url=None)
    owns_client = client is None
    upstream = client or httpx.AsyncClient(timeout=settings.proxy_timeout_s, follow_redirects=False)
    bind = orchestrator.app.bind_address

    @app.on_event("shutdown")
    async def _close_client() -> None:
        if owns_client:
            await upstream.aclose()

    @app.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy(path: str, request: Request) -> Response:
        try:
            backend = select_backend(orchestrator)
        except NoActiveBackend:
            return _unavailable()

        has_body = "content-length" in request.headers or "transfer-encoding" in request.headers
        upstream_req = upstream.build_request(
            request.method,
            upstream_url(bind, backend.port, request),
            headers=_forward_headers(request.headers.raw),
            content=request.stream() if has_body else None,
        )
        try:
            resp = await upstream.send(upstream_req, stream=True)
        except httpx.HTTPError as e:
            log_event(
                "WARN",
                f"Can't proxy {request.method} {request.url.path} to port {backend.port}: {type(e).__name__}: {e}",
                app=orchestrator.name,
                backend=backend.id,
            )
            return _unavailable()

        async def _body() -> AsyncIterator[bytes]:
            try:
                async for chunk in resp.aiter_raw():
                    yield chunk
            except httpx.HTTPError as e:
                log_event("WARN", f"Upstream response cut short: {type(e).__name__}: {e}", app=orchestrator.name, backend=backend.id)
            finally:
                await resp.aclose()

        out = StreamingResponse(_body(), status_code=resp.status_code, background=BackgroundTask(resp.aclose))
        out.raw_headers = _forward_headers(resp.headers.raw)
        return out

    return app
