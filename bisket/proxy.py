"""Reverse proxy for application traffic.

Every request on the proxy listener is forwarded, unchanged apart from
hop-by-hop headers, to the instance chosen by the :class:`~bisket.gateway.Router`.
Request and response bodies are streamed.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask

from .errors import NoBackendAvailable
from .gateway import Router
from .settings import settings

logger = logging.getLogger(__name__)

VERSION_HEADER = "x-bisket-version"
HOP_BY_HOP = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}
METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def _forward_headers(request: Request) -> list[tuple[bytes, bytes]]:
    headers = [(k, v) for k, v in request.headers.raw if k.decode("latin-1").lower() not in HOP_BY_HOP]
    if request.client is not None:
        prior = request.headers.get("x-forwarded-for")
        forwarded = f"{prior}, {request.client.host}" if prior else request.client.host
        headers = [(k, v) for k, v in headers if k.lower() != b"x-forwarded-for"]
        headers.append((b"x-forwarded-for", forwarded.encode("latin-1")))
    if "host" in request.headers and "x-forwarded-host" not in request.headers:
        headers.append((b"x-forwarded-host", request.headers["host"].encode("latin-1")))
    return headers


def _has_body(request: Request) -> bool:
    return "content-length" in request.headers or "transfer-encoding" in request.headers


def create_proxy_app(
    router: Router,
    timeout_s: float = settings.gateway_timeout_s,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    client = httpx.AsyncClient(timeout=timeout_s, follow_redirects=False, transport=transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await client.aclose()

    app = FastAPI(title="bisket proxy", lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.router = router

    @app.api_route("/{path:path}", methods=METHODS)
    async def forward(request: Request, path: str):
        try:
            inst = router.select(request.headers.get(VERSION_HEADER))
            base = inst.proxy_target()
        except NoBackendAvailable as e:
            logger.warning("Rejecting %s %s: %s", request.method, request.url.path, e)
            return PlainTextResponse(str(e), status_code=503)

        url = f"{base}{request.url.path}"
        if request.url.query:
            url = f"{url}?{request.url.query}"
        upstream = client.build_request(
            request.method,
            url,
            headers=_forward_headers(request),
            content=request.stream() if _has_body(request) else None,
        )
        try:
            resp = await client.send(upstream, stream=True)
        except httpx.TransportError as e:
            router.invalidate(inst)
            logger.error("Upstream %s failed for %s %s: %s", inst.describe(), request.method, url, e)
            return PlainTextResponse(f"Bad gateway: {type(e).__name__}", status_code=502)

        logger.debug("%s %s -> %s [%d]", request.method, request.url.path, inst.describe(), resp.status_code)
        response = StreamingResponse(
            resp.aiter_raw(),
            status_code=resp.status_code,
            background=BackgroundTask(resp.aclose),
        )
        response.raw_headers = [
            (k.lower(), v) for k, v in resp.headers.raw if k.decode("latin-1").lower() not in HOP_BY_HOP
        ]
        return response

    return app
