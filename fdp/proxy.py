from __future__ import annotations

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.concurrency import run_in_threadpool

from .settings import settings


HOP_BY_HOP = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
}
METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def create_proxy_app(
    backend_url: str,
    health_path: str = "/health",
    required_header: str | None = None,
    connect_timeout_s: float = 1.0,
    read_timeout_s: float = 10.0,
    health_timeout_s: float = 2.0,
    client: httpx.Client | None = None,
    probe_timeout_s: float | None = None,
) -> FastAPI:
    """Reverse proxy in front of the backend.

    The health route is forwarded with its own short timeout and is exempt
    from required_header. An unreachable backend yields 502, a slow one 504.
    When probe_timeout_s (the load balancer's) is given, health_timeout_s must
    be below it.
    """
    if probe_timeout_s is not None and health_timeout_s >= probe_timeout_s:
        raise ValueError(
            f"Proxy health timeout ({health_timeout_s}s) must be below the health check timeout ({probe_timeout_s}s)."
        )
    backend = backend_url.rstrip("/")
    http = client or httpx.Client(follow_redirects=False)
    content_timeout = httpx.Timeout(read_timeout_s, connect=connect_timeout_s)
    health_timeout = httpx.Timeout(health_timeout_s, connect=min(connect_timeout_s, health_timeout_s))

    app = FastAPI(title="FDP reverse proxy", docs_url=None, redoc_url=None, openapi_url=None)

    def _forward(method: str, request: Request, body: bytes, timeout: httpx.Timeout) -> Response:
        headers = {k: v for k, v in request.headers.items() if k.lower() not in HOP_BY_HOP}
        if request.client:
            headers["x-forwarded-for"] = request.client.host
        try:
            resp = http.request(
                method,
                f"{backend}{request.url.path}",
                params=request.query_params.multi_items(),
                headers=headers,
                content=body,
                timeout=timeout,
            )
        except httpx.TimeoutException:
            return PlainTextResponse("Gateway Timeout", status_code=504)
        except httpx.HTTPError:
            return PlainTextResponse("Bad Gateway", status_code=502)
        out_headers = {
            k: v for k, v in resp.headers.items() if k.lower() not in HOP_BY_HOP and k.lower() != "content-encoding"
        }
        return Response(content=resp.content, status_code=resp.status_code, headers=out_headers)

    @app.get(health_path)
    async def health(request: Request) -> Response:
        return await run_in_threadpool(_forward, "GET", request, b"", health_timeout)

    @app.api_route("/{path:path}", methods=METHODS)
    async def forward(path: str, request: Request) -> Response:
        if required_header and required_header.lower() not in request.headers:
            return JSONResponse({"detail": f"Missing required header: {required_header}"}, status_code=400)
        body = await request.body()
        return await run_in_threadpool(_forward, request.method, request, body, content_timeout)

    return app


app = create_proxy_app(
    settings.backend_url,
    required_header=settings.proxy_required_header,
    connect_timeout_s=settings.proxy_connect_timeout_s,
    read_timeout_s=settings.proxy_read_timeout_s,
    health_timeout_s=settings.proxy_health_timeout_s,
    probe_timeout_s=settings.health_check_timeout_s,
)
