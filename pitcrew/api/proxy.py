"""Session reverse proxy.

Serves the public side of ``ProxyRoutingBackend`` routes:
``/session/{session_id}/{service}/{path}`` is forwarded to the registered
private target of that route. HTTP only; upgrade requests are not proxied.
"""

from __future__ import annotations

import httpx
import structlog
from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from pitcrew.api.dependencies import RoutingBackendDep
from pitcrew.config import get_settings
from pitcrew.routing.proxy import ProxyRoutingBackend

logger = structlog.get_logger()

router = APIRouter()

# Hop-by-hop headers are never forwarded
_HOP_BY_HOP = frozenset(
    {
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
)

# Injected in tests (httpx.MockTransport)
_transport: httpx.AsyncBaseTransport | None = None


def set_proxy_transport(transport: httpx.AsyncBaseTransport | None) -> None:
    global _transport
    _transport = transport


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, "details": {}}},
    )


@router.api_route(
    "/session/{session_id}/{service}/{path:path}",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"],
    include_in_schema=False,
)
async def proxy_session(
    session_id: str,
    service: str,
    path: str,
    request: Request,
    routing: RoutingBackendDep,
) -> Response:
    if not isinstance(routing, ProxyRoutingBackend):
        return _error(404, "not_found", "Session routing is not served here")

    rule = await routing.resolve(session_id, service)
    if rule is None:
        return _error(404, "not_found", f"No route for {service} in session {session_id}")
    if not rule.is_registered:
        return _error(503, "target_unavailable", "Sandbox target not registered yet")

    url = f"http://{rule.target_address}:{rule.target_port}/{path}"
    headers = {k: v for k, v in request.headers.items() if k.lower() not in _HOP_BY_HOP}
    body = await request.body()

    try:
        async with httpx.AsyncClient(
            transport=_transport,
            timeout=get_settings().routing.proxy_timeout_seconds,
        ) as client:
            upstream = await client.request(
                request.method,
                url,
                params=request.query_params,
                headers=headers,
                content=body,
            )
    except httpx.TimeoutException:
        logger.warning("proxy.timeout", session_id=session_id, service=service, path=path)
        return _error(504, "timeout", "Sandbox did not answer in time")
    except httpx.RequestError as e:
        logger.warning("proxy.upstream_error", session_id=session_id, service=service, error=str(e))
        return _error(502, "bad_gateway", "Sandbox unreachable")

    response_headers = {
        k: v for k, v in upstream.headers.items() if k.lower() not in _HOP_BY_HOP
    }
    # Body is already decoded by httpx
    response_headers.pop("content-encoding", None)
    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        headers=response_headers,
    )
