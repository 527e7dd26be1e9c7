import logging
from typing import Optional

import httpx
from fastapi import Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from audit_proxy.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}


def upstream_request_headers(request: Request) -> dict:
    headers = {k: v for k, v in request.headers.items() if k.lower() not in HOP_BY_HOP_HEADERS}
    headers.pop("host", None)
    # recomputed by httpx for the body actually sent
    headers.pop("content-length", None)
    return headers


def client_response_headers(upstream: httpx.Response) -> list:
    return [(k.lower(), v) for k, v in upstream.headers.raw if k.decode("latin-1").lower() not in HOP_BY_HOP_HEADERS]


def raw_request_path(request: Request) -> str:
    """The request path as the client sent it, percent-encoding intact."""
    raw = request.scope.get("raw_path")
    if not raw:
        return request.url.path
    return raw.decode("latin-1").split("?", 1)[0]


def has_body(request: Request) -> bool:
    return "content-length" in request.headers or "transfer-encoding" in request.headers


async def forward_request(
    client: httpx.AsyncClient,
    request: Request,
    target_url: str,
    body: Optional[bytes] = None,
) -> StreamingResponse:
    """
    Relay ``request`` to ``target_url`` and stream the upstream reply back as-is.

    ``body`` is the already-buffered request body of an audited request; when
    it is None the original body stream is relayed without buffering.
    """
    if request.url.query:
        target_url = f"{target_url}?{request.url.query}"

    if body is not None:
        content = body
    elif has_body(request):
        content = request.stream()
    else:
        content = None

    upstream_req = client.build_request(
        method=request.method,
        url=target_url,
        headers=upstream_request_headers(request),
        content=content,
    )
    try:
        upstream = await client.send(upstream_req, stream=True)
    except httpx.HTTPError as e:
        logger.error("upstream %s %s failed: %s: %s", request.method, target_url, type(e).__name__, e)
        raise UpstreamUnavailable("Upstream service unavailable") from e

    logger.info("%s %s -> %s", request.method, target_url, upstream.status_code)

    # raw bytes keep content-encoding valid; chunks go out as they arrive
    response = StreamingResponse(
        upstream.aiter_raw(),
        status_code=upstream.status_code,
        background=BackgroundTask(upstream.aclose),
    )
    response.raw_headers = client_response_headers(upstream)
    return response
