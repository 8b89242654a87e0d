"""Range-capable streaming proxy in front of the video origin."""

import logging
from collections.abc import Callable

import httpx
from fastapi import HTTPException, status
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from pulse.config import settings

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], httpx.AsyncClient]

_MIRRORED_HEADERS = ("content-type", "content-length", "content-range", "etag", "last-modified")


def default_client_factory() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.video_origin_timeout_seconds)


def get_origin_client_factory() -> ClientFactory:
    """Dependency hook; tests swap in a client on ``httpx.MockTransport``."""
    return default_client_factory


async def proxy_video(
    url: str,
    range_header: str | None,
    client_factory: ClientFactory = default_client_factory,
    extra_headers: dict[str, str] | None = None,
) -> StreamingResponse:
    """Stream ``url`` from the origin, forwarding ``Range`` and mirroring 206/Content-Range."""
    client = client_factory()
    request_headers = {"Range": range_header} if range_header else {}
    try:
        upstream = await client.send(client.build_request("GET", url, headers=request_headers), stream=True)
    except httpx.HTTPError as e:
        await client.aclose()
        logger.warning("Video origin request failed for %s: %s", url, e)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Video origin unavailable") from e

    if upstream.status_code not in (status.HTTP_200_OK, status.HTTP_206_PARTIAL_CONTENT):
        await upstream.aclose()
        await client.aclose()
        if upstream.status_code == status.HTTP_404_NOT_FOUND:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video not found")
        if upstream.status_code == status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE:
            raise HTTPException(
                status_code=status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE,
                detail="Requested range not satisfiable",
            )
        logger.warning("Video origin returned %s for %s", upstream.status_code, url)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Video origin error")

    headers = {name: upstream.headers[name] for name in _MIRRORED_HEADERS if name in upstream.headers}
    headers["Accept-Ranges"] = "bytes"
    headers.update(extra_headers or {})

    async def _close() -> None:
        await upstream.aclose()
        await client.aclose()

    return StreamingResponse(
        upstream.aiter_raw(),
        status_code=upstream.status_code,
        headers=headers,
        background=BackgroundTask(_close),
    )
