"""Aggregation gateway and proxy endpoints.

These endpoints relay requests to third-party geodata providers so the
browser client avoids their CORS restrictions. Every request gets its own
``httpx.AsyncClient`` with the configured per-call timeout; the client is
closed only after all of the request's outbound calls have settled.

Example:
    Waterways for a bounding box, tagged by NHD layer:
        >>> client.post("/waterways", json={
        ...     "minLat": 40.7, "minLon": -74.1, "maxLat": 40.8, "maxLon": -74.0,
        ... }).json()
        {'features': [{'attributes': {...}, 'layerType': 'rivers'}, ...]}

    Proxy a dataset from an allow-listed host:
        >>> client.get("/proxy", params={
        ...     "url": "https://raw.githubusercontent.com/org/repo/main/data.json",
        ... })
"""

from collections.abc import AsyncIterator
from typing import Any

import fastapi
import httpx
from fastapi import responses

from app.core import config
from app.services import aggregation, proxy

router = fastapi.APIRouter(tags=["gateway"])


async def _get_client(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield a request-scoped HTTP client for outbound provider calls."""
    async with httpx.AsyncClient(
        timeout=httpx.Timeout(settings.upstream_timeout_seconds),
        follow_redirects=True,
    ) as client:
        yield client


@router.post("/elevation")
async def elevation(
    payload: Any = fastapi.Body(...),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    client: httpx.AsyncClient = fastapi.Depends(_get_client),  # noqa: B008
) -> Any:
    """Relay ``{locations: [{lat, lon}]}`` to the elevation provider.

    Raises:
        UpstreamError: With the provider's status if it fails.
    """
    locations = aggregation.parse_locations(payload)
    return await aggregation.fetch_elevation(client, settings, locations)


@router.post("/waterways")
async def waterways(
    payload: Any = fastapi.Body(...),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    client: httpx.AsyncClient = fastapi.Depends(_get_client),  # noqa: B008
) -> dict[str, list[dict[str, Any]]]:
    """Merge features from all hydrography layers that answer.

    Failed layers are left out; this endpoint does not fail because of a
    provider.
    """
    bbox = aggregation.parse_bbox(payload)
    return await aggregation.fetch_waterways(client, settings, bbox)


@router.post("/airports")
async def airports(
    payload: Any = fastapi.Body(...),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    client: httpx.AsyncClient = fastapi.Depends(_get_client),  # noqa: B008
) -> dict[str, list[Any]]:
    bbox = aggregation.parse_bbox(payload)
    return await aggregation.fetch_airports(client, settings, bbox)


@router.get("/proxy")
async def proxy_url(
    url: str | None = None,
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    client: httpx.AsyncClient = fastapi.Depends(_get_client),  # noqa: B008
) -> responses.Response:
    """Relay a GET to an allow-listed host.

    JSON bodies are re-emitted as JSON; anything else, including JSON-like
    text that fails to parse, is passed through with the upstream content
    type.

    Redirects are followed only while each hop stays on the allow-list.

    Raises:
        ForbiddenError: If the host, or any redirect target, is not
            allow-listed. No outbound call is made to that host.
    """
    target = proxy.validate_target(url, settings.proxy_allowed_domains)
    result = await proxy.fetch(
        client,
        target,
        settings.proxy_allowed_domains,
        settings.max_proxy_body_bytes,
    )
    if result.is_json:
        return responses.JSONResponse(content=result.data)
    return responses.Response(
        content=result.text,
        media_type=result.content_type or "text/plain",
    )
