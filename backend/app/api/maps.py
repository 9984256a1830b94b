"""Saved map snapshot endpoints.

``/saveMap`` takes the raw request body rather than parsed JSON because
snapshots are large and usually gzip-compressed by the client. The body is
read against ``max_map_body_bytes`` and decompressed against
``max_map_decompressed_bytes`` before it is parsed.

Example:
    Save a gzip-compressed snapshot and look it up again:
        >>> body = gzip.compress(json.dumps({
        ...     "lat": 40.71, "lon": -74.01, "gridWidth": 2,
        ...     "gridHeight": 2, "tiles": [...], "landUseInfo": {},
        ... }).encode())
        >>> client.post(
        ...     "/saveMap",
        ...     content=body,
        ...     headers={"Content-Encoding": "gzip"},
        ... ).json()
        {'success': True}
        >>> client.get("/checkMap", params={"lat": 40.71, "lon": -74.01})
"""

from typing import Any

import fastapi
from fastapi import concurrency

from app.core import config
from app.db import database
from app.services import ingestion, map_snapshots

router = fastapi.APIRouter(tags=["maps"])


def _get_repo(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> database.MapRepositoryProtocol:
    """Resolve the map snapshot repository dependency."""
    return database.get_map_repository(settings)


@router.get("/checkMap")
def check_map(
    lat: str | None = None,
    lon: str | None = None,
    repo: database.MapRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> dict[str, Any]:
    """Report whether a snapshot exists at exactly ``(lat, lon)``.

    Coordinates are matched exactly; no rounding or tolerance is applied.

    Raises:
        ValidationError: If either coordinate is not numeric.
    """
    snapshot = map_snapshots.check_map(repo, lat, lon)
    if snapshot is None:
        return {"exists": False}
    return {"exists": True, "mapData": map_snapshots.snapshot_to_payload(snapshot)}


@router.post("/saveMap")
async def save_map(
    request: fastapi.Request,
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    repo: database.MapRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> dict[str, bool]:
    """Store a full snapshot, replacing any at the same coordinates.

    Args:
        request: Raw request; the body may be gzip-encoded.
        settings: Application settings (injected via FastAPI Depends).
        repo: Map repository (injected via FastAPI Depends).

    Returns:
        ``{"success": True}`` once the snapshot is stored.

    Raises:
        PayloadTooLargeError: If the raw or decompressed body is too big.
        ValidationError: If the body cannot be decoded or a required field
            is missing.
    """
    raw = await ingestion.read_limited(
        request.stream(),
        settings.max_map_body_bytes,
        request.headers.get("content-length"),
    )
    payload = ingestion.decode_json_body(
        raw,
        request.headers.get("content-encoding"),
        settings.max_map_decompressed_bytes,
    )
    await concurrency.run_in_threadpool(map_snapshots.save_map, repo, payload)
    return {"success": True}
