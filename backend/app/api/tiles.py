"""Tile cache endpoints.

This module exposes the crowd-sourced tile cache: single and batch tile
lookups and saves, the nearest-tile search, the initial land use lookup
for a set of boxes, and the administrative wipe. Handlers are synchronous
so FastAPI runs them in its threadpool while they wait on the bounded
database pool.

Example:
    Save a tile, then read it back:
        >>> client.post("/saveTile", json={
        ...     "id": "40.7100_-74.0100", "minLat": 40.71, "minLon": -74.01,
        ...     "maxLat": 40.72, "maxLon": -74.0,
        ...     "landuseType": "residential", "landUseData": {"elements": []},
        ... }).json()
        {'success': True}
        >>> client.get("/getTile", params={"id": "40.7100_-74.0100"}).json()
        {'exists': True, 'tile': {...}}

    Batch lookup returns a mapping keyed by id:
        >>> client.post("/getTilesBatch", json={"tileIds": ["a", "b"]}).json()
        {'tiles': {'a': {...}}}
"""

from typing import Any

import fastapi

from app.core import config
from app.db import database
from app.services import tile_cache

router = fastapi.APIRouter(tags=["tiles"])


def _get_repo(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> database.TileRepositoryProtocol:
    """Resolve the tile repository dependency.

    Args:
        settings: Application settings (injected via FastAPI Depends).

    Returns:
        TileRepositoryProtocol implementation
            (PostgresTileRepository in production).
    """
    return database.get_tile_repository(settings)


@router.get("/closestBbox")
def closest_bbox(
    lat: str | None = None,
    lon: str | None = None,
    repo: database.TileRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> Any:
    """Return the stored tile nearest to ``(lat, lon)``.

    Nearness is the squared degree distance to each tile's south-west
    corner, computed over every stored tile. An empty store yields ``[]``.

    Args:
        lat: Query latitude in degrees.
        lon: Query longitude in degrees.
        repo: Tile repository (injected via FastAPI Depends).

    Returns:
        A one-element list holding the nearest tile with its ``distance``,
        or an empty list.

    Raises:
        ValidationError: If either coordinate is not numeric.
    """
    found = tile_cache.closest_tile(repo, lat, lon)
    if found is None:
        return []
    tile, distance = found
    return [{**tile_cache.tile_to_payload(tile), "distance": distance}]


@router.post("/initialBox")
def initial_box(
    boxes: Any = fastapi.Body(...),  # noqa: B008
    repo: database.TileRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> list[dict[str, Any]]:
    """Return land use data for each requested ``{id}``, in request order.

    Raises:
        NotFoundError: If any id has no stored tile; nothing is returned
            for the other ids in that case.
    """
    return tile_cache.initial_boxes(repo, boxes)


@router.post("/saveTile")
def save_tile(
    payload: Any = fastapi.Body(...),  # noqa: B008
    repo: database.TileRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> dict[str, bool]:
    """Upsert one tile.

    Raises:
        ValidationError: If any of ``id, minLat, minLon, maxLat, maxLon,
            landuseType, landUseData`` is missing.
    """
    tile_cache.save_tile(repo, payload)
    return {"success": True}


@router.get("/getTile")
def get_tile(
    id: str | None = None,  # noqa: A002
    repo: database.TileRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> dict[str, Any]:
    tile = tile_cache.get_tile(repo, id)
    if tile is None:
        return {"exists": False}
    return {"exists": True, "tile": tile_cache.tile_to_payload(tile)}


@router.post("/getTilesBatch")
def get_tiles_batch(
    tile_ids: Any = fastapi.Body(None, alias="tileIds", embed=True),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    repo: database.TileRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> dict[str, dict[str, Any]]:
    """Look up to ``tile_batch_limit`` tiles at once.

    Ids past the limit are dropped. Ids without a stored tile, or whose
    stored data fails to parse, are absent from the mapping.

    Returns:
        ``{"tiles": {id: tile}}`` for constant-time client lookups.
    """
    tiles = tile_cache.get_tiles_batch(repo, tile_ids, settings.tile_batch_limit)
    return {
        "tiles": {
            tile_id: tile_cache.tile_to_payload(tile)
            for tile_id, tile in tiles.items()
        }
    }


@router.post("/saveTilesBatch")
def save_tiles_batch(
    tiles: Any = fastapi.Body(None, embed=True),  # noqa: B008
    repo: database.TileRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> dict[str, Any]:
    """Upsert many tiles in one statement.

    Enrichment fields a record omits are cleared on the stored tile.
    """
    count = tile_cache.save_tiles_batch(repo, tiles)
    return {"success": True, "count": count}


@router.post("/clearTiles")
def clear_tiles(
    repo: database.TileRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> dict[str, Any]:
    tile_cache.clear_tiles(repo)
    return {"success": True, "message": "All tiles cleared"}
