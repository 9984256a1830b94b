"""Crowd-sourced tile cache operations.

Clients fetch land use (and optionally environmental, elevation,
hydrography and airport) data for a geographic cell from third-party
providers, then contribute it here so the next client asking for the same
cell can skip the providers. Cell ids are derived from the cell geometry by
the client, so identical cells from different clients collide on purpose.

Merge policy on save: the land use fields are always overwritten, and the
enrichment fields (``epa_data``, ``elevation``, ``waterway_data``,
``airport_data``) take whatever the incoming record carries. A record that
omits an enrichment field therefore clears any value stored earlier for
that cell.

Example:
    >>> from app.db import database
    >>> repo = database.InMemoryTileRepository()
    >>> save_tile(repo, {
    ...     "id": "cell-1", "minLat": 0, "minLon": 0, "maxLat": 1,
    ...     "maxLon": 1, "landuseType": "forest", "landUseData": [],
    ... })
    >>> get_tile(repo, "cell-1").landuse_type
    'forest'
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from app.core import errors
from app.db import models as db_models
from app.utils import validation

if TYPE_CHECKING:
    from collections.abc import Sequence

    from app.db import database

logger = logging.getLogger(__name__)

DEFAULT_BATCH_LIMIT = 500

REQUIRED_TILE_FIELDS = (
    "id",
    "minLat",
    "minLon",
    "maxLat",
    "maxLon",
    "landuseType",
    "landUseData",
)


def tile_from_payload(
    payload: object,
    now: datetime.datetime | None = None,
) -> db_models.TileRecord:
    """Build a TileRecord from a client JSON object.

    Accepts camelCase blob names as well as the legacy snake_case ones
    (``land_use_data``, ``epa_data``, ``waterway_data``, ``airport_data``).
    Zero is a valid coordinate; only absent values count as missing.

    Args:
        payload: Decoded JSON body describing one tile.
        now: Timestamp recorded as ``epa_fetch_date`` when EPA data is
            present. Defaults to the current UTC time.

    Raises:
        ValidationError: If a required field is missing or malformed.
    """
    data = validation.as_object(payload, "Tile")
    land_use_data = validation.first_present(data, "landUseData", "land_use_data")
    missing = [
        name
        for name in REQUIRED_TILE_FIELDS
        if (land_use_data if name == "landUseData" else data.get(name)) in (None, "")
    ]
    if missing:
        raise errors.ValidationError(
            f"Missing required fields: {', '.join(missing)}"
        )

    epa_data = validation.first_present(data, "epaData", "epa_data")
    elevation = data.get("elevation")
    return db_models.TileRecord(
        id=validation.as_text(data.get("id"), "id"),
        min_lat=validation.as_float(data.get("minLat"), "minLat"),
        min_lon=validation.as_float(data.get("minLon"), "minLon"),
        max_lat=validation.as_float(data.get("maxLat"), "maxLat"),
        max_lon=validation.as_float(data.get("maxLon"), "maxLon"),
        landuse_type=validation.as_text(data.get("landuseType"), "landuseType"),
        land_use_data=land_use_data,
        epa_data=epa_data,
        epa_fetch_date=(
            (now or datetime.datetime.now(datetime.UTC))
            if epa_data is not None
            else None
        ),
        elevation=(
            validation.as_float(elevation, "elevation")
            if elevation is not None
            else None
        ),
        waterway_data=validation.first_present(data, "waterwayData", "waterway_data"),
        airport_data=validation.first_present(data, "airportData", "airport_data"),
    )


def tile_to_payload(tile: db_models.TileRecord) -> dict[str, Any]:
    """Render a TileRecord in the client's camelCase shape.

    Enrichment fields are only included when present, mirroring what the
    web client expects to probe for.
    """
    payload: dict[str, Any] = {
        "id": tile.id,
        "minLat": tile.min_lat,
        "minLon": tile.min_lon,
        "maxLat": tile.max_lat,
        "maxLon": tile.max_lon,
        "landuseType": tile.landuse_type,
        "landUseData": tile.land_use_data,
        "hasEpaData": tile.has_epa_data,
    }
    if tile.has_epa_data:
        payload["epaData"] = tile.epa_data
        payload["epaFetchDate"] = (
            tile.epa_fetch_date.isoformat() if tile.epa_fetch_date else None
        )
    if tile.elevation is not None:
        payload["elevation"] = tile.elevation
    if tile.waterway_data is not None:
        payload["waterwayData"] = tile.waterway_data
    if tile.airport_data is not None:
        payload["airportData"] = tile.airport_data
    return payload


def get_tile(
    repo: database.TileRepositoryProtocol, tile_id: str | None
) -> db_models.TileRecord | None:
    if not tile_id:
        raise errors.ValidationError("Missing tile ID")
    return repo.get(tile_id)


def get_tiles_batch(
    repo: database.TileRepositoryProtocol,
    tile_ids: object,
    limit: int = DEFAULT_BATCH_LIMIT,
) -> dict[str, db_models.TileRecord]:
    """Look up many tiles at once.

    Only the first ``limit`` ids, in request order, are served; the rest
    are dropped with a warning. Unknown ids, and tiles whose stored data no
    longer parses, are simply absent from the result.

    Raises:
        ValidationError: If ``tile_ids`` is not a non-empty list of strings.
    """
    if not isinstance(tile_ids, list) or not tile_ids:
        raise errors.ValidationError("Missing or invalid tileIds array")
    if not all(isinstance(tile_id, str) for tile_id in tile_ids):
        raise errors.ValidationError("tileIds must contain only strings")

    limited = tile_ids[:limit]
    if len(tile_ids) > limit:
        logger.warning(
            "Batch request truncated from %d to %d tiles", len(tile_ids), limit
        )

    tiles = repo.get_many(limited)
    logger.info("Batch lookup found %d of %d tiles", len(tiles), len(limited))
    return tiles


def save_tile(repo: database.TileRepositoryProtocol, payload: object) -> None:
    repo.upsert_many([tile_from_payload(payload)])


def save_tiles_batch(
    repo: database.TileRepositoryProtocol, payloads: object
) -> int:
    """Validate and upsert a batch of tiles in one statement.

    Every record is validated before anything is written, so one bad record
    rejects the whole batch.

    Returns:
        Number of records received.

    Raises:
        ValidationError: If ``payloads`` is empty, not a list, or contains
            an invalid record.
    """
    if not isinstance(payloads, list) or not payloads:
        raise errors.ValidationError("Missing or invalid tiles array")

    now = datetime.datetime.now(datetime.UTC)
    tiles: list[db_models.TileRecord] = []
    for index, payload in enumerate(payloads):
        try:
            tiles.append(tile_from_payload(payload, now=now))
        except errors.ValidationError as exc:
            raise errors.ValidationError(f"tiles[{index}]: {exc.message}") from exc

    with_epa = sum(1 for tile in tiles if tile.has_epa_data)
    with_airports = sum(1 for tile in tiles if tile.airport_data is not None)
    logger.info(
        "Saving %d tiles (EPA: %d, airport: %d)", len(tiles), with_epa, with_airports
    )
    written = repo.upsert_many(tiles)
    logger.debug("Upsert touched %d distinct rows", written)
    return len(tiles)


def closest_tile(
    repo: database.TileRepositoryProtocol, lat: object, lon: object
) -> database.ClosestTile | None:
    """Find the stored tile whose south-west corner is nearest.

    Distance is squared Euclidean on raw degrees over a full scan. Ties are
    resolved by storage order and are not deterministic.
    """
    lat_value = validation.as_float(lat, "lat")
    lon_value = validation.as_float(lon, "lon")
    return repo.closest(lat_value, lon_value)


def initial_boxes(
    repo: database.TileRepositoryProtocol, boxes: object
) -> list[dict[str, Any]]:
    """Return land use data for each requested box, in request order.

    Raises:
        ValidationError: If ``boxes`` is not a list of objects with ids.
        NotFoundError: If any requested id has no stored tile.
    """
    if not isinstance(boxes, list):
        raise errors.ValidationError("Expected an array of bounding boxes")

    ids: list[str] = []
    for box in boxes:
        if not isinstance(box, Mapping):
            raise errors.ValidationError("Each bounding box must be an object")
        ids.append(validation.as_text(box.get("id"), "id"))

    tiles = repo.get_many(ids)
    result = []
    for tile_id in ids:
        tile = tiles.get(tile_id)
        if tile is None:
            raise errors.NotFoundError(
                f"No matching landuse type found for box id: {tile_id}"
            )
        result.append(
            {
                "id": tile_id,
                "landuseType": tile.landuse_type,
                "landUseData": tile.land_use_data,
            }
        )
    return result


def clear_tiles(repo: database.TileRepositoryProtocol) -> None:
    logger.warning("Clearing all cached tiles")
    repo.clear()
