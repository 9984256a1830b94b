"""Saved full-map snapshots keyed by exact coordinates."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from app.core import errors
from app.db import models as db_models
from app.utils import validation

if TYPE_CHECKING:
    from app.db import database

logger = logging.getLogger(__name__)


def snapshot_from_payload(payload: dict[str, Any]) -> db_models.MapSnapshot:
    """Validate a decoded saveMap document.

    Raises:
        ValidationError: If a coordinate or grid dimension is missing or
            malformed, or ``tiles`` is absent.
    """
    if payload.get("tiles") is None:
        raise errors.ValidationError("Missing required fields: tiles")
    land_use_info = payload.get("landUseInfo")
    return db_models.MapSnapshot(
        lat=validation.as_float(payload.get("lat"), "lat"),
        lon=validation.as_float(payload.get("lon"), "lon"),
        grid_width=validation.as_positive_int(payload.get("gridWidth"), "gridWidth"),
        grid_height=validation.as_positive_int(
            payload.get("gridHeight"), "gridHeight"
        ),
        tiles=payload["tiles"],
        land_use_info=land_use_info if land_use_info is not None else {},
    )


def snapshot_to_payload(snapshot: db_models.MapSnapshot) -> dict[str, Any]:
    return {
        "gridWidth": snapshot.grid_width,
        "gridHeight": snapshot.grid_height,
        "tiles": snapshot.tiles,
        "landUseInfo": snapshot.land_use_info,
    }


def check_map(
    repo: database.MapRepositoryProtocol, lat: object, lon: object
) -> db_models.MapSnapshot | None:
    """Look up the snapshot saved for exactly ``(lat, lon)``.

    Raises:
        ValidationError: If either coordinate is not a finite number.
    """
    lat_value = validation.as_float(lat, "lat")
    lon_value = validation.as_float(lon, "lon")
    snapshot = repo.get(lat_value, lon_value)
    if snapshot is None:
        logger.info("No saved map at %s, %s", lat_value, lon_value)
    return snapshot


def save_map(
    repo: database.MapRepositoryProtocol, payload: dict[str, Any]
) -> db_models.MapSnapshot:
    """Replace whatever snapshot is stored at the payload's coordinates."""
    snapshot = snapshot_from_payload(payload)
    logger.info(
        "Saving map at %s, %s (%dx%d)",
        snapshot.lat,
        snapshot.lon,
        snapshot.grid_width,
        snapshot.grid_height,
    )
    return repo.upsert(snapshot)
