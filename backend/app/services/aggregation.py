"""Aggregation gateway over third-party geodata providers.

Three providers sit behind the gateway:

- Open Topo Data for point elevations (one call per request),
- the USGS National Hydrography Dataset ArcGIS MapServer for waterways,
  queried as four layers in parallel,
- the FAA US Airport ArcGIS FeatureServer for airports.

Single-source lookups propagate provider failures as ``UpstreamError``.
The waterway fan-out instead waits for every layer to settle and drops
only the layers that failed, so one broken or slow layer never blanks out
the others.

Example:
    >>> async with httpx.AsyncClient(timeout=30.0) as client:
    ...     result = await fetch_waterways(client, settings, bbox)
    >>> {feature["layerType"] for feature in result["features"]}
    {'rivers', 'waterbodies'}
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, NamedTuple

import httpx

from app.core import errors
from app.db import models as db_models
from app.utils import validation

if TYPE_CHECKING:
    from app.core import config

logger = logging.getLogger(__name__)


class WaterwayLayer(NamedTuple):
    layer_id: int
    name: str
    fields: str


FLOWLINE_FIELDS = "OBJECTID,gnis_name,ftype,fcode,lengthkm,reachcode"
AREA_FIELDS = "OBJECTID,gnis_name,ftype,fcode,areasqkm"

# 1: small scale flowlines, 6: large scale flowlines,
# 3: small scale water bodies, 5: large scale areas (swamps, inundation).
WATERWAY_LAYERS = (
    WaterwayLayer(1, "rivers", FLOWLINE_FIELDS),
    WaterwayLayer(6, "rivers_detailed", FLOWLINE_FIELDS),
    WaterwayLayer(3, "waterbodies", AREA_FIELDS),
    WaterwayLayer(5, "areas", AREA_FIELDS),
)

AIRPORT_FIELDS = (
    "IDENT,NAME,LATITUDE,LONGITUDE,ELEVATION,ICAO_ID,TYPE_CODE,"
    "SERVCITY,STATE,OPERSTATUS,PRIVATEUSE,MIL_CODE"
)


def parse_bbox(payload: object) -> db_models.BoundingBox:
    """Read ``minLat``/``minLon``/``maxLat``/``maxLon`` from a request body.

    Raises:
        ValidationError: If any edge is missing or not numeric.
    """
    data = validation.as_object(payload, "Request body")
    names = ("minLat", "minLon", "maxLat", "maxLon")
    if any(data.get(name) is None for name in names):
        raise errors.ValidationError("Missing bounding box parameters")
    return db_models.BoundingBox(
        *(validation.as_float(data.get(name), name) for name in names)
    )


def parse_locations(payload: object) -> list[tuple[float, float]]:
    """Read the ``locations`` list of ``{lat, lon}`` points."""
    data = validation.as_object(payload, "Request body")
    locations = data.get("locations")
    if not isinstance(locations, list) or not locations:
        raise errors.ValidationError("Missing or invalid locations array")
    points = []
    for index, location in enumerate(locations):
        if not isinstance(location, Mapping):
            raise errors.ValidationError(f"locations[{index}] must be an object")
        points.append(
            (
                validation.as_float(location.get("lat"), f"locations[{index}].lat"),
                validation.as_float(location.get("lon"), f"locations[{index}].lon"),
            )
        )
    return points


async def get_json(
    client: httpx.AsyncClient,
    url: str,
    params: Mapping[str, str] | None,
    source: str,
) -> Any:
    """Issue one GET and decode its JSON body.

    Raises:
        UpstreamError: With the provider's status on a non-success answer,
            504 on timeout, 502 on transport failure or an undecodable body.
    """
    try:
        response = await client.get(url, params=params)
    except httpx.TimeoutException as exc:
        raise errors.UpstreamError(
            f"{source} timed out", status_code=504, source=source
        ) from exc
    except httpx.HTTPError as exc:
        raise errors.UpstreamError(
            f"{source} request failed: {exc}", status_code=502, source=source
        ) from exc

    if not response.is_success:
        logger.error("%s API error: %d", source, response.status_code)
        raise errors.UpstreamError(
            f"Upstream error: {response.status_code}",
            status_code=response.status_code,
            source=source,
        )

    try:
        return response.json()
    except ValueError as exc:
        raise errors.UpstreamError(
            f"{source} returned invalid JSON", status_code=502, source=source
        ) from exc


async def fetch_elevation(
    client: httpx.AsyncClient,
    settings: config.Settings,
    locations: list[tuple[float, float]],
) -> Any:
    """Fetch elevations for ``locations`` and pass the provider JSON through."""
    joined = "|".join(f"{lat},{lon}" for lat, lon in locations)
    logger.info("Fetching elevation for %d points", len(locations))
    data = await get_json(
        client, settings.elevation_url, {"locations": joined}, "elevation"
    )
    results = data.get("results") if isinstance(data, dict) else None
    logger.info("Elevation received for %d points", len(results or []))
    return data


async def _query_waterway_layer(
    client: httpx.AsyncClient,
    base_url: str,
    layer: WaterwayLayer,
    bbox: db_models.BoundingBox,
) -> list[dict[str, Any]]:
    params = {
        "f": "json",
        "geometry": bbox.as_esri_envelope(),
        "geometryType": "esriGeometryEnvelope",
        "inSR": "4326",
        "outSR": "4326",
        "spatialRel": "esriSpatialRelIntersects",
        "outFields": layer.fields,
        "returnGeometry": "true",
    }
    data = await get_json(
        client, f"{base_url}/{layer.layer_id}/query", params, layer.name
    )
    features = data.get("features") if isinstance(data, dict) else None
    tagged = []
    for feature in features or []:
        if isinstance(feature, dict):
            feature["layerType"] = layer.name
            tagged.append(feature)
    return tagged


async def fetch_waterways(
    client: httpx.AsyncClient,
    settings: config.Settings,
    bbox: db_models.BoundingBox,
) -> dict[str, list[dict[str, Any]]]:
    """Query every waterway layer in parallel and merge what succeeds.

    Each layer query settles on its own; a failed layer contributes no
    features and is logged. Never raises for provider failures.
    """
    base_url = settings.waterways_base_url.rstrip("/")
    logger.info("Fetching waterways for bbox: %s", bbox.as_esri_envelope())
    outcomes = await asyncio.gather(
        *(
            _query_waterway_layer(client, base_url, layer, bbox)
            for layer in WATERWAY_LAYERS
        ),
        return_exceptions=True,
    )

    features: list[dict[str, Any]] = []
    counts = {}
    for layer, outcome in zip(WATERWAY_LAYERS, outcomes, strict=True):
        if isinstance(outcome, BaseException):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            logger.warning("Waterway layer %s failed: %s", layer.name, outcome)
            outcome = []
        counts[layer.name] = len(outcome)
        features.extend(outcome)

    logger.info(
        "Waterways received: %d features (%s)",
        len(features),
        ", ".join(f"{name}: {count}" for name, count in counts.items()),
    )
    return {"features": features}


async def fetch_airports(
    client: httpx.AsyncClient,
    settings: config.Settings,
    bbox: db_models.BoundingBox,
) -> dict[str, list[Any]]:
    """Fetch airports intersecting ``bbox``.

    ArcGIS reports some failures as a 200 with an ``error`` member; those
    are treated as an empty result.
    """
    envelope = {
        "xmin": bbox.min_lon,
        "ymin": bbox.min_lat,
        "xmax": bbox.max_lon,
        "ymax": bbox.max_lat,
        "spatialReference": {"wkid": 4326},
    }
    params = {
        "where": "1=1",
        "geometry": json.dumps(envelope),
        "geometryType": "esriGeometryEnvelope",
        "inSR": "4326",
        "spatialRel": "esriSpatialRelIntersects",
        "outFields": AIRPORT_FIELDS,
        "returnGeometry": "true",
        "outSR": "4326",
        "f": "json",
    }
    logger.info("Fetching airports for bbox: %s", bbox.as_esri_envelope())
    data = await get_json(client, settings.airports_url, params, "airports")
    if not isinstance(data, dict):
        return {"features": []}
    if data.get("error"):
        error = data["error"]
        message = error.get("message") if isinstance(error, dict) else error
        logger.warning("FAA ArcGIS error: %s", message)
        return {"features": []}

    features = data.get("features") or []
    logger.info("Airports received: %d features", len(features))
    return {"features": features}
