"""Data models for cached tiles and map snapshots.

This module defines the core data structures shared by the repositories,
services and API layer. ``TileRecord`` holds the attribute data for one
geographic cell, keyed by a caller-assigned id that encodes the cell
deterministically, so two clients describing the same cell write to the
same record. ``MapSnapshot`` holds a full rendered grid keyed by the exact
coordinate pair it was generated for.

Blob-valued attributes (``land_use_data``, ``epa_data``, ``waterway_data``,
``airport_data``, snapshot ``tiles`` and ``land_use_info``) hold decoded JSON
values. The repositories serialize them to text at the storage boundary and
never inspect their structure.

Example:
    Creating a TileRecord for a freshly fetched cell:
        >>> from app.db.models import TileRecord
        >>> tile = TileRecord(
        ...     id="40.7100_-74.0100",
        ...     min_lat=40.71,
        ...     min_lon=-74.01,
        ...     max_lat=40.72,
        ...     max_lon=-74.0,
        ...     landuse_type="residential",
        ...     land_use_data={"elements": []},
        ...     elevation=12.5,
        ... )
        >>> tile.has_epa_data
        False
"""

from __future__ import annotations

import dataclasses
import datetime
from typing import Any, NamedTuple


class BoundingBox(NamedTuple):
    """Rectangle in WGS84 degrees."""

    min_lat: float
    min_lon: float
    max_lat: float
    max_lon: float

    def as_esri_envelope(self) -> str:
        """Render as ArcGIS ``xmin,ymin,xmax,ymax`` (lon before lat)."""
        return f"{self.min_lon},{self.min_lat},{self.max_lon},{self.max_lat}"


@dataclasses.dataclass
class TileRecord:
    """Attribute data for one geographic cell.

    Attributes:
        id: Caller-assigned cell identifier; identical cells collide.
        min_lat: Southern edge of the cell.
        min_lon: Western edge of the cell.
        max_lat: Northern edge of the cell.
        max_lon: Eastern edge of the cell.
        landuse_type: Dominant land use classification.
        land_use_data: Opaque land use payload.
        epa_data: Opaque environmental payload, None when not fetched.
        epa_fetch_date: When ``epa_data`` was stored.
        elevation: Elevation in metres, None when unknown.
        waterway_data: Opaque hydrography payload.
        airport_data: Opaque airport payload.
    """

    id: str
    min_lat: float
    min_lon: float
    max_lat: float
    max_lon: float
    landuse_type: str
    land_use_data: Any
    epa_data: Any = None
    epa_fetch_date: datetime.datetime | None = None
    elevation: float | None = None
    waterway_data: Any = None
    airport_data: Any = None

    @property
    def has_epa_data(self) -> bool:
        return self.epa_data is not None

    @property
    def bbox(self) -> BoundingBox:
        return BoundingBox(self.min_lat, self.min_lon, self.max_lat, self.max_lon)


@dataclasses.dataclass
class MapSnapshot:
    """A full rendered grid saved for an exact ``(lat, lon)`` pair.

    Coordinates are compared exactly; two snapshots whose coordinates differ
    only by floating-point noise are distinct entries.
    """

    lat: float
    lon: float
    grid_width: int
    grid_height: int
    tiles: Any
    land_use_info: Any = dataclasses.field(default_factory=dict)
