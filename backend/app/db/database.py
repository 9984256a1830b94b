"""Database helpers and repositories for tiles and map snapshots."""

from __future__ import annotations

import datetime
import json
import logging
import threading
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, cast

import psycopg2.extras

from app.core import errors
from app.db import models as db_models
from app.db import pool as db_pool

if TYPE_CHECKING:
    from collections.abc import Sequence

    from app.core import config

logger = logging.getLogger(__name__)

ClosestTile = tuple[db_models.TileRecord, float]

T = TypeVar("T")


def _cast(value: object, dtype: type[T]) -> T | None:  # type: ignore[misc]
    """Cast a value to a specific type, returning None if value is None."""
    if value is None:
        return None

    return cast(T, value)


def encode_blob(value: Any) -> str | None:
    """Serialize an opaque payload for a TEXT column.

    Strings that already hold a JSON object or array are stored untouched,
    since clients send ``land_use_data`` pre-serialized. Any other string,
    including one that parses as a JSON scalar such as ``"42"``, is kept as
    a string. Everything else goes through ``json.dumps``.
    """
    if value is None:
        return None
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return json.dumps(value)
        if isinstance(parsed, dict | list):
            return value
        return json.dumps(value)
    return json.dumps(value, separators=(",", ":"))


def decode_blob(raw: object, field: str, key: object) -> Any:
    """Decode a stored opaque payload.

    Raises:
        ParseError: If the stored text is not valid JSON.
    """
    if raw is None:
        return None
    if isinstance(raw, bytes | bytearray | memoryview):
        raw = bytes(raw).decode("utf-8", errors="replace")
    try:
        return json.loads(cast(str, raw))
    except (TypeError, ValueError) as exc:
        raise errors.ParseError(
            f"Stored {field} for {key} is not valid JSON: {exc}"
        ) from exc


def tile_to_row(tile: db_models.TileRecord) -> dict[str, object]:
    """Convert a TileRecord to a database row dictionary.

    Args:
        tile: Tile record to convert.

    Returns:
        Dictionary suitable for parameterized SQL insertion.
    """
    return {
        "id": tile.id,
        "min_lat": tile.min_lat,
        "min_lon": tile.min_lon,
        "max_lat": tile.max_lat,
        "max_lon": tile.max_lon,
        "landuse_type": tile.landuse_type,
        "land_use_data": encode_blob(tile.land_use_data),
        "epa_data": encode_blob(tile.epa_data),
        "has_epa_data": tile.has_epa_data,
        "epa_fetch_date": tile.epa_fetch_date if tile.has_epa_data else None,
        "elevation": tile.elevation,
        "waterway_data": encode_blob(tile.waterway_data),
        "airport_data": encode_blob(tile.airport_data),
    }


def tile_from_row(row: dict[str, object]) -> db_models.TileRecord:
    """Convert a database row dictionary to a TileRecord.

    Raises:
        ParseError: If any stored blob fails to decode.
    """
    tile_id = str(row["id"])
    has_epa = bool(row.get("has_epa_data"))
    elevation = _cast(row.get("elevation"), float)
    return db_models.TileRecord(
        id=tile_id,
        min_lat=float(cast(float, row["min_lat"])),
        min_lon=float(cast(float, row["min_lon"])),
        max_lat=float(cast(float, row["max_lat"])),
        max_lon=float(cast(float, row["max_lon"])),
        landuse_type=str(row["landuse_type"]),
        land_use_data=decode_blob(row.get("land_use_data"), "land_use_data", tile_id),
        epa_data=(
            decode_blob(row.get("epa_data"), "epa_data", tile_id)
            if has_epa
            else None
        ),
        epa_fetch_date=(
            _cast(row.get("epa_fetch_date"), datetime.datetime) if has_epa else None
        ),
        elevation=float(elevation) if elevation is not None else None,
        waterway_data=decode_blob(row.get("waterway_data"), "waterway_data", tile_id),
        airport_data=decode_blob(row.get("airport_data"), "airport_data", tile_id),
    )


def map_to_row(snapshot: db_models.MapSnapshot) -> dict[str, object]:
    return {
        "lat": snapshot.lat,
        "lon": snapshot.lon,
        "grid_width": snapshot.grid_width,
        "grid_height": snapshot.grid_height,
        "tiles": json.dumps(snapshot.tiles, separators=(",", ":")),
        "land_use_info": json.dumps(
            snapshot.land_use_info if snapshot.land_use_info is not None else {},
            separators=(",", ":"),
        ),
    }


def map_from_row(row: dict[str, object]) -> db_models.MapSnapshot:
    key = (row["lat"], row["lon"])
    return db_models.MapSnapshot(
        lat=float(cast(float, row["lat"])),
        lon=float(cast(float, row["lon"])),
        grid_width=int(cast(int, row["grid_width"])),
        grid_height=int(cast(int, row["grid_height"])),
        tiles=decode_blob(row.get("tiles"), "tiles", key),
        land_use_info=decode_blob(row.get("land_use_info"), "land_use_info", key),
    )


def _decode_rows(rows: Sequence[dict[str, object]]) -> dict[str, db_models.TileRecord]:
    """Decode tile rows, skipping any whose blobs do not parse."""
    tiles: dict[str, db_models.TileRecord] = {}
    for row in rows:
        try:
            tile = tile_from_row(row)
        except errors.ParseError as exc:
            logger.warning("Skipping tile %s: %s", row.get("id"), exc)
            continue
        tiles[tile.id] = tile
    return tiles


def _last_write_wins(
    tiles: Sequence[db_models.TileRecord],
) -> list[db_models.TileRecord]:
    """Collapse repeated ids to their last occurrence, keeping first order."""
    latest: dict[str, db_models.TileRecord] = {}
    for tile in tiles:
        latest[tile.id] = tile
    return list(latest.values())


class TileRepositoryProtocol(Protocol):
    """Protocol interface for storing and retrieving tile records.

    Implementations provide persistence for TileRecord objects, supporting
    both in-memory (testing) and PostgreSQL (production) backends. Upserts
    follow one merge policy: the bounding rectangle of an existing id is
    kept, every other column is replaced by the incoming value, including
    replacing stored enrichment data with null when the incoming record
    has none.
    """

    def get(self, tile_id: str) -> db_models.TileRecord | None: ...

    def get_many(
        self, tile_ids: Sequence[str]
    ) -> dict[str, db_models.TileRecord]: ...

    def upsert_many(self, tiles: Sequence[db_models.TileRecord]) -> int: ...

    def closest(self, lat: float, lon: float) -> ClosestTile | None: ...

    def clear(self) -> None: ...


class MapRepositoryProtocol(Protocol):
    """Protocol interface for map snapshots keyed by exact coordinates."""

    def get(self, lat: float, lon: float) -> db_models.MapSnapshot | None: ...

    def upsert(
        self, snapshot: db_models.MapSnapshot
    ) -> db_models.MapSnapshot: ...


class InMemoryTileRepository(TileRepositoryProtocol):
    """Simple in-memory store for tests and local development.

    Rows are kept in their serialized form so reads exercise the same
    decoding path as the PostgreSQL repository. Data is lost when the
    process exits.
    """

    def __init__(self) -> None:
        """Initialize an empty in-memory repository."""
        self._rows: dict[str, dict[str, object]] = {}
        self._lock = threading.Lock()

    def get(self, tile_id: str) -> db_models.TileRecord | None:
        row = self._rows.get(tile_id)
        if row is None:
            return None
        return tile_from_row(row)

    def get_many(
        self, tile_ids: Sequence[str]
    ) -> dict[str, db_models.TileRecord]:
        with self._lock:
            rows = [
                self._rows[i] for i in dict.fromkeys(tile_ids) if i in self._rows
            ]
        return _decode_rows(rows)

    def upsert_many(self, tiles: Sequence[db_models.TileRecord]) -> int:
        rows = [tile_to_row(tile) for tile in _last_write_wins(tiles)]
        with self._lock:
            for row in rows:
                existing = self._rows.get(cast(str, row["id"]))
                if existing is not None:
                    for key in ("min_lat", "min_lon", "max_lat", "max_lon"):
                        row[key] = existing[key]
                self._rows[cast(str, row["id"])] = row
        return len(rows)

    def closest(self, lat: float, lon: float) -> ClosestTile | None:
        with self._lock:
            rows = list(self._rows.values())
        best: tuple[dict[str, object], float] | None = None
        for row in rows:
            distance = (
                (cast(float, row["min_lat"]) - lat) ** 2
                + (cast(float, row["min_lon"]) - lon) ** 2
            )
            if best is None or distance < best[1]:
                best = (row, distance)
        if best is None:
            return None
        return tile_from_row(best[0]), best[1]

    def clear(self) -> None:
        with self._lock:
            self._rows.clear()

    def store_raw(self, row: dict[str, object]) -> None:
        """Insert a row verbatim, bypassing serialization."""
        with self._lock:
            self._rows[cast(str, row["id"])] = row


class InMemoryMapRepository(MapRepositoryProtocol):
    """In-memory snapshot store keyed by the exact coordinate pair."""

    def __init__(self) -> None:
        self._rows: dict[tuple[float, float], dict[str, object]] = {}

    def get(self, lat: float, lon: float) -> db_models.MapSnapshot | None:
        row = self._rows.get((lat, lon))
        if row is None:
            return None
        return map_from_row(row)

    def upsert(self, snapshot: db_models.MapSnapshot) -> db_models.MapSnapshot:
        self._rows[(snapshot.lat, snapshot.lon)] = map_to_row(snapshot)
        return snapshot


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS bounding_boxes (
  id TEXT PRIMARY KEY,
  min_lat DOUBLE PRECISION NOT NULL,
  min_lon DOUBLE PRECISION NOT NULL,
  max_lat DOUBLE PRECISION NOT NULL,
  max_lon DOUBLE PRECISION NOT NULL,
  landuse_type TEXT NOT NULL,
  land_use_data TEXT NOT NULL,
  epa_data TEXT,
  has_epa_data BOOLEAN NOT NULL DEFAULT FALSE,
  epa_fetch_date TIMESTAMPTZ,
  elevation DOUBLE PRECISION,
  waterway_data TEXT,
  airport_data TEXT,
  updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS saved_maps (
  id BIGSERIAL PRIMARY KEY,
  lat DOUBLE PRECISION NOT NULL,
  lon DOUBLE PRECISION NOT NULL,
  grid_width INTEGER NOT NULL,
  grid_height INTEGER NOT NULL,
  tiles TEXT NOT NULL,
  land_use_info TEXT NOT NULL,
  created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
  UNIQUE (lat, lon)
);
"""

TILE_COLUMNS = (
    "id",
    "min_lat",
    "min_lon",
    "max_lat",
    "max_lon",
    "landuse_type",
    "land_use_data",
    "epa_data",
    "has_epa_data",
    "epa_fetch_date",
    "elevation",
    "waterway_data",
    "airport_data",
)

UPSERT_TILES_SQL = f"""
INSERT INTO bounding_boxes ({", ".join(TILE_COLUMNS)})
VALUES %s
ON CONFLICT (id) DO UPDATE SET
    landuse_type = EXCLUDED.landuse_type,
    land_use_data = EXCLUDED.land_use_data,
    epa_data = EXCLUDED.epa_data,
    has_epa_data = EXCLUDED.has_epa_data,
    epa_fetch_date = EXCLUDED.epa_fetch_date,
    elevation = EXCLUDED.elevation,
    waterway_data = EXCLUDED.waterway_data,
    airport_data = EXCLUDED.airport_data,
    updated_at = now();
"""

SELECT_TILE_SQL = f"SELECT {', '.join(TILE_COLUMNS)} FROM bounding_boxes"


class PostgresTileRepository(TileRepositoryProtocol):
    """PostgreSQL-backed repository for tile records.

    All writes go through one ``INSERT ... ON CONFLICT`` statement, so a
    batch either commits as a whole or not at all, and concurrent writers
    to the same id resolve to whichever statement commits last.
    """

    def __init__(self, pool: db_pool.ConnectionPool) -> None:
        """Initialize repository with a connection pool.

        Args:
            pool: Bounded pool the repository borrows sessions from.
        """
        self.pool = pool

    def _fetch(self, sql: str, params: Sequence[object]) -> list[dict[str, object]]:
        with self.pool.connection() as conn, conn.cursor(
            cursor_factory=psycopg2.extras.RealDictCursor
        ) as cur:
            cur.execute(sql, params)
            return [dict(row) for row in cur.fetchall()]

    def get(self, tile_id: str) -> db_models.TileRecord | None:
        rows = self._fetch(f"{SELECT_TILE_SQL} WHERE id = %s LIMIT 1", (tile_id,))
        if not rows:
            return None
        else:
            return tile_from_row(rows[0])

    def get_many(
        self, tile_ids: Sequence[str]
    ) -> dict[str, db_models.TileRecord]:
        if not tile_ids:
            return {}
        rows = self._fetch(f"{SELECT_TILE_SQL} WHERE id = ANY(%s)", (list(tile_ids),))
        return _decode_rows(rows)

    def upsert_many(self, tiles: Sequence[db_models.TileRecord]) -> int:
        """Write all tiles in a single multi-row upsert statement.

        Repeated ids within ``tiles`` are collapsed to their last occurrence
        first; PostgreSQL refuses to update the same row twice in one
        statement.

        Returns:
            Number of distinct rows written.
        """
        rows = [tile_to_row(tile) for tile in _last_write_wins(tiles)]
        if not rows:
            return 0
        values = [tuple(row[column] for column in TILE_COLUMNS) for row in rows]
        with self.pool.connection() as conn, conn.cursor() as cur:
            psycopg2.extras.execute_values(
                cur, UPSERT_TILES_SQL, values, page_size=len(values)
            )
        return len(rows)

    def closest(self, lat: float, lon: float) -> ClosestTile | None:
        rows = self._fetch(
            f"""
            SELECT {", ".join(TILE_COLUMNS)},
                   POWER(min_lat - %s, 2) + POWER(min_lon - %s, 2) AS distance
            FROM bounding_boxes
            ORDER BY distance ASC
            LIMIT 1
            """,
            (lat, lon),
        )
        if not rows:
            return None
        return tile_from_row(rows[0]), float(cast(float, rows[0]["distance"]))

    def clear(self) -> None:
        with self.pool.connection() as conn, conn.cursor() as cur:
            cur.execute("TRUNCATE TABLE bounding_boxes")


class PostgresMapRepository(MapRepositoryProtocol):
    """PostgreSQL-backed repository for map snapshots."""

    def __init__(self, pool: db_pool.ConnectionPool) -> None:
        self.pool = pool

    def get(self, lat: float, lon: float) -> db_models.MapSnapshot | None:
        with self.pool.connection() as conn, conn.cursor(
            cursor_factory=psycopg2.extras.RealDictCursor
        ) as cur:
            cur.execute(
                """
                SELECT lat, lon, grid_width, grid_height, tiles, land_use_info
                FROM saved_maps
                WHERE lat = %s AND lon = %s
                LIMIT 1
                """,
                (lat, lon),
            )
            row = cur.fetchone()
        if row is None:
            return None
        return map_from_row(dict(row))

    def upsert(self, snapshot: db_models.MapSnapshot) -> db_models.MapSnapshot:
        with self.pool.connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO saved_maps (
                    lat, lon, grid_width, grid_height, tiles, land_use_info
                ) VALUES (%(lat)s, %(lon)s, %(grid_width)s, %(grid_height)s,
                    %(tiles)s, %(land_use_info)s)
                ON CONFLICT (lat, lon) DO UPDATE SET
                    grid_width = EXCLUDED.grid_width,
                    grid_height = EXCLUDED.grid_height,
                    tiles = EXCLUDED.tiles,
                    land_use_info = EXCLUDED.land_use_info,
                    created_at = now();
                """,
                map_to_row(snapshot),
            )
        return snapshot


_pools: dict[str, db_pool.ConnectionPool] = {}
_pools_lock = threading.Lock()


def get_connection_pool(settings: config.Settings) -> db_pool.ConnectionPool:
    """Return the process-wide pool for ``settings.database_url``.

    The pool is created, and the schema ensured, on first use.
    """
    with _pools_lock:
        pool = _pools.get(settings.database_url)
        if pool is None:
            pool = db_pool.ConnectionPool(
                settings.database_url,
                min_size=settings.db_pool_min_size,
                max_size=settings.db_pool_max_size,
                timeout=settings.db_pool_timeout_seconds,
            )
            try:
                with pool.connection() as conn, conn.cursor() as cur:
                    cur.execute(SCHEMA_SQL)
            except errors.TileCacheError:
                pool.close()
                raise
            _pools[settings.database_url] = pool
            logger.info(
                "Database pool ready (max %d sessions)", settings.db_pool_max_size
            )
        return pool


def close_connection_pools() -> None:
    with _pools_lock:
        for pool in _pools.values():
            pool.close()
        _pools.clear()


def get_tile_repository(settings: config.Settings) -> TileRepositoryProtocol:
    """Factory function to create a tile repository.

    Args:
        settings: Application settings for database connection.

    Returns:
        PostgresTileRepository bound to the shared connection pool.
    """
    return PostgresTileRepository(get_connection_pool(settings))


def get_map_repository(settings: config.Settings) -> MapRepositoryProtocol:
    return PostgresMapRepository(get_connection_pool(settings))
