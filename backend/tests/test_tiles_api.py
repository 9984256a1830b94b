"""API endpoint tests for the tile cache.

This module exercises the tile endpoints end to end through FastAPI with
an in-memory repository injected via dependency overrides, covering:
    - single and batch save/lookup round trips,
    - the batch size cap,
    - the merge policy that clears enrichment fields a save omits,
    - nearest-tile search, initial box lookup and the admin wipe,
    - validation failures reported as 400 responses.

See Also:
    - backend/app/api/tiles.py for API implementation,
    - backend/app/services/tile_cache.py for the merge and cap rules.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import pytest
from fastapi import testclient

from app import main
from app.api import tiles as api_tiles
from app.core import config
from app.db import database


@pytest.fixture
def repo() -> database.InMemoryTileRepository:
    return database.InMemoryTileRepository()


@pytest.fixture
def client(repo: database.InMemoryTileRepository) -> Iterator[testclient.TestClient]:
    app = main.create_app()
    app.dependency_overrides[api_tiles._get_repo] = lambda: repo
    try:
        yield testclient.TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _tile(tile_id: str, lat: float = 40.0, lon: float = -74.0, **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": tile_id,
        "minLat": lat,
        "minLon": lon,
        "maxLat": lat + 0.01,
        "maxLon": lon + 0.01,
        "landuseType": "residential",
        "landUseData": {"elements": [{"type": "way", "id": 1}]},
    }
    payload.update(extra)
    return payload


def test_save_then_get_round_trip(client: testclient.TestClient) -> None:
    """Test that a saved tile reads back with core and optional fields."""
    tile = _tile(
        "cell-1",
        epaData={"aqi": 31},
        elevation=12.5,
        waterwayData=[{"layerType": "rivers"}],
        airportData=[{"IDENT": "JFK"}],
    )
    response = client.post("/saveTile", json=tile)
    assert response.status_code == 200
    assert response.json() == {"success": True}

    body = client.get("/getTile", params={"id": "cell-1"}).json()
    assert body["exists"] is True
    stored = body["tile"]
    for key, value in tile.items():
        assert stored[key] == value
    assert stored["hasEpaData"] is True
    assert stored["epaFetchDate"]


def test_get_tile_absent(client: testclient.TestClient) -> None:
    """Test that an unknown id reports absence rather than an error."""
    response = client.get("/getTile", params={"id": "nope"})
    assert response.status_code == 200
    assert response.json() == {"exists": False}


def test_get_tile_requires_id(client: testclient.TestClient) -> None:
    response = client.get("/getTile")
    assert response.status_code == 400
    assert response.json() == {"error": "Missing tile ID"}


def test_save_tile_missing_fields(client: testclient.TestClient) -> None:
    """Test that required fields are validated."""
    tile = _tile("cell-1")
    del tile["landuseType"]
    del tile["landUseData"]
    response = client.post("/saveTile", json=tile)
    assert response.status_code == 400
    assert "landuseType" in response.json()["error"]
    assert "landUseData" in response.json()["error"]


def test_save_tile_accepts_zero_coordinates(client: testclient.TestClient) -> None:
    """Test that a cell on the equator and prime meridian is valid."""
    response = client.post("/saveTile", json=_tile("origin", lat=0, lon=0))
    assert response.status_code == 200


def test_save_tile_accepts_legacy_field_names(
    client: testclient.TestClient,
) -> None:
    """Test that snake_case blob names from older clients are accepted."""
    tile = _tile("legacy")
    tile["land_use_data"] = tile.pop("landUseData")
    tile["epa_data"] = {"aqi": 5}
    assert client.post("/saveTile", json=tile).status_code == 200

    stored = client.get("/getTile", params={"id": "legacy"}).json()["tile"]
    assert stored["landUseData"] == {"elements": [{"type": "way", "id": 1}]}
    assert stored["epaData"] == {"aqi": 5}


def test_save_tile_accepts_serialized_land_use(
    client: testclient.TestClient,
) -> None:
    """Test that a pre-serialized landUseData string is stored as JSON."""
    tile = _tile("serialized", landUseData='{"elements": []}')
    assert client.post("/saveTile", json=tile).status_code == 200
    stored = client.get("/getTile", params={"id": "serialized"}).json()["tile"]
    assert stored["landUseData"] == {"elements": []}


def test_resave_without_optional_field_clears_it(
    client: testclient.TestClient,
) -> None:
    """Test the overwrite-with-null merge policy."""
    client.post("/saveTile", json=_tile("cell-1", elevation=88.0, epaData={"aqi": 1}))
    client.post(
        "/saveTilesBatch",
        json={"tiles": [_tile("cell-1", landuseType="commercial")]},
    )

    stored = client.get("/getTile", params={"id": "cell-1"}).json()["tile"]
    assert stored["landuseType"] == "commercial"
    assert "elevation" not in stored
    assert "epaData" not in stored
    assert stored["hasEpaData"] is False


def test_batch_save_then_batch_get(client: testclient.TestClient) -> None:
    """Test that a saved batch is returned exactly by a batch lookup."""
    tiles = [_tile(f"cell-{i}", lat=float(i), elevation=float(i)) for i in range(5)]
    response = client.post("/saveTilesBatch", json={"tiles": tiles})
    assert response.status_code == 200
    assert response.json() == {"success": True, "count": 5}

    ids = [tile["id"] for tile in tiles]
    body = client.post("/getTilesBatch", json={"tileIds": ids}).json()
    assert set(body["tiles"]) == set(ids)
    for tile in tiles:
        stored = body["tiles"][tile["id"]]
        assert stored["landUseData"] == tile["landUseData"]
        assert stored["elevation"] == tile["elevation"]
        assert stored["minLat"] == tile["minLat"]


def test_batch_get_omits_unknown_ids(client: testclient.TestClient) -> None:
    client.post("/saveTile", json=_tile("known"))
    body = client.post("/getTilesBatch", json={"tileIds": ["known", "unknown"]}).json()
    assert list(body["tiles"]) == ["known"]


def test_batch_get_is_capped(
    client: testclient.TestClient, repo: database.InMemoryTileRepository
) -> None:
    """Test that only the first 500 requested ids are served."""
    tiles = [_tile(f"cell-{i:03d}") for i in range(600)]
    client.post("/saveTilesBatch", json={"tiles": tiles})
    ids = [tile["id"] for tile in tiles]

    first = client.post("/getTilesBatch", json={"tileIds": ids}).json()["tiles"]
    second = client.post("/getTilesBatch", json={"tileIds": ids}).json()["tiles"]
    assert set(first) == set(ids[:500])
    assert set(second) == set(first)


def test_batch_get_respects_configured_limit(
    repo: database.InMemoryTileRepository,
) -> None:
    """Test that the cap follows tile_batch_limit."""
    app = main.create_app()
    app.dependency_overrides[api_tiles._get_repo] = lambda: repo
    app.dependency_overrides[config.get_settings] = lambda: config.Settings(
        tile_batch_limit=2
    )
    client = testclient.TestClient(app)
    try:
        client.post("/saveTilesBatch", json={"tiles": [_tile(c) for c in "abc"]})
        body = client.post("/getTilesBatch", json={"tileIds": ["c", "b", "a"]}).json()
        assert set(body["tiles"]) == {"c", "b"}
    finally:
        app.dependency_overrides.clear()


def test_batch_get_skips_corrupt_records(
    client: testclient.TestClient, repo: database.InMemoryTileRepository
) -> None:
    """Test that one unparseable record does not fail the batch."""
    client.post("/saveTile", json=_tile("good"))
    row = database.tile_to_row(repo.get("good"))  # type: ignore[arg-type]
    row["id"] = "bad"
    row["waterway_data"] = "{truncated"
    repo.store_raw(row)

    body = client.post("/getTilesBatch", json={"tileIds": ["good", "bad"]}).json()
    assert list(body["tiles"]) == ["good"]


def test_batch_get_rejects_invalid_input(client: testclient.TestClient) -> None:
    assert client.post("/getTilesBatch", json={"tileIds": []}).status_code == 400
    assert client.post("/getTilesBatch", json={}).status_code == 400
    assert client.post("/getTilesBatch", json={"tileIds": "a"}).status_code == 400


def test_batch_save_rejects_empty(client: testclient.TestClient) -> None:
    response = client.post("/saveTilesBatch", json={"tiles": []})
    assert response.status_code == 400
    assert response.json() == {"error": "Missing or invalid tiles array"}


def test_batch_save_rejects_whole_batch_on_invalid_record(
    client: testclient.TestClient, repo: database.InMemoryTileRepository
) -> None:
    """Test that nothing is written when any record is invalid."""
    bad = _tile("bad")
    del bad["minLon"]
    response = client.post("/saveTilesBatch", json={"tiles": [_tile("ok"), bad]})
    assert response.status_code == 400
    assert response.json()["error"].startswith("tiles[1]:")
    assert repo.get("ok") is None


def test_closest_bbox(client: testclient.TestClient) -> None:
    """Test that the tile with the nearest south-west corner is returned."""
    client.post(
        "/saveTilesBatch",
        json={"tiles": [_tile("A", lat=0.0, lon=0.0), _tile("B", lat=10.0, lon=10.0)]},
    )
    body = client.get("/closestBbox", params={"lat": 1, "lon": 1}).json()
    assert isinstance(body, list)
    assert len(body) == 1
    assert body[0]["id"] == "A"
    assert body[0]["distance"] == 2.0
    assert body[0]["landuseType"] == "residential"


def test_closest_bbox_empty_store(client: testclient.TestClient) -> None:
    response = client.get("/closestBbox", params={"lat": 1, "lon": 1})
    assert response.status_code == 200
    assert response.json() == []


def test_closest_bbox_rejects_non_numeric(client: testclient.TestClient) -> None:
    response = client.get("/closestBbox", params={"lat": "north", "lon": 1})
    assert response.status_code == 400


def test_initial_box(client: testclient.TestClient) -> None:
    """Test that land use data is returned in request order."""
    client.post(
        "/saveTilesBatch",
        json={"tiles": [_tile("a", landuseType="forest"), _tile("b")]},
    )
    body = client.post("/initialBox", json=[{"id": "b"}, {"id": "a"}]).json()
    assert [entry["id"] for entry in body] == ["b", "a"]
    assert body[1] == {
        "id": "a",
        "landuseType": "forest",
        "landUseData": {"elements": [{"type": "way", "id": 1}]},
    }


def test_initial_box_fails_on_unmatched_id(client: testclient.TestClient) -> None:
    """Test that one unknown id fails the whole request."""
    client.post("/saveTile", json=_tile("a"))
    response = client.post("/initialBox", json=[{"id": "a"}, {"id": "zzz"}])
    assert response.status_code == 404
    assert "zzz" in response.json()["error"]


def test_clear_tiles(client: testclient.TestClient) -> None:
    client.post("/saveTile", json=_tile("a"))
    response = client.post("/clearTiles")
    assert response.status_code == 200
    assert response.json()["success"] is True
    assert client.get("/getTile", params={"id": "a"}).json() == {"exists": False}


def test_corrupt_single_tile_is_reported(
    client: testclient.TestClient, repo: database.InMemoryTileRepository
) -> None:
    """Test that a single unparseable tile surfaces as a 500."""
    client.post("/saveTile", json=_tile("a"))
    row = database.tile_to_row(repo.get("a"))  # type: ignore[arg-type]
    row["land_use_data"] = "{oops"
    repo.store_raw(row)
    response = client.get("/getTile", params={"id": "a"})
    assert response.status_code == 500
    assert "land_use_data" in response.json()["error"]
