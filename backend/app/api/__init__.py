"""API router subpackage for the tile cache backend.

Submodules:
    - tiles: Tile lookups, saves, nearest-tile search and the admin wipe.
    - maps: Saved map snapshots, including compressed ingestion.
    - gateway: Elevation, waterway and airport aggregation plus the
      allow-listed proxy.

Routers are grouped by feature domain and composed in ``app.main``.
"""
