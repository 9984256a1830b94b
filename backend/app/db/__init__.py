"""Database interface and repository abstractions.

This package consolidates the repository protocols for tile records and
map snapshots, their in-memory and PostgreSQL implementations, and the
bounded connection pool the PostgreSQL repositories share.

Example:
    Use in a service or FastAPI dependency:
        >>> from app.db import database
        >>> repo = database.get_tile_repository(settings)
        >>> repo.get("40.7100_-74.0100")
"""
