"""Error taxonomy shared by the tile cache and the aggregation gateway.

Every failure the service reports on purpose is a ``TileCacheError``
subclass carrying the HTTP status it maps to. ``app.main`` registers a
single exception handler for the base class, so services and repositories
raise these without knowing about the transport.
"""

from __future__ import annotations


class TileCacheError(Exception):
    """Base class for errors that are reported to the caller."""

    status_code: int = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(TileCacheError):
    """Missing or malformed input."""

    status_code = 400


class PayloadTooLargeError(ValidationError):
    """Request body, or its decompressed form, exceeds the configured cap."""

    status_code = 413


class NotFoundError(TileCacheError):
    status_code = 404


class ForbiddenError(TileCacheError):
    """Proxy target host is not on the allow-list."""

    status_code = 403


class UpstreamError(TileCacheError):
    """A third-party provider answered with a non-success status.

    The provider's own status is propagated so the caller sees e.g. a 429
    from the elevation service as a 429.
    """

    status_code = 502

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        source: str | None = None,
    ) -> None:
        super().__init__(message, status_code)
        self.source = source


class ParseError(TileCacheError):
    """A stored opaque blob could not be decoded."""


class InternalError(TileCacheError):
    """Storage or other unexpected failure."""
