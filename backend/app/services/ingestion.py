"""Bounded decoding of map snapshot request bodies.

Snapshot bodies are large enough that clients usually gzip them. The raw
body is read against a byte cap before anything is decompressed, and
decompression itself stops as soon as the output passes a second cap, so a
small compression bomb cannot inflate into unbounded memory.

Example:
    >>> import gzip, json
    >>> body = gzip.compress(json.dumps({"lat": 1.0}).encode())
    >>> decode_json_body(body, "gzip", max_decompressed=1024)
    {'lat': 1.0}
"""

from __future__ import annotations

import json
import logging
import zlib
from typing import TYPE_CHECKING, Any

from app.core import errors

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)

GZIP_ENCODINGS = frozenset({"gzip", "x-gzip"})
_CHUNK_SIZE = 64 * 1024


async def read_limited(
    chunks: AsyncIterator[bytes],
    max_size: int,
    declared_length: str | None = None,
) -> bytes:
    """Collect a streamed request body, refusing anything over ``max_size``.

    Args:
        chunks: Body stream, e.g. ``request.stream()``.
        max_size: Maximum number of raw bytes accepted.
        declared_length: The request's Content-Length header, checked up
            front so oversized uploads are refused before being read.

    Raises:
        PayloadTooLargeError: If the body exceeds ``max_size``.
    """
    if declared_length is not None and declared_length.isdigit():
        if int(declared_length) > max_size:
            raise errors.PayloadTooLargeError(
                f"Request body exceeds {max_size} bytes"
            )

    buffer = bytearray()
    async for chunk in chunks:
        buffer.extend(chunk)
        if len(buffer) > max_size:
            raise errors.PayloadTooLargeError(
                f"Request body exceeds {max_size} bytes"
            )
    return bytes(buffer)


def gunzip_limited(data: bytes, max_size: int) -> bytes:
    """Decompress a gzip stream, stopping once output exceeds ``max_size``.

    Bodies made of several concatenated gzip members are decoded member by
    member, with all members counting toward the same cap.

    Raises:
        PayloadTooLargeError: If the decompressed data exceeds ``max_size``.
        ValidationError: If the stream is corrupt or truncated.
    """
    decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
    output = bytearray()
    pending = data
    try:
        while True:
            # max_length bounds each step; unconsumed input carries over.
            room = max_size - len(output) + 1
            chunk = decompressor.decompress(pending, min(room, _CHUNK_SIZE))
            output.extend(chunk)
            if len(output) > max_size:
                raise errors.PayloadTooLargeError(
                    f"Decompressed body exceeds {max_size} bytes"
                )
            if decompressor.eof:
                pending = decompressor.unused_data
                if not pending:
                    break
                decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
                continue
            pending = decompressor.unconsumed_tail
            if not pending and not chunk:
                break
    except zlib.error as exc:
        raise errors.ValidationError(f"Invalid gzip body: {exc}") from exc

    if not decompressor.eof:
        raise errors.ValidationError("Invalid gzip body: truncated stream")
    return bytes(output)


def decode_json_body(
    raw: bytes,
    content_encoding: str | None,
    max_decompressed: int,
) -> dict[str, Any]:
    """Turn a raw, possibly gzip-encoded body into a JSON object.

    Args:
        raw: Body bytes as received.
        content_encoding: Value of the Content-Encoding header, if any.
        max_decompressed: Cap on the decompressed size.

    Raises:
        ValidationError: If decompression, UTF-8 decoding or JSON parsing
            fails, or the document is not an object.
    """
    encoding = (content_encoding or "").strip().lower()
    if encoding in GZIP_ENCODINGS:
        body = gunzip_limited(raw, max_decompressed)
        logger.info("Decompressed payload: %d -> %d bytes", len(raw), len(body))
    elif encoding in ("", "identity"):
        body = raw
    else:
        raise errors.ValidationError(f"Unsupported Content-Encoding: {encoding}")

    try:
        document = json.loads(body.decode("utf-8"))
    except UnicodeDecodeError as exc:
        raise errors.ValidationError(f"Body is not valid UTF-8: {exc}") from exc
    except ValueError as exc:
        raise errors.ValidationError(f"Body is not valid JSON: {exc}") from exc

    if not isinstance(document, dict):
        raise errors.ValidationError("Body must be a JSON object")
    return document
