"""Tests for bounded request body reading and decompression."""

from __future__ import annotations

import asyncio
import gzip
from collections.abc import AsyncIterator

import pytest

from app.core import errors
from app.services import ingestion


async def _stream(*chunks: bytes) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk


def test_read_limited_collects_chunks() -> None:
    body = asyncio.run(ingestion.read_limited(_stream(b"ab", b"cd"), max_size=4))
    assert body == b"abcd"


def test_read_limited_rejects_declared_length() -> None:
    """Test that an oversized Content-Length is refused before reading."""
    with pytest.raises(errors.PayloadTooLargeError):
        asyncio.run(ingestion.read_limited(_stream(), max_size=4, declared_length="5"))


def test_read_limited_rejects_streamed_overflow() -> None:
    """Test that the cap holds even when the declared length lies."""
    with pytest.raises(errors.PayloadTooLargeError):
        asyncio.run(
            ingestion.read_limited(
                _stream(b"abc", b"def"), max_size=4, declared_length="1"
            )
        )


def test_gunzip_limited_round_trip() -> None:
    data = b"x" * 200_000
    assert ingestion.gunzip_limited(gzip.compress(data), max_size=200_000) == data


def test_gunzip_limited_stops_compression_bomb() -> None:
    """Test that a highly compressible body cannot inflate past the cap."""
    bomb = gzip.compress(b"\0" * 5_000_000)
    assert len(bomb) < 10_000
    with pytest.raises(errors.PayloadTooLargeError):
        ingestion.gunzip_limited(bomb, max_size=1_000_000)


def test_gunzip_limited_decodes_concatenated_members() -> None:
    """Test that a body of several gzip members decodes in full."""
    raw = b'{"lat": 1.5, "lon": -2.25, "tiles": []}'
    body = gzip.compress(raw[:10]) + gzip.compress(raw[10:])
    assert ingestion.gunzip_limited(body, max_size=1024) == raw
    assert ingestion.decode_json_body(body, "gzip", 1024)["lon"] == -2.25


def test_gunzip_limited_caps_across_members() -> None:
    """Test that the size cap counts output from every member."""
    body = gzip.compress(b"a" * 600) + gzip.compress(b"b" * 600)
    with pytest.raises(errors.PayloadTooLargeError):
        ingestion.gunzip_limited(body, max_size=1000)


def test_gunzip_limited_rejects_truncated_second_member() -> None:
    second = gzip.compress(b"b" * 100)
    body = gzip.compress(b"a" * 100) + second[: len(second) // 2]
    with pytest.raises(errors.ValidationError, match="truncated"):
        ingestion.gunzip_limited(body, max_size=10_000)


def test_gunzip_limited_rejects_truncated_stream() -> None:
    compressed = gzip.compress(b'{"lat": 1.0, "lon": 2.0}' * 10)
    with pytest.raises(errors.ValidationError, match="truncated"):
        ingestion.gunzip_limited(compressed[: len(compressed) // 2], max_size=10_000)


def test_decode_json_body_identity_and_gzip() -> None:
    raw = b'{"lat": 1.5}'
    assert ingestion.decode_json_body(raw, None, 1024) == {"lat": 1.5}
    assert ingestion.decode_json_body(raw, "identity", 1024) == {"lat": 1.5}
    assert ingestion.decode_json_body(gzip.compress(raw), "GZIP", 1024) == {"lat": 1.5}
    assert ingestion.decode_json_body(gzip.compress(raw), "x-gzip", 1024) == {
        "lat": 1.5
    }


def test_decode_json_body_rejects_unsupported_encoding() -> None:
    with pytest.raises(errors.ValidationError, match="Unsupported"):
        ingestion.decode_json_body(b"{}", "br", 1024)


def test_decode_json_body_rejects_non_object() -> None:
    with pytest.raises(errors.ValidationError, match="object"):
        ingestion.decode_json_body(b"[1, 2]", None, 1024)


def test_decode_json_body_rejects_invalid_utf8() -> None:
    with pytest.raises(errors.ValidationError, match="UTF-8"):
        ingestion.decode_json_body(b"\xff\xfe{}", None, 1024)
