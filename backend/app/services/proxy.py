"""Allow-listed GET proxy for CORS-restricted datasets."""

from __future__ import annotations

import dataclasses
import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from app.core import errors

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

MAX_REDIRECTS = 5


@dataclasses.dataclass
class ProxyResult:
    """A relayed upstream answer.

    ``data`` holds the parsed document when the body was JSON; otherwise
    ``text`` is relayed verbatim with ``content_type``.
    """

    content_type: str | None
    text: str
    data: Any = None
    is_json: bool = False


def is_allowed_host(host: str, allowed_domains: Sequence[str]) -> bool:
    """Check ``host`` against the allow-list.

    A host matches an entry when it equals it or is a subdomain of it, so
    ``raw.githubusercontent.com`` passes for ``githubusercontent.com`` but
    ``evilgithub.com`` does not pass for ``github.com``.
    """
    host = host.lower().rstrip(".")
    for domain in allowed_domains:
        domain = domain.lower().strip(".")
        if host == domain or host.endswith(f".{domain}"):
            return True
    return False


def validate_target(
    target: str | None, allowed_domains: Sequence[str]
) -> httpx.URL:
    """Parse the proxy target and enforce the allow-list.

    Raises:
        ValidationError: If the URL is missing, malformed or not http(s).
        ForbiddenError: If the host is not allow-listed.
    """
    if not target:
        raise errors.ValidationError("Missing 'url' query parameter")
    try:
        url = httpx.URL(target)
    except (httpx.InvalidURL, TypeError, ValueError) as exc:
        raise errors.ValidationError(f"Invalid url: {target}") from exc
    if url.scheme not in ("http", "https") or not url.host:
        raise errors.ValidationError(f"Invalid url: {target}")

    if not is_allowed_host(url.host, allowed_domains):
        raise errors.ForbiddenError(
            f"Domain not allowed: {url.host}. "
            f"Allowed: {', '.join(allowed_domains)}"
        )
    return url


def _looks_like_json(content_type: str | None, text: str) -> bool:
    stripped = text.lstrip()
    return "json" in (content_type or "") or stripped.startswith(("[", "{"))


async def _get_once(
    client: httpx.AsyncClient, url: httpx.URL, max_bytes: int
) -> tuple[httpx.Response, bytes]:
    """Issue one GET without following redirects, reading at most ``max_bytes``.

    The body is only read for success responses.
    """
    try:
        async with client.stream("GET", url, follow_redirects=False) as response:
            if response.is_redirect or not response.is_success:
                return response, b""
            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) > max_bytes:
                    raise errors.UpstreamError(
                        f"Proxy response from {url.host} exceeds {max_bytes} bytes",
                        status_code=502,
                        source="proxy",
                    )
            return response, bytes(body)
    except httpx.TimeoutException as exc:
        raise errors.UpstreamError(
            f"Proxy request to {url.host} timed out", status_code=504, source="proxy"
        ) from exc
    except httpx.HTTPError as exc:
        raise errors.UpstreamError(
            f"Proxy request failed: {exc}", status_code=502, source="proxy"
        ) from exc


async def fetch(
    client: httpx.AsyncClient,
    url: httpx.URL,
    allowed_domains: Sequence[str],
    max_bytes: int,
) -> ProxyResult:
    """Relay one GET to an already validated URL.

    Redirects are followed here, up to ``MAX_REDIRECTS`` hops, and every
    ``Location`` goes through ``validate_target`` before it is requested.

    Raises:
        ForbiddenError: If a redirect points at a host off the allow-list.
        UpstreamError: On a non-success status, timeout, transport error,
            too many redirects, or a body over ``max_bytes``.
    """
    logger.info("Proxying request to: %s", url)
    target = url
    for _ in range(MAX_REDIRECTS + 1):
        response, body = await _get_once(client, target, max_bytes)
        if response.is_redirect:
            location = response.headers["location"]
            target = validate_target(str(target.join(location)), allowed_domains)
            logger.info("Proxy redirected to: %s", target)
            continue

        if not response.is_success:
            logger.error("Proxy error: %d for %s", response.status_code, target)
            raise errors.UpstreamError(
                f"Upstream error: {response.status_code}",
                status_code=response.status_code,
                source="proxy",
            )

        content_type = response.headers.get("content-type")
        try:
            text = body.decode(response.charset_encoding or "utf-8", errors="replace")
        except LookupError:
            text = body.decode("utf-8", errors="replace")
        logger.info("Proxy success: %d bytes from %s", len(body), target.host)

        if _looks_like_json(content_type, text):
            try:
                data = json.loads(text)
            except ValueError:
                logger.debug(
                    "JSON-like body from %s did not parse, relaying raw", target.host
                )
            else:
                return ProxyResult(content_type, text, data=data, is_json=True)
        return ProxyResult(content_type, text)

    raise errors.UpstreamError(
        f"Proxy request to {url.host} exceeded {MAX_REDIRECTS} redirects",
        status_code=502,
        source="proxy",
    )
