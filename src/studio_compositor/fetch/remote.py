"""Guarded remote image fetching (scheme/host checks, size and type limits)."""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Final
from urllib.parse import urlsplit

import httpx

from studio_compositor.errors import ImageFetchError

LOG = logging.getLogger(__name__)

ALLOWED_SCHEMES: Final[frozenset[str]] = frozenset({"http", "https"})
BLOCKED_HOSTNAMES: Final[frozenset[str]] = frozenset(
    {
        "localhost",
        "metadata.google.internal",
        "metadata.internal",
        "169.254.169.254",
    }
)
DEFAULT_MAX_BYTES: Final[int] = 10 * 1024 * 1024


def validate_url(url: str, allowed_domains: Sequence[str] = ()) -> str:
    """Check that `url` may be fetched from the server side.

    Rejects non-http(s) schemes, metadata and loopback hostnames, private,
    loopback and link-local IP literals, and (when `allowed_domains` is given)
    hosts outside the allowlist.

    Returns:
        The lowercased hostname.

    Raises:
        ImageFetchError: If the URL is not allowed.
    """
    try:
        parts = urlsplit(url)
    except ValueError as e:
        raise ImageFetchError(f"Invalid URL: {url[:80]!r}") from e
    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise ImageFetchError(f"Protocol not allowed: {parts.scheme!r}")
    host = (parts.hostname or "").lower()
    if not host:
        raise ImageFetchError("URL has no host")
    if host in BLOCKED_HOSTNAMES:
        raise ImageFetchError(f"Hostname blocked: {host}")
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        ip = None
    if ip is not None and (
        ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_unspecified or ip.is_reserved
    ):
        raise ImageFetchError(f"Internal IP not allowed: {host}")
    if allowed_domains and not any(host == d or host.endswith(f".{d}") for d in allowed_domains):
        raise ImageFetchError(f"Domain not in allowlist: {host}")
    return host


@dataclass(frozen=True)
class FetchedImage:
    """Image bytes and the MIME type reported by the server."""

    data: bytes
    mime_type: str


@dataclass(slots=True)
class RemoteImageFetcher:
    """Fetch images over HTTP with SSRF, size and content-type guards.

    Attributes:
        timeout_s: Request timeout in seconds.
        max_bytes: Largest accepted payload.
        require_image: Reject responses whose Content-Type is not `image/*`.
        allowed_domains: Optional host allowlist (suffix match).
        client_factory: Builds the `httpx.Client` (injectable for tests).
    """

    timeout_s: float = 30.0
    max_bytes: int = DEFAULT_MAX_BYTES
    require_image: bool = True
    allowed_domains: tuple[str, ...] = ()
    client_factory: Callable[..., httpx.Client] = field(default=httpx.Client)

    def fetch(self, url: str) -> FetchedImage:
        """Download `url`.

        Raises:
            ImageFetchError: On a blocked URL, HTTP error, oversized payload, or
                a non-image Content-Type when `require_image` is set.
        """
        validate_url(url, self.allowed_domains)
        try:
            with self.client_factory(timeout=self.timeout_s, follow_redirects=True) as client:
                with client.stream("GET", url) as resp:
                    resp.raise_for_status()
                    content_type = resp.headers.get("content-type", "")
                    if self.require_image and not content_type.startswith("image/"):
                        raise ImageFetchError(
                            f"URL did not return an image: {url} (Content-Type: {content_type!r})"
                        )
                    declared = resp.headers.get("content-length")
                    if declared and declared.isdigit() and int(declared) > self.max_bytes:
                        raise ImageFetchError(f"Image too large: {declared} bytes > {self.max_bytes}")
                    chunks: list[bytes] = []
                    total = 0
                    for chunk in resp.iter_bytes():
                        total += len(chunk)
                        if total > self.max_bytes:
                            raise ImageFetchError(f"Image too large: > {self.max_bytes} bytes")
                        chunks.append(chunk)
        except httpx.HTTPError as e:
            raise ImageFetchError(f"Failed to fetch {url}: {e}") from e

        # Drop parameters such as charset and any duplicated values.
        mime = content_type.split(";", 1)[0].split(",", 1)[0].strip() or "image/jpeg"
        LOG.debug("Fetched %s (%s bytes, %s)", url, total, mime)
        return FetchedImage(data=b"".join(chunks), mime_type=mime)
