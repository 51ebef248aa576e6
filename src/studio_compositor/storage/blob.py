"""Blob storage for generated images and clean references."""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import boto3

from studio_compositor.vision.image import ensure_dir, ext_from_mime

LOG = logging.getLogger(__name__)


class SupportsBlobStore(Protocol):
    """Protocol for an opaque blob store."""

    def put(self, data: bytes, key: str, content_type: str) -> str:
        """Store `data` under `key` and return its public URL."""
        ...

    def signed_url(self, key: str, ttl_s: int = 3600) -> str:
        """Return a time-limited URL for `key`."""
        ...


def _epoch_ms(now: float | None) -> int:
    return int((time.time() if now is None else now) * 1000)


def generated_image_key(
    user_id: str,
    mime_type: str = "image/png",
    *,
    now: float | None = None,
    token: str | None = None,
) -> str:
    """Key of a generated image: `generated/{user_id}/{epoch_ms}-{random}{ext}`.

    The extension follows `mime_type`.
    """
    token = token or secrets.token_hex(4)
    return f"generated/{user_id}/{_epoch_ms(now)}-{token}{ext_from_mime(mime_type)}"


def clean_reference_key(product_id: str, *, now: float | None = None) -> str:
    """Key of a clean reference: `clean-references/{product_id}-{epoch_ms}.png`."""
    return f"clean-references/{product_id}-{_epoch_ms(now)}.png"


@dataclass(slots=True)
class S3BlobStore:
    """S3-compatible store (AWS S3, Cloudflare R2, MinIO).

    Attributes:
        bucket: Bucket name.
        prefix: Key prefix prepended to every key.
        public_base_url: CDN/public base URL; defaults to the bucket endpoint.
        region: AWS region.
        endpoint_url: Custom endpoint for S3-compatible providers.
        client: Pre-built boto3 S3 client (injectable for tests).
    """

    bucket: str
    prefix: str = ""
    public_base_url: str | None = None
    region: str = "us-east-1"
    endpoint_url: str | None = None
    client: Any = field(default=None)

    def __post_init__(self) -> None:
        if self.client is None:
            self.client = boto3.client("s3", region_name=self.region, endpoint_url=self.endpoint_url)

    def _full_key(self, key: str) -> str:
        return f"{self.prefix.strip('/')}/{key}".lstrip("/")

    def put(self, data: bytes, key: str, content_type: str) -> str:
        full_key = self._full_key(key)
        LOG.info("Uploading %s bytes to s3://%s/%s", len(data), self.bucket, full_key)
        self.client.put_object(Bucket=self.bucket, Key=full_key, Body=data, ContentType=content_type)
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{full_key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{full_key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{full_key}"

    def signed_url(self, key: str, ttl_s: int = 3600) -> str:
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": self._full_key(key)},
            ExpiresIn=ttl_s,
        )


@dataclass(slots=True)
class LocalBlobStore:
    """Store blobs under a local directory; URLs are plain file paths.

    Used by the command-line scripts when no bucket is configured.
    """

    root: Path

    def put(self, data: bytes, key: str, content_type: str) -> str:
        path = self.root / key
        ensure_dir(path.parent)
        path.write_bytes(data)
        LOG.info("Stored %s (%s, %s bytes)", path, content_type, len(data))
        return str(path)

    def signed_url(self, key: str, ttl_s: int = 3600) -> str:
        _ = ttl_s
        return str(self.root / key)
