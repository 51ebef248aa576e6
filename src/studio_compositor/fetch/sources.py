"""Resolve image references (local path, data URL, remote URL) to bytes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from studio_compositor.errors import ImageFetchError
from studio_compositor.fetch.remote import FetchedImage, RemoteImageFetcher
from studio_compositor.vision.image import mime_from_path, parse_data_url

LOG = logging.getLogger(__name__)


def is_remote(ref: str) -> bool:
    """Return True for http(s) URLs."""
    return ref.startswith(("http://", "https://"))


@dataclass(slots=True)
class ImageLoader:
    """Load image references of any supported kind.

    Attributes:
        fetcher: Remote fetcher used for http(s) URLs.
        public_dir: Root that site-relative references ("/backgrounds/x.jpg")
            resolve against. When unset, such references are plain paths.
    """

    fetcher: RemoteImageFetcher = field(default_factory=RemoteImageFetcher)
    public_dir: Path | None = None

    def local_path(self, ref: str) -> Path:
        """Map a local reference to a filesystem path."""
        if self.public_dir is not None:
            return self.public_dir / ref.lstrip("/")
        return Path(ref)

    def load(self, ref: str) -> FetchedImage:
        """Return the bytes and MIME type behind `ref`.

        Raises:
            ImageFetchError: If the reference cannot be resolved.
        """
        if not ref:
            raise ImageFetchError("Empty image reference")
        if ref.startswith("data:"):
            try:
                data, mime = parse_data_url(ref)
            except ValueError as e:
                raise ImageFetchError(str(e)) from e
            return FetchedImage(data=data, mime_type=mime)
        if is_remote(ref):
            return self.fetcher.fetch(ref)

        path = self.local_path(ref)
        if not path.is_file():
            raise ImageFetchError(f"Local file not found: {path}")
        try:
            data = path.read_bytes()
        except OSError as e:
            raise ImageFetchError(f"Cannot read {path}: {e}") from e
        LOG.debug("Loaded local image %s (%s bytes)", path, len(data))
        return FetchedImage(data=data, mime_type=mime_from_path(path))
