"""Background removal via Replicate-hosted segmentation models.

Replicate returns different shapes depending on model and client version: a
URL string, a file-like/streamed binary payload, an iterator of chunks, or a
list/dict wrapper. `normalize_output` turns every shape into one string
reference (remote URL or PNG data URL) right after the call.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any, Final, Literal, Protocol

import replicate

from studio_compositor.vision.image import crop_to_box, img_to_jpeg_bytes, open_image, to_data_url
from studio_compositor.vision.types import BoundingBox

LOG = logging.getLogger(__name__)

RemovalMode = Literal["primary", "alternate"]

# BiRefNet-based background removal.
PRIMARY_MODEL: Final[str] = (
    "lucataco/remove-bg:95fcc2a26d3899cd6c2691c900465aaeff466285a65c14638cc5f36f34befaf1"
)
# rembg; sometimes better on fashion items.
ALTERNATE_MODEL: Final[str] = (
    "cjwbw/rembg:fb8af171cfa1616ddcf1242c093f9c46bcada5ad4cf6f2fbe8b81b330ec5c003"
)
MODELS: Final[dict[str, str]] = {"primary": PRIMARY_MODEL, "alternate": ALTERNATE_MODEL}


@dataclass(frozen=True)
class MaskOutcome:
    """Result of one background-removal call.

    Attributes:
        mask_url: Cutout reference (remote URL or PNG data URL); empty on failure.
        success: Whether a cutout was produced.
        error: Failure reason when `success` is False.
    """

    mask_url: str
    success: bool
    error: str | None = None

    @classmethod
    def failed(cls, error: str) -> MaskOutcome:
        return cls(mask_url="", success=False, error=error)


class SupportsBackgroundRemoval(Protocol):
    """Protocol for a background remover."""

    def remove_background(self, image_ref: str, *, mode: RemovalMode = "primary") -> MaskOutcome:
        """Cut the main subject out of `image_ref` (URL or data URL)."""
        ...


def _bytes_to_data_url(data: bytes) -> str:
    return to_data_url(data, "image/png")


def normalize_output(output: Any) -> str:
    """Reduce any Replicate output shape to a single image reference.

    Returns:
        A URL or data URL, or "" when the output holds nothing usable.
    """
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    if isinstance(output, (bytes, bytearray, memoryview)):
        return _bytes_to_data_url(bytes(output)) if output else ""
    if isinstance(output, (list, tuple)):
        return normalize_output(output[0]) if output else ""
    if isinstance(output, Mapping):
        for key in ("url", "output", "image"):
            if output.get(key):
                return normalize_output(output[key])
        return ""
    read = getattr(output, "read", None)
    if callable(read):
        # File-like / streamed payload: read it fully.
        data = read()
        if isinstance(data, (bytes, bytearray)) and data:
            return _bytes_to_data_url(bytes(data))
        url = getattr(output, "url", None)
        return str(url) if url else ""
    if isinstance(output, Iterator):
        chunks = list(output)
        if chunks and all(isinstance(c, (bytes, bytearray)) for c in chunks):
            return _bytes_to_data_url(b"".join(chunks))
        return normalize_output(chunks)
    url = getattr(output, "url", None)
    if url:
        return str(url)
    return ""


class ReplicateBackgroundRemover:
    """Background remover backed by `replicate.run`.

    Args:
        api_token: Replicate API token, used when `run` is not given.
        run: Callable with the `replicate.run(ref, input=...)` signature
            (injectable for tests).
    """

    def __init__(self, api_token: str | None = None, *, run: Callable[..., Any] | None = None) -> None:
        if run is None:
            run = replicate.Client(api_token=api_token).run
        self._run = run

    def remove_background(self, image_ref: str, *, mode: RemovalMode = "primary") -> MaskOutcome:
        """Remove the background of an image given as URL or data URL.

        Never raises; failures are reported through `MaskOutcome`.
        """
        model = MODELS.get(mode)
        if model is None:
            return MaskOutcome.failed(f"Unknown removal mode: {mode!r}")
        LOG.info("Background removal (%s) starting", mode)
        try:
            output = self._run(model, input={"image": image_ref})
        except Exception as e:
            LOG.error("Background removal (%s) failed: %s", mode, e)
            return MaskOutcome.failed(str(e) or type(e).__name__)
        mask_url = normalize_output(output)
        if not mask_url:
            return MaskOutcome.failed("No output from background removal model")
        LOG.info("Background removal (%s) done: %s", mode, mask_url[:60])
        return MaskOutcome(mask_url=mask_url, success=True)

    def segment_with_bbox(
        self,
        image: bytes,
        bbox: BoundingBox,
        mime_type: str = "image/jpeg",
        *,
        mode: RemovalMode = "primary",
    ) -> MaskOutcome:
        """Remove the background inside `bbox` only.

        The image is cropped to the box first so the model sees a single product.
        """
        try:
            crop = crop_to_box(open_image(image), bbox)
        except OSError as e:
            return MaskOutcome.failed(f"Cannot decode {mime_type} image: {e}")
        return self.remove_background(to_data_url(img_to_jpeg_bytes(crop), "image/jpeg"), mode=mode)
