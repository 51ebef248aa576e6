"""Clean-reference compositing: one product, cropped, on a transparent background.

The outline mask is applied to the full original image before cropping, so the
mask stays aligned with the original pixels whatever the box is.
"""

from __future__ import annotations

import logging
from time import perf_counter

from PIL import Image

from studio_compositor.detectors.background import SupportsBackgroundRemoval
from studio_compositor.errors import ImageFetchError
from studio_compositor.fetch.sources import ImageLoader
from studio_compositor.storage.blob import SupportsBlobStore, clean_reference_key
from studio_compositor.vision.image import (
    apply_mask,
    crop_to_box,
    img_to_jpeg_bytes,
    img_to_png_bytes,
    open_image,
    to_data_url,
    trim_transparent,
)
from studio_compositor.vision.outline import rasterize_outline
from studio_compositor.vision.types import BoundingBox, MaskSegmentation, OutlineSegmentation, SegmentationResult

LOG = logging.getLogger(__name__)


def mask_then_crop(img: Image.Image, box: BoundingBox, outline_path: str) -> Image.Image:
    """Mask the full image with the outline, then crop to the box."""
    w, h = img.size
    masked = apply_mask(img, rasterize_outline(outline_path, w, h))
    return crop_to_box(masked, box)


class CleanReferenceCompositor:
    """Build clean reference images from detection output.

    Args:
        loader: Resolves the original image reference and cutout outputs.
        remover: Background remover used when no outline is available.
    """

    def __init__(self, loader: ImageLoader, remover: SupportsBackgroundRemoval | None = None) -> None:
        self.loader = loader
        self.remover = remover

    def _segment(self, img: Image.Image, box: BoundingBox, outline_path: str | None) -> SegmentationResult | None:
        if outline_path:
            return OutlineSegmentation(outline_path=outline_path, bounding_box=box)
        if self.remover is None:
            return None
        crop = crop_to_box(img, box)
        outcome = self.remover.remove_background(to_data_url(img_to_jpeg_bytes(crop), "image/jpeg"))
        if not outcome.success:
            LOG.warning("Background removal failed: %s", outcome.error)
            return None
        return MaskSegmentation(mask_url=outcome.mask_url)

    def _load_cutout(self, seg: MaskSegmentation) -> bytes | None:
        try:
            return self.loader.load(seg.mask_url).data
        except ImageFetchError as e:
            LOG.warning("Background removal output unreadable: %s", e)
            return None

    def build(self, original_ref: str, box: BoundingBox, outline_path: str | None = None) -> bytes:
        """Return PNG bytes of the product inside `box`.

        With an outline, the full image is masked then cropped and trimmed.
        Otherwise the crop goes through background removal; if that fails the
        plain crop is returned.

        Raises:
            ImageFetchError: If the original image cannot be loaded.
            ValueError: If `outline_path` is malformed or leaves nothing
                visible inside `box`.
        """
        t0 = perf_counter()
        original = self.loader.load(original_ref)
        try:
            img = open_image(original.data)
        except OSError as e:
            raise ImageFetchError(f"Original image is not decodable: {e}") from e
        LOG.info("Clean reference: original %sx%s outline=%s", img.width, img.height, bool(outline_path))

        seg = self._segment(img, box, outline_path)
        cutout = self._load_cutout(seg) if isinstance(seg, MaskSegmentation) else None
        if isinstance(seg, OutlineSegmentation):
            masked = mask_then_crop(img, seg.bounding_box, seg.outline_path)
            if masked.getchannel("A").getbbox() is None:
                raise ValueError("Outline does not cover the bounding box")
            out = img_to_png_bytes(trim_transparent(masked))
        elif cutout is not None:
            out = cutout
        else:
            LOG.warning("No cutout available, returning the plain crop")
            out = img_to_png_bytes(crop_to_box(img, box))

        LOG.info("Clean reference built: %s bytes took=%.2fs", len(out), perf_counter() - t0)
        return out

    def build_and_store(
        self,
        original_ref: str,
        product_id: str,
        box: BoundingBox,
        outline_path: str | None,
        store: SupportsBlobStore,
    ) -> str:
        """Build a clean reference and upload it; returns its URL."""
        data = self.build(original_ref, box, outline_path)
        return store.put(data, clean_reference_key(product_id), "image/png")
