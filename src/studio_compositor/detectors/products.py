"""Multi-product detection: identify items with a fast VLM, then outline each one.

Steps:
  1) Identify: one low-temperature VLM call lists distinct items with coarse
     9-cell locations.
  2) Resolve each location label to a normalized anchor point.
  3) Segment items one at a time (paced by `PacingPolicy`), using the anchor
     to pick the right instance among look-alikes.
  4) Per-item fallback: outline -> detect box -> default guess box.
  5) No items at all -> one synthetic product covering the full frame.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Final

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from studio_compositor.detectors.moondream import SupportsSegmentation
from studio_compositor.llm.client import SupportsVisionLanguage, parse_json_object
from studio_compositor.vision.types import (
    BoundingBox,
    DetectedItem,
    DetectedProduct,
    DetectionResult,
    OutlineSegmentation,
)

LOG = logging.getLogger(__name__)

MAX_ITEMS: Final[int] = 8
MIN_NAME_LEN: Final[int] = 3
MAX_NAME_LEN: Final[int] = 59
IDENTIFY_TEMPERATURE: Final[float] = 0.2

LOCATION_ANCHORS: Final[dict[str, tuple[float, float]]] = {
    "top-left": (0.2, 0.2),
    "top-center": (0.5, 0.2),
    "top-right": (0.8, 0.2),
    "middle-left": (0.2, 0.5),
    "center": (0.5, 0.5),
    "middle-right": (0.8, 0.5),
    "bottom-left": (0.2, 0.8),
    "bottom-center": (0.5, 0.8),
    "bottom-right": (0.8, 0.8),
    # French labels
    "haut-gauche": (0.2, 0.2),
    "haut-centre": (0.5, 0.2),
    "haut-droite": (0.8, 0.2),
    "milieu-gauche": (0.2, 0.5),
    "centre": (0.5, 0.5),
    "milieu-droite": (0.8, 0.5),
    "bas-gauche": (0.2, 0.8),
    "bas-centre": (0.5, 0.8),
    "bas-droite": (0.8, 0.8),
}

ENGLISH_LOCATIONS: Final[tuple[str, ...]] = tuple(LOCATION_ANCHORS)[:9]

_FULL_FRAME_NAMES = {"french": "Produit", "english": "Product"}
_LANGUAGE_NAMES = {"french": "FRENCH", "english": "ENGLISH"}
_BULLET_RE = re.compile(r"^[-*•\d.)\s]+")


def location_to_point(location: str) -> tuple[float, float] | None:
    """Map a coarse location label to a normalized `(x, y)` anchor, or None."""
    return LOCATION_ANCHORS.get(location.strip().lower())


@dataclass(frozen=True)
class PacingPolicy:
    """Pacing of per-item segmentation calls.

    Attributes:
        delay_s: Pause between consecutive items (never after the last one).
        max_attempts: Attempts per item when the segmentation call raises.
            A call that returns no outline is not retried.
    """

    delay_s: float = 0.3
    max_attempts: int = 1

    def __post_init__(self) -> None:
        if self.delay_s < 0:
            raise ValueError("delay_s must be >= 0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


class _IdentifiedItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    short_name: str = ""
    location: str = ""

    @field_validator("short_name", "location", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> str:
        return "" if v is None else str(v).strip()


class _IdentifyOut(BaseModel):
    model_config = ConfigDict(extra="ignore")

    detected_count: int | None = None
    items: list[_IdentifiedItem] = Field(default_factory=list)

    @field_validator("items", mode="before")
    @classmethod
    def _coerce_items(cls, v: Any) -> list[Any]:
        if v is None:
            return []
        if isinstance(v, list):
            return v
        if isinstance(v, dict):
            return [v]
        return []


def identify_instruction(language: str) -> str:
    """Build the counting + listing instruction for the identify pass."""
    lang = _LANGUAGE_NAMES.get(language, language.upper())
    labels = ", ".join(ENGLISH_LOCATIONS)
    example = {
        "detected_count": 2,
        "items": [
            {"short_name": "orange handbag", "location": "top-left"},
            {"short_name": "pink handbag", "location": "center"},
        ],
    }
    return f"""
Analyze this image for a fashion and product inventory.

1. First, COUNT the total number of distinct sellable items visible.
2. Then, LIST each item with its position in the image.

IMPORTANT: include items that are partially visible or cut off at the image edges.
IMPORTANT: never give two items the same name. Distinguish look-alike items by
color and type (e.g. "orange handbag" vs "pink handbag").
IMPORTANT: item names must be written in {lang}.

Use one of these positions: {labels}.

Return raw JSON (no markdown, no code fences):
{{"detected_count": <number>, "items": [{{"short_name": "<color> <item type>", "location": "<position>"}}]}}

Example: {example}
    """.strip()


def _parse_items_from_text(text: str) -> list[DetectedItem]:
    """Fallback parser for non-JSON replies: one item per bullet line."""
    names = [_BULLET_RE.sub("", line).strip() for line in text.splitlines()]
    return [DetectedItem(name=n) for n in names if MIN_NAME_LEN <= len(n) < 50][:6]


class MultiProductDetector:
    """Find every product in a photo and outline each one.

    Args:
        identifier: Fast vision-language client for the identify pass.
        segmenter: Segmentation/detection service.
        pacing: Delay and attempts for per-item segmentation.
        language: Market language of item names.
        sleep: Sleep function (injectable for tests).
    """

    def __init__(
        self,
        identifier: SupportsVisionLanguage,
        segmenter: SupportsSegmentation,
        *,
        pacing: PacingPolicy | None = None,
        language: str = "french",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.identifier = identifier
        self.segmenter = segmenter
        self.pacing = pacing or PacingPolicy()
        self.language = language
        self._sleep = sleep

    def identify(self, image: bytes, mime_type: str = "image/jpeg") -> list[DetectedItem]:
        """List distinct items in the image. Returns [] on any failure."""
        try:
            text = self.identifier.ask(
                identify_instruction(self.language),
                image=image,
                mime_type=mime_type,
                temperature=IDENTIFY_TEMPERATURE,
                json_mode=True,
            )
        except Exception:
            LOG.exception("Identify call failed")
            return []

        try:
            parsed = _IdentifyOut.model_validate(parse_json_object(text))
        except (ValueError, ValidationError) as e:
            LOG.warning("Identify reply is not JSON, parsing as a list: %s", e)
            return _parse_items_from_text(text)

        LOG.info("Identify: detected_count=%s items=%s", parsed.detected_count, len(parsed.items))
        items = [
            DetectedItem(name=it.short_name, location=it.location)
            for it in parsed.items
            if MIN_NAME_LEN <= len(it.short_name) <= MAX_NAME_LEN
        ]
        return items[:MAX_ITEMS]

    def _segment_with_attempts(
        self,
        image: bytes,
        mime_type: str,
        item: DetectedItem,
        point: tuple[float, float] | None,
    ) -> OutlineSegmentation | None:
        for attempt in range(1, self.pacing.max_attempts + 1):
            try:
                return self.segmenter.segment(image, item.name, mime_type=mime_type, spatial_ref=point)
            except Exception:
                LOG.warning(
                    "Segmentation raised for %r (attempt %s/%s)",
                    item.name,
                    attempt,
                    self.pacing.max_attempts,
                    exc_info=True,
                )
        return None

    def _locate(self, image: bytes, mime_type: str, index: int, item: DetectedItem) -> DetectedProduct:
        pid = f"product-{index + 1}"
        point = location_to_point(item.location)
        seg = self._segment_with_attempts(image, mime_type, item, point)
        if seg is not None:
            return DetectedProduct(
                id=pid,
                description=item.name,
                bounding_box=seg.bounding_box,
                outline_path=seg.outline_path,
                source="segment",
            )

        LOG.info("No outline for %r, trying box detection", item.name)
        try:
            boxes = self.segmenter.detect(image, item.name, mime_type=mime_type)
        except Exception:
            LOG.warning("Box detection raised for %r", item.name, exc_info=True)
            boxes = []
        if boxes:
            return DetectedProduct(id=pid, description=item.name, bounding_box=boxes[0], source="detect")

        LOG.warning("No box for %r, using the default guess box", item.name)
        return DetectedProduct(
            id=pid,
            description=item.name,
            bounding_box=BoundingBox.default_guess(),
            source="fallback",
        )

    def detect(self, image: bytes, mime_type: str = "image/jpeg") -> DetectionResult:
        """Detect products. Always returns at least one product."""
        t0 = perf_counter()
        items = self.identify(image, mime_type)
        LOG.info(
            "Step 1/2 identify: %s items %s took=%.2fs",
            len(items),
            [f"{it.name} ({it.location})" for it in items],
            perf_counter() - t0,
        )
        if not items:
            return DetectionResult(
                products=[
                    DetectedProduct(
                        id="product-1",
                        description=_FULL_FRAME_NAMES.get(self.language, "Product"),
                        bounding_box=BoundingBox.full_frame(),
                        source="full_frame",
                    )
                ]
            )

        t1 = perf_counter()
        products: list[DetectedProduct] = []
        for i, item in enumerate(items):
            if i > 0 and self.pacing.delay_s > 0:
                self._sleep(self.pacing.delay_s)
            products.append(self._locate(image, mime_type, i, item))
        LOG.info(
            "Step 2/2 segment: %s products (%s outlined) took=%.2fs",
            len(products),
            sum(1 for p in products if p.outline_path),
            perf_counter() - t1,
        )
        return DetectionResult(products=products)
