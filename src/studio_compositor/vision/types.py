"""Core vision data types shared across the compositing pipeline."""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

DetectionSource = Literal["segment", "detect", "fallback", "full_frame"]


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box in normalized image coordinates.

    Attributes:
        x_min, y_min, x_max, y_max: Coordinates relative to the image size,
            origin top-left, all in [0, 1] with x_min < x_max and y_min < y_max.
    """

    x_min: float
    y_min: float
    x_max: float
    y_max: float

    def __post_init__(self) -> None:
        for name in ("x_min", "y_min", "x_max", "y_max"):
            v = getattr(self, name)
            if not (0.0 <= v <= 1.0) or math.isnan(v):
                raise ValueError(f"BoundingBox.{name}={v!r} is outside [0, 1]")
        if not (self.x_min < self.x_max and self.y_min < self.y_max):
            raise ValueError(
                "BoundingBox must satisfy x_min<x_max and y_min<y_max, got "
                f"({self.x_min}, {self.y_min}, {self.x_max}, {self.y_max})"
            )

    @classmethod
    def full_frame(cls) -> BoundingBox:
        """Return the box covering the whole image."""
        return cls(0.0, 0.0, 1.0, 1.0)

    @classmethod
    def default_guess(cls) -> BoundingBox:
        """Return the generous box used when every locator failed."""
        return cls(0.1, 0.1, 0.9, 0.9)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> BoundingBox:
        """Build a box from a `{x_min, y_min, x_max, y_max}` mapping.

        Values are clipped to [0, 1] first; services occasionally report
        coordinates a hair outside the frame.

        Raises:
            ValueError: If a coordinate is missing or not a number, or the
                clipped box is empty.
        """

        def _get(key: str) -> float:
            try:
                value = float(data[key])
            except KeyError as e:
                raise ValueError(f"Bounding box is missing {key!r}") from e
            except (TypeError, ValueError) as e:
                raise ValueError(f"Bounding box {key!r} is not a number: {data[key]!r}") from e
            return max(0.0, min(1.0, value))

        return cls(_get("x_min"), _get("y_min"), _get("x_max"), _get("y_max"))

    def width(self) -> float:
        """Return the normalized width."""
        return self.x_max - self.x_min

    def height(self) -> float:
        """Return the normalized height."""
        return self.y_max - self.y_min

    def to_pixels(self, w: int, h: int) -> tuple[int, int, int, int]:
        """Convert to a `(left, top, right, bottom)` pixel crop rectangle.

        Offsets are floored; the rectangle always lies inside a `w`x`h`
        image and is at least one pixel wide and high.
        """
        if w <= 0 or h <= 0:
            raise ValueError(f"Image size must be positive, got {w}x{h}")
        left = min(math.floor(self.x_min * w), w - 1)
        top = min(math.floor(self.y_min * h), h - 1)
        width = max(1, math.floor(self.width() * w))
        height = max(1, math.floor(self.height() * h))
        right = min(left + width, w)
        bottom = min(top + height, h)
        return left, top, right, bottom

    def as_dict(self) -> dict[str, float]:
        """Return the box as a plain mapping."""
        return {
            "x_min": self.x_min,
            "y_min": self.y_min,
            "x_max": self.x_max,
            "y_max": self.y_max,
        }


@dataclass(frozen=True)
class DetectedItem:
    """An item named by the identify pass, with a coarse 9-cell location."""

    name: str
    location: str = ""


@dataclass(frozen=True)
class OutlineSegmentation:
    """Outline-based segmentation: an SVG-like path in normalized coordinates."""

    outline_path: str
    bounding_box: BoundingBox


@dataclass(frozen=True)
class MaskSegmentation:
    """Mask-based segmentation: a background-removed image reference."""

    mask_url: str


SegmentationResult = OutlineSegmentation | MaskSegmentation


@dataclass(frozen=True)
class DetectedProduct:
    """One product found in an uploaded photo.

    Attributes:
        id: Stable id within one detection call ("product-1", ...).
        description: Market-language name from the identify pass.
        bounding_box: Normalized box of the product.
        outline_path: Outline path when segmentation succeeded.
        source: Stage that produced the box, so a guessed default can be
            told apart from a confident outline.
    """

    id: str
    description: str
    bounding_box: BoundingBox
    outline_path: str | None = None
    source: DetectionSource = "segment"


@dataclass(frozen=True)
class DetectionResult:
    """Products detected in one image. Never empty."""

    products: list[DetectedProduct] = field(default_factory=list)

    @property
    def total_count(self) -> int:
        """Return the number of detected products."""
        return len(self.products)
