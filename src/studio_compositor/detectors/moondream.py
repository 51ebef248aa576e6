"""Moondream HTTP client: outline segmentation, box detection and image queries."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Final, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from studio_compositor.vision.image import to_data_url
from studio_compositor.vision.types import BoundingBox, OutlineSegmentation

LOG = logging.getLogger(__name__)
DEFAULT_API_URL: Final[str] = "https://api.moondream.ai/v1"
RETRYABLE_STATUS: Final[frozenset[int]] = frozenset({408, 429})


class SupportsSegmentation(Protocol):
    """Protocol for the segmentation + detection service used by the detector."""

    def segment(
        self,
        image: bytes,
        prompt: str,
        *,
        mime_type: str = "image/jpeg",
        spatial_ref: Sequence[float] | None = None,
    ) -> OutlineSegmentation | None:
        """Return an outline for the object named by `prompt`, or None."""
        ...

    def detect(
        self,
        image: bytes,
        object_class: str,
        *,
        mime_type: str = "image/jpeg",
    ) -> list[BoundingBox]:
        """Return boxes of every instance of `object_class`."""
        ...


class _Box(BaseModel):
    model_config = ConfigDict(extra="ignore")

    x_min: float = 0.0
    y_min: float = 0.0
    x_max: float = 1.0
    y_max: float = 1.0


class _SegmentOut(BaseModel):
    model_config = ConfigDict(extra="ignore")

    path: str | None = None
    bbox: _Box | None = None


class _DetectOut(BaseModel):
    model_config = ConfigDict(extra="ignore")

    objects: list[_Box] = Field(default_factory=list)


@dataclass(slots=True)
class MoondreamClient:
    """Client for the Moondream vision API.

    Attributes:
        api_key: Value of the `X-Moondream-Auth` header.
        api_url: API base URL.
        timeout_s: Request timeout in seconds.
        max_objects: Cap passed to the detect endpoint.
        client_factory: Builds the `httpx.Client` (injectable for tests).
    """

    api_key: str
    api_url: str = DEFAULT_API_URL
    timeout_s: float = 60.0
    max_objects: int = 10
    client_factory: Callable[..., httpx.Client] = httpx.Client

    def _post(self, endpoint: str, body: dict[str, Any]) -> httpx.Response:
        headers = {"X-Moondream-Auth": self.api_key, "Content-Type": "application/json"}
        with self.client_factory(timeout=self.timeout_s) as client:
            return client.post(f"{self.api_url}/{endpoint}", json=body, headers=headers)

    def segment(
        self,
        image: bytes,
        prompt: str,
        *,
        mime_type: str = "image/jpeg",
        spatial_ref: Sequence[float] | None = None,
    ) -> OutlineSegmentation | None:
        """Segment the object described by `prompt`.

        Args:
            image: Image bytes.
            prompt: Object description, e.g. "the red dress".
            mime_type: Image MIME type.
            spatial_ref: Optional point `[x, y]` or box `[x1, y1, x2, y2]`
                (normalized) steering the service to one instance.

        Returns:
            The outline and its box, or None when the service had no path or
            rejected the request.

        Raises:
            httpx.HTTPError: On transport failures, timeouts and rate limits
                (408, 429) and server errors (5xx). These are retryable.
        """
        body: dict[str, Any] = {"image_url": to_data_url(image, mime_type), "object": prompt}
        if spatial_ref:
            body["spatial_refs"] = [list(spatial_ref)]
        LOG.info("Moondream segment: %r spatial_ref=%s", prompt, spatial_ref)
        resp = self._post("segment", body)
        if resp.status_code in RETRYABLE_STATUS or resp.is_server_error:
            LOG.warning("Moondream segment transient error: %s", resp.status_code)
            resp.raise_for_status()
        if resp.is_error:
            LOG.error("Moondream segment API error: %s %s", resp.status_code, resp.text[:200])
            return None
        try:
            out = _SegmentOut.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            LOG.warning("Moondream segment returned an unexpected payload: %s", e)
            return None
        if not out.path or out.bbox is None:
            LOG.info("Moondream segment: no path for %r", prompt)
            return None
        try:
            box = BoundingBox.from_mapping(out.bbox.model_dump())
        except ValueError as e:
            LOG.warning("Moondream segment returned a degenerate box for %r: %s", prompt, e)
            return None
        return OutlineSegmentation(outline_path=out.path, bounding_box=box)

    def detect(
        self,
        image: bytes,
        object_class: str,
        *,
        mime_type: str = "image/jpeg",
    ) -> list[BoundingBox]:
        """Detect every instance of `object_class`.

        Degenerate boxes are dropped.

        Raises:
            httpx.HTTPError: If the request fails.
        """
        body = {
            "image_url": to_data_url(image, mime_type),
            "object": object_class,
            "settings": {"max_objects": self.max_objects},
        }
        resp = self._post("detect", body)
        resp.raise_for_status()
        out = _DetectOut.model_validate(resp.json())
        boxes: list[BoundingBox] = []
        for obj in out.objects:
            try:
                boxes.append(BoundingBox.from_mapping(obj.model_dump()))
            except ValueError:
                LOG.debug("Dropping degenerate detect box %s", obj)
        LOG.info("Moondream detect: %r -> %s boxes", object_class, len(boxes))
        return boxes

    def query(self, image: bytes, question: str, *, mime_type: str = "image/jpeg") -> str:
        """Ask a free-form question about an image.

        Raises:
            httpx.HTTPError: If the request fails.
        """
        resp = self._post("query", {"image_url": to_data_url(image, mime_type), "question": question})
        resp.raise_for_status()
        answer = resp.json().get("answer")
        return answer if isinstance(answer, str) else ""
