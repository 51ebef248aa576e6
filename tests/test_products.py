from __future__ import annotations

import json
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import httpx
import pytest
from PIL import Image

from studio_compositor.detectors.moondream import MoondreamClient
from studio_compositor.detectors.products import (
    MAX_ITEMS,
    MultiProductDetector,
    PacingPolicy,
    identify_instruction,
    location_to_point,
)
from studio_compositor.fetch.sources import ImageLoader
from studio_compositor.pipelines.clean_reference import CleanReferenceCompositor
from studio_compositor.vision.image import img_to_jpeg_bytes, open_image
from studio_compositor.vision.types import BoundingBox, OutlineSegmentation


class _FakeIdentifier:
    def __init__(self, reply: str | Exception) -> None:
        self.reply = reply
        self.calls: list[dict[str, Any]] = []

    def ask(self, instruction: str, **kwargs: Any) -> str:
        self.calls.append({"instruction": instruction, **kwargs})
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply


class _FakeSegmenter:
    """Scripted segmentation: `outlines[name]` may be an outline, None, or an exception."""

    def __init__(
        self,
        outlines: dict[str, OutlineSegmentation | None | Exception] | None = None,
        boxes: dict[str, list[BoundingBox]] | None = None,
        events: list[str] | None = None,
    ) -> None:
        self.outlines = outlines or {}
        self.boxes = boxes or {}
        self.events = events if events is not None else []
        self.segment_calls: list[tuple[str, Sequence[float] | None]] = []
        self.detect_calls: list[str] = []

    def segment(
        self,
        image: bytes,
        prompt: str,
        *,
        mime_type: str = "image/jpeg",
        spatial_ref: Sequence[float] | None = None,
    ) -> OutlineSegmentation | None:
        self.segment_calls.append((prompt, spatial_ref))
        self.events.append(f"segment:{prompt}")
        out = self.outlines.get(prompt)
        if isinstance(out, Exception):
            raise out
        return out

    def detect(self, image: bytes, object_class: str, *, mime_type: str = "image/jpeg") -> list[BoundingBox]:
        self.detect_calls.append(object_class)
        return self.boxes.get(object_class, [])


def _identify_reply(*items: tuple[str, str]) -> str:
    return json.dumps(
        {"detected_count": len(items), "items": [{"short_name": n, "location": loc} for n, loc in items]}
    )


def _outline(x0: float, y0: float, x1: float, y1: float) -> OutlineSegmentation:
    path = f"M {x0} {y0} L {x1} {y0} L {x1} {y1} L {x0} {y1} Z"
    return OutlineSegmentation(outline_path=path, bounding_box=BoundingBox(x0, y0, x1, y1))


def test_location_to_point_english_and_french() -> None:
    assert location_to_point("top-left") == (0.2, 0.2)
    assert location_to_point(" Bas-Droite ") == (0.8, 0.8)
    assert location_to_point("somewhere") is None


def test_identify_instruction_mentions_language_and_positions() -> None:
    text = identify_instruction("french")
    assert "FRENCH" in text
    assert "bottom-right" in text


def test_pacing_policy_validation() -> None:
    with pytest.raises(ValueError):
        PacingPolicy(delay_s=-1)
    with pytest.raises(ValueError):
        PacingPolicy(max_attempts=0)


def test_three_items_segmented_sequentially_with_delay_between() -> None:
    events: list[str] = []
    seg = _FakeSegmenter(
        outlines={
            "sac rouge": _outline(0.1, 0.1, 0.3, 0.3),
            "sac bleu": _outline(0.4, 0.4, 0.6, 0.6),
            "chaussure noire": _outline(0.7, 0.7, 0.9, 0.9),
        },
        events=events,
    )
    identifier = _FakeIdentifier(
        _identify_reply(("sac rouge", "top-left"), ("sac bleu", "center"), ("chaussure noire", "bottom-right"))
    )
    detector = MultiProductDetector(
        identifier,
        seg,
        pacing=PacingPolicy(delay_s=0.5),
        sleep=lambda s: events.append(f"sleep:{s}"),
    )

    result = detector.detect(b"img")

    assert events == [
        "segment:sac rouge",
        "sleep:0.5",
        "segment:sac bleu",
        "sleep:0.5",
        "segment:chaussure noire",
    ]
    assert seg.segment_calls[0] == ("sac rouge", (0.2, 0.2))
    assert [p.id for p in result.products] == ["product-1", "product-2", "product-3"]
    assert all(p.source == "segment" and p.outline_path for p in result.products)
    assert identifier.calls[0]["temperature"] == pytest.approx(0.2)
    assert identifier.calls[0]["json_mode"] is True


def test_fallback_chain_outline_then_detect_then_default_guess() -> None:
    detect_box = BoundingBox(0.2, 0.3, 0.5, 0.9)
    seg = _FakeSegmenter(
        outlines={"robe verte": _outline(0.1, 0.1, 0.2, 0.2), "sac jaune": None, "montre": None},
        boxes={"sac jaune": [detect_box]},
    )
    identifier = _FakeIdentifier(_identify_reply(("robe verte", "center"), ("sac jaune", "x"), ("montre", "haut-gauche")))
    result = MultiProductDetector(identifier, seg, pacing=PacingPolicy(delay_s=0), sleep=lambda _s: None).detect(b"img")

    sources = [p.source for p in result.products]
    assert sources == ["segment", "detect", "fallback"]
    assert result.products[1].bounding_box == detect_box
    assert result.products[1].outline_path is None
    assert result.products[2].bounding_box == BoundingBox.default_guess()
    assert seg.detect_calls == ["sac jaune", "montre"]
    # Unknown location label: no spatial hint.
    assert seg.segment_calls[1] == ("sac jaune", None)


def test_segmentation_retried_only_when_it_raises() -> None:
    class _Flaky(_FakeSegmenter):
        def segment(self, image: bytes, prompt: str, **kwargs: Any) -> OutlineSegmentation | None:
            self.segment_calls.append((prompt, kwargs.get("spatial_ref")))
            if len(self.segment_calls) == 1:
                raise TimeoutError("busy")
            return _outline(0.1, 0.1, 0.5, 0.5) if prompt == "bag" else None

    seg = _Flaky()
    identifier = _FakeIdentifier(_identify_reply(("bag", "center"), ("hat", "center")))
    detector = MultiProductDetector(
        identifier, seg, pacing=PacingPolicy(delay_s=0, max_attempts=3), language="english", sleep=lambda _s: None
    )

    result = detector.detect(b"img")

    assert [name for name, _ in seg.segment_calls] == ["bag", "bag", "hat"]
    assert [p.source for p in result.products] == ["segment", "fallback"]


def test_zero_items_yields_full_frame_product() -> None:
    seg = _FakeSegmenter()
    result = MultiProductDetector(_FakeIdentifier(_identify_reply()), seg).detect(b"img")

    assert result.total_count == 1
    only = result.products[0]
    assert only.bounding_box == BoundingBox.full_frame()
    assert only.source == "full_frame"
    assert only.description == "Produit"
    assert seg.segment_calls == []


def test_identify_failure_still_yields_one_product() -> None:
    detector = MultiProductDetector(_FakeIdentifier(RuntimeError("boom")), _FakeSegmenter(), language="english")
    result = detector.detect(b"img")
    assert result.total_count == 1
    assert result.products[0].description == "Product"


def test_identify_caps_items_and_filters_names() -> None:
    names = [(f"item number {i}", "center") for i in range(12)] + [("ab", "center"), ("x" * 60, "center")]
    items = MultiProductDetector(_FakeIdentifier(_identify_reply(*names)), _FakeSegmenter()).identify(b"img")
    assert len(items) == MAX_ITEMS
    assert all(3 <= len(it.name) <= 59 for it in items)


def test_identify_parses_bullet_list_when_reply_is_not_json() -> None:
    reply = "- sac orange\n- 2) chaussure\n* ok\n" + "\n".join(f"- article {i}" for i in range(10))
    items = MultiProductDetector(_FakeIdentifier(reply), _FakeSegmenter()).identify(b"img")
    assert [it.name for it in items][:2] == ["sac orange", "chaussure"]
    assert len(items) == 6
    assert all(it.location == "" for it in items)


def test_two_bags_end_to_end_produce_distinct_clean_references(tmp_path: Path) -> None:
    img = Image.new("RGB", (200, 200), (255, 255, 255))
    img.paste((255, 140, 0), (10, 10, 90, 90))
    img.paste((255, 105, 180), (70, 70, 150, 150))
    upload = tmp_path / "bags.jpg"
    upload.write_bytes(img_to_jpeg_bytes(img))

    seg = _FakeSegmenter(
        outlines={
            "orange handbag": _outline(0.05, 0.05, 0.45, 0.45),
            "pink handbag": _outline(0.35, 0.35, 0.75, 0.75),
        }
    )
    identifier = _FakeIdentifier(_identify_reply(("orange handbag", "top-left"), ("pink handbag", "center")))
    result = MultiProductDetector(identifier, seg, language="english", sleep=lambda _s: None).detect(
        upload.read_bytes()
    )

    assert [p.description for p in result.products] == ["orange handbag", "pink handbag"]
    assert seg.segment_calls == [("orange handbag", (0.2, 0.2)), ("pink handbag", (0.5, 0.5))]
    assert result.products[0].bounding_box != result.products[1].bounding_box

    compositor = CleanReferenceCompositor(ImageLoader())
    refs = [
        open_image(compositor.build(str(upload), p.bounding_box, p.outline_path)) for p in result.products
    ]
    assert all(r.mode == "RGBA" for r in refs)
    centers = [r.getpixel((r.width // 4, r.height // 4)) for r in refs]
    # Top-left quarter of each cutout is dominated by its own bag color.
    assert centers[0][0] > 200 and centers[0][1] > 100 and centers[0][2] < 60
    assert centers[1][0] > 200 and centers[1][2] > 120


def _moondream(handler: Any) -> MoondreamClient:
    transport = httpx.MockTransport(handler)
    return MoondreamClient(
        api_key="md-key",
        api_url="https://md.test/v1",
        client_factory=lambda **kw: httpx.Client(transport=transport, **kw),
    )


def test_moondream_transient_failures_are_retried_up_to_max_attempts() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if request.url.path == "/v1/segment" and paths.count("/v1/segment") < 3:
            return httpx.Response(503, json={"error": "busy"})
        return httpx.Response(
            200,
            json={"path": "M 0.1 0.1 L 0.4 0.1 L 0.4 0.5 Z", "bbox": {"x_min": 0.1, "y_min": 0.1, "x_max": 0.4, "y_max": 0.5}},
        )

    detector = MultiProductDetector(
        _FakeIdentifier(_identify_reply(("sac orange", "centre"))),
        _moondream(handler),
        pacing=PacingPolicy(delay_s=0, max_attempts=3),
        sleep=lambda _s: None,
    )

    result = detector.detect(b"img")

    assert paths == ["/v1/segment"] * 3
    assert result.products[0].source == "segment"


def test_moondream_connection_errors_exhaust_attempts_then_fall_back_to_detect() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if request.url.path == "/v1/segment":
            raise httpx.ConnectError("down", request=request)
        return httpx.Response(200, json={"objects": [{"x_min": 0.2, "y_min": 0.2, "x_max": 0.6, "y_max": 0.7}]})

    detector = MultiProductDetector(
        _FakeIdentifier(_identify_reply(("sac orange", "centre"))),
        _moondream(handler),
        pacing=PacingPolicy(delay_s=0, max_attempts=3),
        sleep=lambda _s: None,
    )

    result = detector.detect(b"img")

    assert paths == ["/v1/segment", "/v1/segment", "/v1/segment", "/v1/detect"]
    assert result.products[0].source == "detect"


def test_moondream_missing_path_is_not_retried() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if request.url.path == "/v1/segment":
            return httpx.Response(200, json={"path": None})
        return httpx.Response(200, json={"objects": []})

    detector = MultiProductDetector(
        _FakeIdentifier(_identify_reply(("sac orange", "centre"))),
        _moondream(handler),
        pacing=PacingPolicy(delay_s=0, max_attempts=3),
        sleep=lambda _s: None,
    )

    result = detector.detect(b"img")

    assert paths == ["/v1/segment", "/v1/detect"]
    assert result.products[0].source == "fallback"
