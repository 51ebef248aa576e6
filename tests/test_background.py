from __future__ import annotations

import io
from typing import Any

import pytest
from PIL import Image

from studio_compositor.detectors.background import (
    ALTERNATE_MODEL,
    PRIMARY_MODEL,
    ReplicateBackgroundRemover,
    normalize_output,
)
from studio_compositor.vision.image import img_to_png_bytes, open_image, parse_data_url
from studio_compositor.vision.types import BoundingBox


class _UrlObject:
    def __init__(self, url: str) -> None:
        self.url = url


class _FakeRun:
    def __init__(self, output: Any = "https://replicate.delivery/out.png") -> None:
        self.output = output
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def __call__(self, ref: str, *, input: dict[str, Any]) -> Any:
        self.calls.append((ref, input))
        if isinstance(self.output, Exception):
            raise self.output
        return self.output


@pytest.mark.parametrize(
    ("output", "expected"),
    [
        ("https://x/y.png", "https://x/y.png"),
        (["https://x/first.png", "https://x/second.png"], "https://x/first.png"),
        ({"output": "https://x/dict.png"}, "https://x/dict.png"),
        ({"image": ["https://x/nested.png"]}, "https://x/nested.png"),
        (_UrlObject("https://x/file.png"), "https://x/file.png"),
        (None, ""),
        ([], ""),
        ({"status": "failed"}, ""),
        (42, ""),
    ],
)
def test_normalize_output_url_shapes(output: Any, expected: str) -> None:
    assert normalize_output(output) == expected


def test_normalize_output_binary_shapes_become_png_data_urls() -> None:
    for output in (b"\x89PNGdata", io.BytesIO(b"\x89PNGdata"), iter([b"\x89PNG", b"data"])):
        data, mime = parse_data_url(normalize_output(output))
        assert mime == "image/png"
        assert data == b"\x89PNGdata"


def test_remove_background_success_and_mode_selection() -> None:
    run = _FakeRun()
    remover = ReplicateBackgroundRemover(run=run)

    primary = remover.remove_background("https://cdn/x.jpg")
    alternate = remover.remove_background("https://cdn/x.jpg", mode="alternate")

    assert primary.success and primary.mask_url == "https://replicate.delivery/out.png"
    assert alternate.success
    assert [ref for ref, _ in run.calls] == [PRIMARY_MODEL, ALTERNATE_MODEL]
    assert run.calls[0][1] == {"image": "https://cdn/x.jpg"}


@pytest.mark.parametrize("output", [RuntimeError("model cold"), None, []])
def test_remove_background_never_raises(output: Any) -> None:
    outcome = ReplicateBackgroundRemover(run=_FakeRun(output)).remove_background("https://cdn/x.jpg")
    assert not outcome.success
    assert outcome.mask_url == ""
    assert outcome.error


def test_remove_background_unknown_mode() -> None:
    outcome = ReplicateBackgroundRemover(run=_FakeRun()).remove_background("x", mode="bogus")  # type: ignore[arg-type]
    assert not outcome.success
    assert "bogus" in (outcome.error or "")


def test_segment_with_bbox_sends_only_the_cropped_region() -> None:
    img = Image.new("RGB", (100, 60), (0, 0, 0))
    run = _FakeRun()
    remover = ReplicateBackgroundRemover(run=run)

    outcome = remover.segment_with_bbox(img_to_png_bytes(img), BoundingBox(0.0, 0.0, 0.5, 0.5), "image/png")

    assert outcome.success
    sent, mime = parse_data_url(run.calls[0][1]["image"])
    assert mime == "image/jpeg"
    assert open_image(sent).size == (50, 30)


def test_segment_with_bbox_undecodable_image() -> None:
    outcome = ReplicateBackgroundRemover(run=_FakeRun()).segment_with_bbox(b"garbage", BoundingBox.full_frame())
    assert not outcome.success
