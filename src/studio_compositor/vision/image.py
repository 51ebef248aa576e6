"""Image encoding, cropping and alpha helpers."""

from __future__ import annotations

import base64
import binascii
import io
from pathlib import Path

from PIL import Image, ImageChops

from studio_compositor.vision.types import BoundingBox

_EXT_TO_MIME = {
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
}


def ensure_dir(p: Path) -> None:
    """Create `p` if it doesn't exist."""
    p.mkdir(parents=True, exist_ok=True)


def open_image(data: bytes) -> Image.Image:
    """Decode image bytes, forcing the pixel data to load."""
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


def img_to_jpeg_bytes(img: Image.Image, quality: int = 90) -> bytes:
    """Encode an image as JPEG bytes."""
    buf = io.BytesIO()
    img.convert("RGB").save(buf, format="JPEG", quality=quality)
    return buf.getvalue()


def img_to_png_bytes(img: Image.Image) -> bytes:
    """Encode an image as PNG bytes, keeping any alpha channel."""
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def mime_from_path(path: str | Path) -> str:
    """Guess an image MIME type from a file extension (JPEG by default)."""
    return _EXT_TO_MIME.get(Path(str(path)).suffix.lower(), "image/jpeg")


def ext_from_mime(mime_type: str) -> str:
    """Return the file extension for an image MIME type (".png" by default)."""
    mime = mime_type.split(";", 1)[0].strip().lower()
    if mime == "image/jpeg":
        return ".jpg"
    for ext, known in _EXT_TO_MIME.items():
        if known == mime:
            return ext
    return ".png"


def to_data_url(data: bytes, mime_type: str) -> str:
    """Wrap raw bytes as a base64 data URL."""
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def parse_data_url(url: str) -> tuple[bytes, str]:
    """Decode a base64 data URL into `(bytes, mime_type)`.

    Raises:
        ValueError: If `url` is not a base64 data URL.
    """
    if not url.startswith("data:") or "," not in url:
        raise ValueError("Not a data URL")
    header, payload = url.split(",", 1)
    mime = header[len("data:") :].split(";", 1)[0].strip() or "image/jpeg"
    try:
        data = base64.b64decode(payload, validate=False)
    except binascii.Error as e:
        raise ValueError("Data URL payload is not valid base64") from e
    return data, mime


def crop_to_box(img: Image.Image, box: BoundingBox) -> Image.Image:
    """Crop an image to a normalized box."""
    return img.crop(box.to_pixels(*img.size))


def apply_mask(img: Image.Image, mask: Image.Image) -> Image.Image:
    """Keep only the pixels where `mask` is set; everything else turns transparent.

    Existing transparency is preserved (the result alpha is the minimum of the
    image alpha and the mask).
    """
    rgba = img.convert("RGBA")
    if mask.size != rgba.size:
        mask = mask.resize(rgba.size)
    alpha = ImageChops.darker(rgba.getchannel("A"), mask.convert("L"))
    rgba.putalpha(alpha)
    return rgba


def trim_transparent(img: Image.Image) -> Image.Image:
    """Trim fully transparent margins; fully transparent images are returned as-is."""
    if img.mode != "RGBA":
        return img
    bbox = img.getchannel("A").getbbox()
    if bbox is None:
        return img
    return img.crop(bbox)
