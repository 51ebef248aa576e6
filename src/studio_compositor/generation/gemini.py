"""Image generation with Gemini: ordered multimodal parts in, one inline image out.

Part order is fixed: product reference first (the prompt tells the model "the
first image is the exact product"), then background, moodboard and previous
iteration images, then the text prompt last.
"""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Final, Protocol

from google import genai
from google.genai import types

from studio_compositor.errors import ImageFetchError
from studio_compositor.fetch.sources import ImageLoader
from studio_compositor.storage.blob import SupportsBlobStore, generated_image_key

LOG = logging.getLogger(__name__)

DEFAULT_IMAGE_MODEL: Final[str] = "gemini-2.5-flash-image"


@dataclass(frozen=True)
class InlineImage:
    """Raw image bytes with their MIME type."""

    data: bytes
    mime_type: str = "image/png"


GenerationPart = InlineImage | str


class SupportsImageBackend(Protocol):
    """Protocol for a generative image backend."""

    def generate(self, parts: Sequence[GenerationPart]) -> Any:
        """Send ordered parts and return the raw backend response."""
        ...


def _get(obj: Any, *names: str) -> Any:
    for name in names:
        if isinstance(obj, Mapping):
            if obj.get(name) is not None:
                return obj[name]
        else:
            value = getattr(obj, name, None)
            if value is not None:
                return value
    return None


def _inline_to_image(inline: Any) -> InlineImage | None:
    data = _get(inline, "data")
    if not data:
        return None
    if isinstance(data, str):
        # REST payloads carry base64 text.
        try:
            data = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError):
            return None
    mime = _get(inline, "mime_type", "mimeType") or "image/png"
    return InlineImage(data=bytes(data), mime_type=str(mime))


def extract_inline_image(response: Any) -> InlineImage | None:
    """Return the first inline image across all candidates and parts, or None.

    Accepts SDK response objects as well as plain dicts (snake_case or
    camelCase keys).
    """
    for candidate in _get(response, "candidates") or []:
        content = _get(candidate, "content")
        for part in _get(content, "parts") or []:
            inline = _get(part, "inline_data", "inlineData")
            if inline is None:
                continue
            image = _inline_to_image(inline)
            if image is not None:
                return image
    return None


class GeminiImageBackend:
    """`google-genai` client wrapper for image-capable Gemini models.

    Args:
        api_key: Google AI API key, used when `client` is not given.
        model: Image model id.
        client: Pre-built `genai.Client` (injectable for tests).
    """

    def __init__(self, api_key: str | None = None, model: str = DEFAULT_IMAGE_MODEL, *, client: Any = None) -> None:
        self.model = model
        self.client = client if client is not None else genai.Client(api_key=api_key)

    def generate(self, parts: Sequence[GenerationPart]) -> Any:
        contents = [
            types.Part.from_bytes(data=p.data, mime_type=p.mime_type) if isinstance(p, InlineImage) else types.Part.from_text(text=p)
            for p in parts
        ]
        return self.client.models.generate_content(
            model=self.model,
            contents=contents,
            config=types.GenerateContentConfig(response_modalities=["IMAGE", "TEXT"]),
        )


class GenerationInvoker:
    """Run one image generation and persist its output.

    Args:
        backend: Generative image backend.
        loader: Resolves reference images to bytes.
        store: Blob store receiving the generated image.
    """

    def __init__(self, backend: SupportsImageBackend, loader: ImageLoader, store: SupportsBlobStore) -> None:
        self.backend = backend
        self.loader = loader
        self.store = store

    def _load_part(self, ref: str, label: str) -> InlineImage | None:
        try:
            fetched = self.loader.load(ref)
        except ImageFetchError as e:
            LOG.warning("Skipping %s reference %s: %s", label, ref[:80], e)
            return None
        if not fetched.mime_type.startswith("image/"):
            LOG.warning("Skipping %s reference %s: content type %s", label, ref[:80], fetched.mime_type)
            return None
        return InlineImage(data=fetched.data, mime_type=fetched.mime_type)

    def build_parts(
        self,
        prompt: str,
        clean_reference_url: str,
        *,
        background_url: str | None = None,
        moodboard_url: str | None = None,
        previous_image_url: str | None = None,
    ) -> list[GenerationPart] | None:
        """Resolve references into ordered parts; None if the product is unavailable."""
        product = self._load_part(clean_reference_url, "product")
        if product is None:
            return None
        parts: list[GenerationPart] = [product]
        for ref, label in (
            (background_url, "background"),
            (moodboard_url, "moodboard"),
            (previous_image_url, "previous image"),
        ):
            if ref:
                image = self._load_part(ref, label)
                if image is not None:
                    parts.append(image)
        parts.append(prompt)
        return parts

    def generate(
        self,
        prompt: str,
        negative_prompt: str,
        clean_reference_url: str,
        *,
        user_id: str,
        background_url: str | None = None,
        moodboard_url: str | None = None,
        previous_image_url: str | None = None,
    ) -> str | None:
        """Generate an image and return its stored URL, or None on failure.

        `negative_prompt` is already embedded in `prompt` as an avoid clause;
        it is only logged here.
        """
        parts = self.build_parts(
            prompt,
            clean_reference_url,
            background_url=background_url,
            moodboard_url=moodboard_url,
            previous_image_url=previous_image_url,
        )
        if parts is None:
            LOG.error("Product reference could not be loaded, aborting generation")
            return None
        LOG.info(
            "Generating with %s image parts, prompt=%s chars, negative=%r",
            len(parts) - 1,
            len(prompt),
            negative_prompt[:120],
        )

        t0 = perf_counter()
        try:
            response = self.backend.generate(parts)
        except Exception:
            LOG.exception("Image backend call failed")
            return None
        image = extract_inline_image(response)
        if image is None:
            LOG.warning("Image backend returned no inline image (took=%.2fs)", perf_counter() - t0)
            return None
        LOG.info("Image generated: %s bytes %s took=%.2fs", len(image.data), image.mime_type, perf_counter() - t0)

        try:
            return self.store.put(image.data, generated_image_key(user_id, image.mime_type), image.mime_type)
        except Exception:
            LOG.exception("Upload of the generated image failed")
            return None
