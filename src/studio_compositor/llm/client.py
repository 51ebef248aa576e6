"""Vision-language model calls via LiteLLM, plus response normalization."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from time import perf_counter
from typing import Any, Protocol

import litellm
from pydantic import BaseModel

from studio_compositor.vision.image import to_data_url

LOG = logging.getLogger(__name__)


class SupportsVisionLanguage(Protocol):
    """Protocol for a vision-language call returning raw model text."""

    def ask(
        self,
        instruction: str,
        *,
        image: bytes | None = None,
        mime_type: str = "image/jpeg",
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> str:
        """Send `instruction` (and optionally one image) and return the text reply."""
        ...


def extract_json(text: str) -> str | None:
    """Return the first balanced `{...}` block in a noisy model reply.

    Handles replies wrapped in prose or markdown fences. Braces inside JSON
    strings are ignored while balancing.
    """
    if not text:
        return None
    start = text.find("{")
    while start != -1:
        depth = 0
        in_str = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_str:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_str = False
                continue
            if ch == '"':
                in_str = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : i + 1]
        start = text.find("{", start + 1)
    return None


def parse_json_object(text: str) -> dict[str, Any]:
    """Extract and decode the first JSON object in `text`.

    Raises:
        ValueError: If no object is found or it does not decode to a dict.
    """
    block = extract_json(text)
    if block is None:
        raise ValueError("No JSON object found in model response")
    try:
        data = json.loads(block)
    except json.JSONDecodeError as e:
        raise ValueError("Malformed JSON in model response") from e
    if not isinstance(data, dict):
        raise ValueError("Model response JSON is not an object")
    return data


def _content_to_text(content: Any) -> str:
    """Best-effort normalization of provider responses to a single text string."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    # OpenAI-style content blocks: [{"type":"text","text":"..."} , ...]
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
            elif isinstance(item, dict):
                t = item.get("text")
                if isinstance(t, str):
                    chunks.append(t)
        return "\n".join(chunks).strip()
    if isinstance(content, dict):
        t = content.get("text")
        if isinstance(t, str):
            return t
    return str(content)


def _response_to_dict(resp: Any) -> dict[str, Any]:
    """Normalize a LiteLLM completion response object to a plain dict."""
    if isinstance(resp, dict):
        return resp
    if isinstance(resp, BaseModel):
        return resp.model_dump()
    dump = getattr(resp, "model_dump", None)
    if callable(dump):
        return dump()
    raise TypeError(f"Unsupported completion response type: {type(resp)!r}")


def _extract_choice_text(resp: dict[str, Any]) -> tuple[str, str]:
    """Extract assistant content and finish_reason from a Chat Completions-style response."""
    choices = resp.get("choices") or []
    if not isinstance(choices, list) or not choices:
        return "", ""
    c0 = choices[0] or {}
    if not isinstance(c0, dict):
        return "", ""
    finish_reason = str(c0.get("finish_reason") or "")

    msg = c0.get("message") or {}
    if isinstance(msg, dict) and "content" in msg:
        return _content_to_text(msg.get("content")), finish_reason

    # Some providers put content at the choice level.
    if "text" in c0:
        return _content_to_text(c0.get("text")), finish_reason

    return "", finish_reason


class LiteLLMVisionClient:
    """Vision-language client backed by `litellm.completion`.

    Args:
        model: LiteLLM model id including the provider prefix
            (for example "gemini/gemini-2.5-flash").
        api_key: Optional API key passed through to the provider.
        timeout_s: Request timeout in seconds.
        max_tokens: Completion token cap.
        completion: Completion callable (injectable for tests).
    """

    def __init__(
        self,
        model: str,
        *,
        api_key: str | None = None,
        timeout_s: float = 60.0,
        max_tokens: int = 2000,
        completion: Callable[..., Any] = litellm.completion,
    ) -> None:
        self.model = model
        self.api_key = api_key
        self.timeout_s = timeout_s
        self.max_tokens = max_tokens
        self._completion = completion

    def ask(
        self,
        instruction: str,
        *,
        image: bytes | None = None,
        mime_type: str = "image/jpeg",
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> str:
        """Send one user turn and return the assistant text.

        Raises:
            RuntimeError: If the model returns empty content.
        """
        content: list[dict[str, Any]] = []
        if image is not None:
            content.append({"type": "image_url", "image_url": {"url": to_data_url(image, mime_type)}})
        content.append({"type": "text", "text": instruction})

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": content}],
            "max_tokens": self.max_tokens,
            "timeout": self.timeout_s,
        }
        if temperature is not None:
            kwargs["temperature"] = temperature
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        if self.api_key:
            kwargs["api_key"] = self.api_key

        t0 = perf_counter()
        resp = _response_to_dict(self._completion(**kwargs))
        text, finish_reason = _extract_choice_text(resp)
        LOG.info(
            "VLM response received: model=%s finish_reason=%s usage=%s took=%.2fs",
            self.model,
            finish_reason,
            resp.get("usage"),
            perf_counter() - t0,
        )
        if not text:
            raise RuntimeError(
                f"VLM returned empty content. finish_reason={finish_reason!r}, "
                f"max_tokens={self.max_tokens}, usage={resp.get('usage')!r}"
            )
        return text
