from __future__ import annotations

import json
from typing import Any

import pytest
from pydantic import BaseModel

from studio_compositor.detectors.analyzer import VisionAnalyzer, fallback_analysis
from studio_compositor.llm.client import LiteLLMVisionClient, extract_json, parse_json_object


class _ScriptedVLM:
    """Returns queued replies (or raises queued exceptions) and records calls."""

    def __init__(self, *replies: str | Exception) -> None:
        self.replies = list(replies)
        self.calls: list[dict[str, Any]] = []

    def ask(
        self,
        instruction: str,
        *,
        image: bytes | None = None,
        mime_type: str = "image/jpeg",
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> str:
        self.calls.append(
            {"instruction": instruction, "image": image, "temperature": temperature, "json_mode": json_mode}
        )
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def test_extract_json_from_prose_and_fences() -> None:
    payload = {"a": 1, "b": {"c": "x}y"}}
    text = f"Sure! Here it is:\n```json\n{json.dumps(payload)}\n```\nAnything else?"
    assert json.loads(extract_json(text) or "") == payload


def test_extract_json_none_when_absent_or_unbalanced() -> None:
    assert extract_json("") is None
    assert extract_json("no json here") is None
    assert extract_json('{"a": 1') is None


def test_parse_json_object_errors() -> None:
    with pytest.raises(ValueError, match="No JSON object"):
        parse_json_object("nothing")
    with pytest.raises(ValueError, match="Malformed"):
        parse_json_object("{'single': 'quotes'}")


def test_litellm_client_builds_multimodal_message() -> None:
    seen: dict[str, Any] = {}

    def fake_completion(**kwargs: Any) -> dict[str, Any]:
        seen.update(kwargs)
        return {"choices": [{"message": {"content": '{"ok": true}'}, "finish_reason": "stop"}]}

    client = LiteLLMVisionClient("gemini/fake", api_key="k", completion=fake_completion)
    out = client.ask("describe", image=b"\x89PNG", mime_type="image/png", temperature=0.2, json_mode=True)

    assert out == '{"ok": true}'
    assert seen["model"] == "gemini/fake"
    assert seen["temperature"] == 0.2
    assert seen["response_format"] == {"type": "json_object"}
    assert seen["api_key"] == "k"
    content = seen["messages"][0]["content"]
    assert content[0]["image_url"]["url"].startswith("data:image/png;base64,")
    assert content[1] == {"type": "text", "text": "describe"}


def test_litellm_client_text_only_and_pydantic_response() -> None:
    class _Resp(BaseModel):
        choices: list[dict[str, Any]]

    seen: dict[str, Any] = {}

    def fake_completion(**kwargs: Any) -> _Resp:
        seen.update(kwargs)
        return _Resp(choices=[{"message": {"content": [{"type": "text", "text": "hello"}]}}])

    out = LiteLLMVisionClient("gemini/fake", completion=fake_completion).ask("caption please")
    assert out == "hello"
    assert seen["messages"][0]["content"] == [{"type": "text", "text": "caption please"}]
    assert "temperature" not in seen
    assert "response_format" not in seen


def test_litellm_client_raises_on_empty_content() -> None:
    def fake_completion(**_: Any) -> dict[str, Any]:
        return {"choices": [{"message": {"content": ""}, "finish_reason": "length"}]}

    with pytest.raises(RuntimeError, match="empty content"):
        LiteLLMVisionClient("gemini/fake", completion=fake_completion).ask("x")


def test_analyzer_parses_wrapped_json_and_filters_placements() -> None:
    reply = "```json\n" + json.dumps(
        {
            "category": "Mode",
            "subcategory": "Sac à main",
            "name": "Sac en cuir orange",
            "colors": "orange",
            "materials": ["cuir"],
            "style": "élégant",
            "suggestedContexts": ["Marché", "Plage"],
            "suggestedPlacements": ["table", "Model", "sky"],
            "description": "Un sac orange.",
            "keywords": ["sac", "cuir"],
        }
    ) + "\n```"
    vlm = _ScriptedVLM(reply)
    analysis = VisionAnalyzer(vlm, language="french").analyze(b"img")

    assert analysis.name == "Sac en cuir orange"
    assert analysis.colors == ["orange"]
    assert analysis.suggested_contexts == ["Marché", "Plage"]
    assert analysis.suggested_placements == ["table", "model"]
    assert "FRENCH" in vlm.calls[0]["instruction"]
    assert vlm.calls[0]["image"] == b"img"


@pytest.mark.parametrize(
    "reply",
    [
        "I cannot help with that.",
        '{"category": "Mode"}',
        RuntimeError("quota exceeded"),
        TimeoutError("slow"),
    ],
)
def test_analyzer_returns_fallback_and_never_raises(reply: str | Exception) -> None:
    analysis = VisionAnalyzer(_ScriptedVLM(reply), language="english").analyze(b"img")
    assert analysis == fallback_analysis("english")
    assert analysis.category == "Other"
    assert analysis.suggested_placements == ["table"]


def test_fallback_analysis_is_localized() -> None:
    assert fallback_analysis("french").category == "Autre"
    assert fallback_analysis("klingon") == fallback_analysis("english")
