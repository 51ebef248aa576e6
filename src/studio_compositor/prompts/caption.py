"""Social caption generation steered by a brand's verbal DNA."""

from __future__ import annotations

import logging
import re
from typing import Final

from studio_compositor.llm.client import SupportsVisionLanguage
from studio_compositor.studio.brief import ProductAnalysis, VerbalDNA

LOG = logging.getLogger(__name__)

CAPTION_TEMPERATURE: Final[float] = 0.8

LENGTH_INSTRUCTIONS: Final[dict[str, str]] = {
    "short": "Keep it short: 1-2 sentences, under 150 characters.",
    "medium": "Medium length: 2-4 sentences, 150-300 characters.",
    "long": "Longer storytelling caption: 4-6 sentences, 300-500 characters.",
}

EMOJI_INSTRUCTIONS: Final[dict[str, str]] = {
    "heavy": "Use emojis generously (4-8 per caption).",
    "moderate": "Use a few emojis (2-4 per caption).",
    "minimal": "Use at most 1-2 emojis.",
    "none": "Do NOT use any emojis.",
}

LANGUAGE_INSTRUCTIONS: Final[dict[str, str]] = {
    "french": "Write in French.",
    "english": "Write in English.",
    "wolof": "Write in Wolof, mixing in French words the way local brands do.",
}

_LABEL_RE = re.compile(r"^\s*(caption|légende)\s*:\s*", re.IGNORECASE)
_QUOTES = "\"'“”«»"


def clean_caption(text: str) -> str:
    """Strip a leading "Caption:" label and surrounding quotes."""
    out = _LABEL_RE.sub("", text.strip()).strip()
    while len(out) >= 2 and out[0] in _QUOTES and out[-1] in _QUOTES:
        out = out[1:-1].strip()
    return out


def caption_instruction(analysis: ProductAnalysis, verbal: VerbalDNA) -> str:
    """Build the text-only caption instruction."""
    lines = [
        "Write ONE social media caption for this product post.",
        "",
        f"Product: {analysis.name} ({analysis.subcategory}).",
    ]
    if analysis.description:
        lines.append(f"Description: {analysis.description}")
    if analysis.colors:
        lines.append(f"Colors: {', '.join(analysis.colors)}")
    lines += ["", "Brand voice:"]
    if verbal.tone:
        lines.append(f"- Tone: {verbal.tone}")
    lines.append(
        f"- {LANGUAGE_INSTRUCTIONS.get(verbal.primary_language, f'Write in {verbal.primary_language}.')}"
    )
    lines.append(f"- {EMOJI_INSTRUCTIONS[verbal.emoji_frequency]}")
    if verbal.emoji_palette and verbal.emoji_frequency != "none":
        lines.append(f"- Preferred emojis: {' '.join(verbal.emoji_palette)}")
    lines.append(f"- {LENGTH_INSTRUCTIONS[verbal.typical_length]}")
    if verbal.caption_structure:
        lines.append(f"- Structure: {verbal.caption_structure}")
    if verbal.formatting_quirks:
        lines.append(f"- Formatting: {verbal.formatting_quirks}")
    if verbal.cta_style:
        lines.append(f"- Call to action style: {verbal.cta_style}")
    if verbal.uses_hashtags_in_caption and verbal.signature_hashtags:
        lines.append(f"- End with these hashtags: {' '.join(verbal.signature_hashtags)}")
    else:
        lines.append("- Do not include hashtags.")

    examples = (verbal.exemplars or verbal.example_captions)[:3]
    if examples:
        lines += ["", "Examples of the brand's past captions (match their voice, do not copy):"]
        lines += [f"{i}. {ex}" for i, ex in enumerate(examples, start=1)]

    lines += ["", "Return only the caption text, without quotes or labels."]
    return "\n".join(lines)


class CaptionWriter:
    """Write a caption for a generated product image.

    Args:
        client: Vision-language client, called in text-only mode.
    """

    def __init__(self, client: SupportsVisionLanguage) -> None:
        self.client = client

    def write(self, analysis: ProductAnalysis, verbal: VerbalDNA) -> str:
        """Return a cleaned caption.

        Raises:
            RuntimeError: If the model returns nothing usable.
        """
        text = self.client.ask(caption_instruction(analysis, verbal), temperature=CAPTION_TEMPERATURE)
        caption = clean_caption(text)
        if not caption:
            raise RuntimeError("Caption model returned an empty caption")
        LOG.info("Caption generated (%s chars)", len(caption))
        return caption
