"""Product attribute analysis with a vision-language model.

Analysis is advisory: any failure yields a fixed fallback instead of an error.
"""

from __future__ import annotations

import logging

from pydantic import ValidationError

from studio_compositor.llm.client import SupportsVisionLanguage, parse_json_object
from studio_compositor.studio.brief import ProductAnalysis

LOG = logging.getLogger(__name__)

_LANGUAGE_NAMES = {"french": "FRENCH", "english": "ENGLISH"}

_FALLBACKS: dict[str, ProductAnalysis] = {
    "english": ProductAnalysis(
        category="Other",
        subcategory="Product",
        name="Product",
        colors=["unknown"],
        materials=["unknown"],
        style="modern",
        suggested_contexts=["White studio", "Wooden table", "Outdoors"],
        suggested_placements=["table"],
        description="A product image",
        keywords=["product"],
    ),
    "french": ProductAnalysis(
        category="Autre",
        subcategory="Produit",
        name="Produit",
        colors=["inconnu"],
        materials=["inconnu"],
        style="moderne",
        suggested_contexts=["Studio blanc", "Table en bois", "Extérieur"],
        suggested_placements=["table"],
        description="Une image de produit",
        keywords=["produit"],
    ),
}


def fallback_analysis(language: str = "english") -> ProductAnalysis:
    """Return the fixed analysis used when the model call fails."""
    return _FALLBACKS.get(language, _FALLBACKS["english"])


def analysis_instruction(language: str, market: str) -> str:
    """Build the structured-output instruction for one product image."""
    lang = _LANGUAGE_NAMES.get(language, language.upper())
    return f"""
You are a professional photography assistant for an e-commerce platform serving {market}.

Analyze this product image and return a JSON object with the structure below.
IMPORTANT: every value must be written in {lang}.

{{
  "category": "main category (Fashion, Food, Beauty, Electronics, Home, Other)",
  "subcategory": "specific product type (e.g. handbag, shoes, dress, juice, perfume)",
  "name": "descriptive product name",
  "colors": ["dominant colors"],
  "materials": ["visible materials (leather, fabric, plastic, glass, ...)"],
  "style": "style description (elegant, casual, traditional, modern, luxurious)",
  "suggestedContexts": ["3-5 suggested photo contexts"],
  "suggestedPlacements": ["placement options among: table, model, floor, shelf, hanging"],
  "description": "one sentence describing what you see",
  "keywords": ["5-10 keywords for this product"]
}}

Focus on what would showcase this product best for customers in {market}.
Return ONLY valid JSON, no markdown and no explanation.
    """.strip()


class VisionAnalyzer:
    """Classify a product image into a `ProductAnalysis`.

    Args:
        client: Vision-language client.
        language: Market language for all descriptive values.
        market: Market the aesthetic targets (used in the instruction).
    """

    def __init__(
        self,
        client: SupportsVisionLanguage,
        *,
        language: str = "french",
        market: str = "Senegal",
    ) -> None:
        self.client = client
        self.language = language
        self.market = market

    def analyze(self, image: bytes, mime_type: str = "image/jpeg") -> ProductAnalysis:
        """Analyze one product image. Never raises."""
        try:
            text = self.client.ask(
                analysis_instruction(self.language, self.market),
                image=image,
                mime_type=mime_type,
            )
            return ProductAnalysis.model_validate(parse_json_object(text))
        except (ValueError, ValidationError) as e:
            LOG.warning("Product analysis unusable, using fallback: %s", e)
        except Exception:
            LOG.exception("Product analysis call failed, using fallback")
        return fallback_analysis(self.language)
