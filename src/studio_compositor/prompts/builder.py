"""Generation prompt construction from a brief.

Two templates: a first-generation template anchoring the product reference,
and an iteration template that foregrounds the user's feedback on a previous
output. Both embed the same structural requirements and "avoid" clause.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Final, Literal

from studio_compositor.studio.brief import BackgroundMetadata, BrandDNA, GenerationBrief

PipelineKind = Literal["iteration", "on_model", "scene_composite", "studio"]

PHOTOREALISM_CLOSING: Final[str] = "Create a photorealistic, commercial-quality image"

_PRODUCT_FIDELITY: Final[tuple[str, ...]] = (
    "blurry",
    "low resolution",
    "distorted product",
    "altered logo",
    "changed label text",
    "wrong product colors",
    "watermark",
)

# Default avoid terms per presentation type. Callers may pass their own table;
# a type missing from it contributes nothing.
PRESENTATION_NEGATIVE: Final[Mapping[str, tuple[str, ...]]] = {
    "product_only": (*_PRODUCT_FIDELITY, "people", "hands", "mannequin", "extra products", "cluttered background"),
    "on_model": (*_PRODUCT_FIDELITY, "deformed hands", "extra limbs", "distorted face", "unnatural pose"),
    "ghost": (*_PRODUCT_FIDELITY, "visible mannequin", "human body", "hanger", "wrinkled fabric"),
}

PRESENTATION_PHRASES: Final[dict[str, str]] = {
    "product_only": "The product is shown on its own, placed elegantly on a surface, as the sole subject.",
    "on_model": "The product is worn or held by a model, naturally integrated into the pose.",
    "ghost": "Ghost mannequin presentation: the garment keeps its worn shape with no visible body or mannequin.",
}

SCENE_PHRASES: Final[dict[str, str]] = {
    "real_place": "Setting: a real location, photographed on site with natural perspective and light.",
    "studio": "Setting: a professional photo studio with controlled lighting.",
    "ai_generated": "Setting: an imagined environment that complements the product.",
}

LIGHTING_PHRASES: Final[dict[str, str]] = {
    "golden_hour": "warm golden hour lighting, soft orange glow, long shadows",
    "studio_soft": "soft diffused studio lighting, gentle shadows, even illumination",
    "studio_hard": "hard studio flash, defined shadows, high contrast, dramatic highlights",
    "natural_sunlight": "natural daylight, soft ambient lighting, realistic illumination",
    "natural": "natural daylight, soft ambient lighting, realistic illumination",
    "dramatic": "dramatic chiaroscuro lighting, deep shadows, highlighted subject",
    "neon_night": "neon night lighting, vibrant colorful glow, urban night atmosphere",
    "overcast_diffused": "soft overcast lighting, even diffused light, no harsh shadows",
}

FRAMING_PHRASES: Final[dict[str, str]] = {
    "minimalist_centered": "minimalist centered composition",
    "flat_lay": "flat lay composition seen from above",
    "low_angle_lifestyle": "low angle lifestyle framing",
    "close_up_detail": "close-up framing on product details",
    "chaotic_lifestyle": "energetic candid lifestyle framing",
    "editorial_fashion": "editorial fashion framing",
}

_ORDINALS = ("first", "second", "third", "fourth")


@dataclass(frozen=True)
class BuiltPrompt:
    """Final instruction text plus its negative prompt.

    Attributes:
        prompt: Full instruction sent as the last part of the generation call.
        negative_prompt: Comma-joined avoid terms ("" when there are none).
        requirements: Structural requirements embedded in `prompt`.
        pipeline: Which path produced the prompt.
    """

    prompt: str
    negative_prompt: str
    requirements: str
    pipeline: PipelineKind


def select_pipeline(brief: GenerationBrief) -> PipelineKind:
    """Label the generation path a brief takes."""
    if brief.is_iteration():
        return "iteration"
    if brief.presentation.type == "on_model":
        return "on_model"
    if brief.scene.background_url:
        return "scene_composite"
    return "studio"


def build_negative_prompt(
    brief: GenerationBrief,
    defaults: Mapping[str, Sequence[str]] = PRESENTATION_NEGATIVE,
) -> str:
    """Join presentation defaults and explicit avoid terms, without duplicates.

    Returns "" when `defaults` has nothing for the presentation type and the
    brief lists no avoid terms.
    """
    terms = [*defaults.get(brief.presentation.type, ()), *brief.avoid]
    seen: set[str] = set()
    out: list[str] = []
    for t in terms:
        key = t.strip().lower()
        if key and key not in seen:
            seen.add(key)
            out.append(t.strip())
    return ", ".join(out)


def _product_lines(brief: GenerationBrief) -> list[str]:
    p = brief.product
    lines: list[str] = []
    a = p.analysis
    if a is not None:
        desc = f"Product: {a.name or p.name or 'the product'} ({a.subcategory.lower()})"
        details = [*a.colors, *a.materials]
        if details:
            desc += f", {' and '.join(details)}"
        if a.style:
            desc += f", {a.style} style"
        lines.append(desc + ".")
    elif p.name:
        lines.append(f"Product: {p.name}.")
    if p.note:
        lines.append(f"Product adjustments requested: {p.note}.")
    return lines


def _presentation_lines(brief: GenerationBrief) -> list[str]:
    pres = brief.presentation
    lines = [PRESENTATION_PHRASES[pres.type]]
    m = pres.model_asset
    if pres.type == "on_model" and m is not None:
        traits = ", ".join(t for t in (m.model_gender, m.model_age_range) if t)
        lines.append(f"Model: {m.title}" + (f" ({traits})" if traits else "") + ".")
    if pres.note:
        lines.append(f"Presentation details: {pres.note}.")
    return lines


def _scene_lines(brief: GenerationBrief, background: BackgroundMetadata | None) -> list[str]:
    scene = brief.scene
    lines = [SCENE_PHRASES[scene.type]]
    if background is not None:
        shot = f"Shot at {background.name}"
        if background.lighting:
            shot += f" with {background.lighting} lighting"
        if background.mood:
            shot += f", {background.mood} mood"
        lines.append(shot + ".")
        if background.prompt_hints:
            lines.append(background.prompt_hints)
    elif scene.background_name:
        lines.append(f"Location: {scene.background_name}.")
    loc = scene.location_asset
    if loc is not None:
        where = ", ".join(t for t in (loc.location_type, loc.location_city) if t)
        lines.append(f"Location: {loc.title}" + (f" ({where})" if where else "") + ".")
    if scene.note:
        lines.append(f"Scene details: {scene.note}.")
    return lines


def _brand_lines(brand: BrandDNA | None) -> list[str]:
    if brand is None:
        return []
    lines: list[str] = []
    if brand.vibe_summary:
        lines.append(f"Brand style: {brand.vibe_summary}.")
    if brand.visual_tokens:
        lines.append(f"Brand visual tokens: {', '.join(brand.visual_tokens)}.")
    pal = brand.palette
    if pal is not None:
        colors = [f"{k} {v}" for k, v in (("primary", pal.primary), ("secondary", pal.secondary), ("accent", pal.accent)) if v]
        if colors:
            lines.append(f"Brand palette accents: {', '.join(colors)}.")
    ps = brand.photography_settings
    if ps is not None:
        if ps.lighting in LIGHTING_PHRASES:
            lines.append(f"Lighting: {LIGHTING_PHRASES[ps.lighting]}.")
        if ps.framing in FRAMING_PHRASES:
            lines.append(f"Framing: {FRAMING_PHRASES[ps.framing]}.")
        if ps.demographic:
            lines.append(f"Audience: {ps.demographic}.")
    return lines


def build_requirements(
    brief: GenerationBrief,
    background: BackgroundMetadata | None = None,
    brand: BrandDNA | None = None,
    *,
    market: str = "Senegal",
) -> str:
    """Structural requirements: product, presentation, scene, style and brand."""
    lines = [
        *_product_lines(brief),
        *_presentation_lines(brief),
        *_scene_lines(brief, background),
    ]
    if brief.moodboard.note:
        lines.append(f"Style notes: {brief.moodboard.note}.")
    lines.extend(_brand_lines(brand))
    lines.append(f"Context: {market}. High quality, detailed, sharp focus on the product.")
    return "\n".join(f"- {line}" for line in lines)


def _avoid_clause(negative_prompt: str) -> str:
    return f"\nAVOID (DO NOT INCLUDE THESE): {negative_prompt}" if negative_prompt else ""


def _first_generation(brief: GenerationBrief, requirements: str, negative: str, market: str) -> str:
    refs: list[str] = []
    ordinal = 1
    if brief.scene.background_url:
        refs.append(
            f"Background Reference: the {_ORDINALS[ordinal]} image provided - place the product "
            "naturally into this scene with matching lighting, perspective and shadows."
        )
        ordinal += 1
    if brief.moodboard.url:
        refs.append(
            f"Style Reference: the {_ORDINALS[ordinal]} image provided - use its style, lighting "
            "and mood, not its content."
        )
    ref_block = ("\n" + "\n".join(refs)) if refs else ""
    return f"""Generate a professional product photography image.

Product Image: the first image provided - THIS IS THE EXACT PRODUCT TO USE. Keep the product IDENTICAL - same label, same design, same brand, same colors, same text. Do NOT redesign or modify the product appearance in any way.{ref_block}

Requirements:
{requirements}{_avoid_clause(negative)}

CRITICAL: The product in the output must look EXACTLY like the product in the input image. Same brand, same label design, same colors. Only change the background/environment, not the product itself.

{PHOTOREALISM_CLOSING} that looks like it was shot by a professional photographer in {market}. The product should be the clear focal point with perfect lighting and composition."""


def _iteration(brief: GenerationBrief, requirements: str, negative: str) -> str:
    return f"""Improve this product photography image based on the user's feedback.

PREVIOUS IMAGE: the last image provided is the current version that needs improvement.
PRODUCT IMAGE: the first image provided shows the EXACT product to use. Keep it IDENTICAL.

USER FEEDBACK - MAKE THESE CHANGES:
{(brief.iteration_feedback or '').strip()}

Original Requirements (must not regress):
{requirements}{_avoid_clause(negative)}

CRITICAL INSTRUCTIONS:
1. Apply the user's feedback changes to improve the image
2. The product must still look EXACTLY like the product image (same brand, label, colors)
3. Only modify what the user requested - keep everything else the same
4. Keep professional photography standards

Create an improved version that addresses the user's feedback while keeping the product accurate."""


def build_prompt(
    brief: GenerationBrief,
    background: BackgroundMetadata | None = None,
    brand: BrandDNA | None = None,
    *,
    market: str = "Senegal",
    negative_defaults: Mapping[str, Sequence[str]] = PRESENTATION_NEGATIVE,
) -> BuiltPrompt:
    """Assemble the final generation instruction for a brief.

    Args:
        brief: Generation brief.
        background: Catalog metadata of the chosen background, if any.
        brand: Brand visual DNA; None generates without brand styling.
        market: Market whose aesthetic the output targets.
        negative_defaults: Default avoid terms per presentation type.
    """
    requirements = build_requirements(brief, background, brand, market=market)
    negative = build_negative_prompt(brief, negative_defaults)
    pipeline = select_pipeline(brief)
    if pipeline == "iteration":
        prompt = _iteration(brief, requirements, negative)
    else:
        prompt = _first_generation(brief, requirements, negative, market)
    return BuiltPrompt(prompt=prompt, negative_prompt=negative, requirements=requirements, pipeline=pipeline)
