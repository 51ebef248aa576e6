"""Value objects exchanged with the generation wizard and brand profiles.

All models accept both snake_case and camelCase keys so briefs produced by a
JSON front end validate as-is. Instances are frozen: the pipeline treats a
brief as a read-only value per generation call.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from studio_compositor.vision.types import BoundingBox

PresentationType = Literal["product_only", "on_model", "ghost"]
SceneType = Literal["real_place", "studio", "ai_generated"]
Placement = Literal["table", "model", "floor", "shelf", "hanging"]

PLACEMENTS: tuple[str, ...] = ("table", "model", "floor", "shelf", "hanging")


class _Frozen(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        alias_generator=to_camel,
        populate_by_name=True,
    )


def _as_str_list(v: Any) -> list[str]:
    if v is None:
        return []
    if isinstance(v, str):
        return [v] if v.strip() else []
    if isinstance(v, (list, tuple)):
        return [str(s).strip() for s in v if str(s).strip()]
    return []


class ProductAnalysis(_Frozen):
    """Structured attributes of one product image."""

    category: str
    subcategory: str
    name: str
    colors: list[str] = Field(default_factory=list)
    materials: list[str] = Field(default_factory=list)
    style: str = ""
    suggested_contexts: list[str] = Field(default_factory=list)
    suggested_placements: list[Placement] = Field(default_factory=list)
    description: str = ""
    keywords: list[str] = Field(default_factory=list)

    @field_validator("colors", "materials", "suggested_contexts", "keywords", mode="before")
    @classmethod
    def _coerce_lists(cls, v: Any) -> list[str]:
        return _as_str_list(v)

    @field_validator("suggested_placements", mode="before")
    @classmethod
    def _keep_known_placements(cls, v: Any) -> list[str]:
        return [p.lower() for p in _as_str_list(v) if p.lower() in PLACEMENTS]


class VerbalDNA(_Frozen):
    """A brand's writing voice, used to steer caption generation."""

    tone: str = ""
    primary_language: str = "french"
    emoji_palette: list[str] = Field(default_factory=list)
    emoji_frequency: Literal["heavy", "moderate", "minimal", "none"] = "minimal"
    caption_structure: str = ""
    typical_length: Literal["short", "medium", "long"] = "short"
    formatting_quirks: str = ""
    uses_hashtags_in_caption: bool = False
    signature_hashtags: list[str] = Field(default_factory=list)
    cta_style: str = ""
    exemplars: list[str] = Field(default_factory=list)
    example_captions: list[str] = Field(default_factory=list)


class BrandPalette(_Frozen):
    primary: str = ""
    secondary: str = ""
    accent: str = ""


class PhotographySettings(_Frozen):
    lighting: str = ""
    framing: str = ""
    texture_bias: str = ""
    human_presence: str = ""
    demographic: str | None = None


class BrandDNA(_Frozen):
    """A brand's visual style profile."""

    vibe_summary: str = ""
    visual_tokens: list[str] = Field(default_factory=list)
    palette: BrandPalette | None = None
    photography_settings: PhotographySettings | None = None
    verbal_dna: VerbalDNA | None = None


class BackgroundMetadata(_Frozen):
    """Catalog metadata of a preset background scene."""

    name: str
    lighting: str = ""
    mood: str = ""
    prompt_hints: str | None = None


class ModelAsset(_Frozen):
    id: str
    title: str
    model_gender: str | None = None
    model_age_range: str | None = None


class LocationAsset(_Frozen):
    id: str
    title: str
    location_city: str | None = None
    location_type: str | None = None


class ProductRef(_Frozen):
    """The product to stage.

    Attributes:
        reference_image_url: Image shown to the generator when no clean
            reference can be built.
        original_url: Upload the product was detected in (defaults to
            `reference_image_url`).
        bounding_box / outline_path: Detection output; when a box is present a
            clean reference is composited before generation.
    """

    id: str | None = None
    reference_image_url: str = Field(min_length=1)
    original_url: str | None = None
    name: str | None = None
    analysis: ProductAnalysis | None = None
    note: str | None = None
    bounding_box: dict[str, float] | None = None
    outline_path: str | None = None

    @model_validator(mode="after")
    def _validate_box(self) -> ProductRef:
        if self.bounding_box is not None:
            self.box()
        return self

    def box(self) -> BoundingBox | None:
        """Return the detection box, if any, as a `BoundingBox`."""
        if self.bounding_box is None:
            return None
        return BoundingBox.from_mapping(self.bounding_box)


class Presentation(_Frozen):
    type: PresentationType = "product_only"
    note: str | None = None
    model_asset: ModelAsset | None = None


class Scene(_Frozen):
    type: SceneType = "studio"
    background_id: str | None = None
    background_url: str | None = None
    background_name: str | None = None
    note: str | None = None
    location_asset: LocationAsset | None = None


class Moodboard(_Frozen):
    url: str | None = None
    note: str | None = None


class GenerationBrief(_Frozen):
    """Everything the user chose for one generation."""

    product: ProductRef
    presentation: Presentation = Field(default_factory=Presentation)
    scene: Scene = Field(default_factory=Scene)
    moodboard: Moodboard = Field(default_factory=Moodboard)
    iteration_feedback: str | None = None
    previous_image_url: str | None = None
    brand_id: str | None = None
    avoid: list[str] = Field(default_factory=list)

    @field_validator("avoid", mode="before")
    @classmethod
    def _coerce_avoid(cls, v: Any) -> list[str]:
        return _as_str_list(v)

    def is_iteration(self) -> bool:
        """True when this brief refines a previous output with user feedback."""
        return bool((self.iteration_feedback or "").strip() and self.previous_image_url)
