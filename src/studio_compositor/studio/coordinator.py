"""Studio generation orchestration: one brief in, one billed image out.

Steps:
  1) Validate the brief and pre-check the balance (non-atomic).
  2) Build a clean reference when the product has a detection box
     (best-effort; falls back to the product's reference image).
  3) Look up background metadata and brand DNA (both optional).
  4) Build the prompt and invoke generation. No image -> error, no charge.
  5) Caption (best-effort), atomic debit, session record (best-effort).
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Protocol

from pydantic import ValidationError

from studio_compositor.billing.credits import SupportsCreditLedger
from studio_compositor.billing.sessions import SessionRecord, SupportsSessionStore
from studio_compositor.errors import GenerationFailedError, InsufficientCreditsError, InvalidBriefError
from studio_compositor.generation.gemini import GenerationInvoker
from studio_compositor.outcome import fire_and_log
from studio_compositor.pipelines.clean_reference import CleanReferenceCompositor
from studio_compositor.prompts.builder import PRESENTATION_NEGATIVE, PipelineKind, build_prompt
from studio_compositor.prompts.caption import CaptionWriter
from studio_compositor.storage.blob import SupportsBlobStore
from studio_compositor.studio.brief import BackgroundMetadata, BrandDNA, GenerationBrief, VerbalDNA

LOG = logging.getLogger(__name__)

GENERATION_REASON = "studio_generation"


@dataclass(frozen=True)
class BrandProfile:
    """A stored brand: visual DNA and its separately kept verbal DNA."""

    visual_dna: BrandDNA | None = None
    verbal_dna: VerbalDNA | None = None

    def caption_voice(self) -> VerbalDNA | None:
        """Return the stored verbal DNA, else the one embedded in the visual DNA."""
        if self.verbal_dna is not None:
            return self.verbal_dna
        return self.visual_dna.verbal_dna if self.visual_dna is not None else None


class BrandDirectory(Protocol):
    """Protocol for brand profile lookup."""

    def get_brand(self, brand_id: str, user_id: str) -> BrandProfile | None:
        """Return the user's brand `brand_id`, or None."""
        ...

    def default_brand(self, user_id: str) -> BrandProfile | None:
        """Return the user's default brand, or None."""
        ...


class BackgroundCatalog(Protocol):
    """Protocol for preset background metadata lookup."""

    def get(self, background_id: str) -> BackgroundMetadata | None:
        ...


def resolve_brand(directory: BrandDirectory | None, brand_id: str | None, user_id: str) -> BrandProfile | None:
    """Selected brand first, then the user's default brand.

    A selected brand without visual DNA gives way to the default brand; it is
    kept only when the user has no default.
    """
    if directory is None:
        return None
    selected = directory.get_brand(brand_id, user_id) if brand_id else None
    if selected is not None and selected.visual_dna is not None:
        return selected
    default = directory.default_brand(user_id)
    return default if default is not None else selected


@dataclass(frozen=True)
class GenerationResult:
    """What a successful generation returns to the caller.

    Attributes:
        output_image_url: Stored generated image.
        credits_cost: Units charged.
        credits_remaining: Balance in units after the debit.
        session_id: Audit record id, None when persistence failed.
    """

    output_image_url: str
    prompt: str
    negative_prompt: str
    caption: str | None
    credits_cost: int
    credits_remaining: int
    pipeline: PipelineKind
    clean_reference_url: str
    session_id: str | None = None


class StudioCoordinator:
    """Compose clean reference, prompt, generation and billing for one brief.

    Args:
        invoker: Generation invoker.
        ledger: Credit ledger (atomic debit).
        compositor: Clean-reference compositor; None skips that step.
        store: Blob store for clean references.
        sessions: Session store; None skips persistence.
        brands: Brand directory; None generates without brand styling.
        backgrounds: Background catalog.
        captions: Caption writer; None skips captions.
        cost_units: Price of one generation in units.
        market: Market aesthetic the prompt targets.
        negative_defaults: Default avoid terms per presentation type.
    """

    def __init__(
        self,
        invoker: GenerationInvoker,
        ledger: SupportsCreditLedger,
        *,
        compositor: CleanReferenceCompositor | None = None,
        store: SupportsBlobStore | None = None,
        sessions: SupportsSessionStore | None = None,
        brands: BrandDirectory | None = None,
        backgrounds: BackgroundCatalog | None = None,
        captions: CaptionWriter | None = None,
        cost_units: int = 100,
        market: str = "Senegal",
        negative_defaults: Mapping[str, Sequence[str]] = PRESENTATION_NEGATIVE,
    ) -> None:
        self.invoker = invoker
        self.ledger = ledger
        self.compositor = compositor
        self.store = store
        self.sessions = sessions
        self.brands = brands
        self.backgrounds = backgrounds
        self.captions = captions
        self.cost_units = cost_units
        self.market = market
        self.negative_defaults = negative_defaults

    def _validate(self, brief: GenerationBrief | Mapping[str, Any]) -> GenerationBrief:
        if isinstance(brief, GenerationBrief):
            return brief
        try:
            return GenerationBrief.model_validate(brief)
        except ValidationError as e:
            raise InvalidBriefError(f"Invalid generation brief: {e}") from e

    def _preflight(self, user_id: str) -> None:
        available = self.ledger.balance(user_id)
        if available is None or available < self.cost_units:
            raise InsufficientCreditsError(self.cost_units, available or 0, "preflight")

    def _clean_reference(self, brief: GenerationBrief) -> str:
        product = brief.product
        box = product.box()
        if box is None or self.compositor is None or self.store is None:
            return product.reference_image_url
        compositor, store = self.compositor, self.store
        outcome = fire_and_log(
            "Clean reference",
            lambda: compositor.build_and_store(
                product.original_url or product.reference_image_url,
                product.id or "product",
                box,
                product.outline_path,
                store,
            ),
        )
        if not outcome.ok or not outcome.value:
            LOG.warning("Falling back to the original product image")
            return product.reference_image_url
        return outcome.value

    def _background(self, brief: GenerationBrief) -> BackgroundMetadata | None:
        background_id = brief.scene.background_id
        if not background_id or self.backgrounds is None:
            return None
        catalog = self.backgrounds
        return fire_and_log("Background lookup", lambda: catalog.get(background_id)).value

    def _caption(self, brief: GenerationBrief, profile: BrandProfile | None) -> str | None:
        analysis = brief.product.analysis
        verbal = profile.caption_voice() if profile is not None else None
        if self.captions is None or analysis is None or verbal is None:
            return None
        writer = self.captions
        return fire_and_log("Caption generation", lambda: writer.write(analysis, verbal)).value

    def run_generation(
        self,
        brief: GenerationBrief | Mapping[str, Any],
        user_id: str,
        *,
        use_brand_style: bool = True,
    ) -> GenerationResult:
        """Run one generation and charge for it only if it succeeded.

        Raises:
            InvalidBriefError: If the brief does not validate.
            InsufficientCreditsError: With stage "preflight" before any work,
                or stage "debit" when the atomic debit fails after generation.
            GenerationFailedError: If no image was produced (nothing charged).
        """
        t_start = perf_counter()
        brief = self._validate(brief)
        self._preflight(user_id)

        t0 = perf_counter()
        reference_url = self._clean_reference(brief)
        LOG.info("Step 1/4 clean reference: took=%.2fs", perf_counter() - t0)

        background = self._background(brief)
        profile = resolve_brand(self.brands, brief.brand_id, user_id) if use_brand_style else None
        brand = profile.visual_dna if profile is not None else None
        built = build_prompt(brief, background, brand, market=self.market, negative_defaults=self.negative_defaults)
        LOG.info("Step 2/4 prompt: pipeline=%s brand=%s", built.pipeline, brand is not None)

        t0 = perf_counter()
        output_url = self.invoker.generate(
            built.prompt,
            built.negative_prompt,
            reference_url,
            user_id=user_id,
            background_url=brief.scene.background_url,
            moodboard_url=brief.moodboard.url,
            previous_image_url=brief.previous_image_url if built.pipeline == "iteration" else None,
        )
        if output_url is None:
            raise GenerationFailedError("Image generation produced no image")
        LOG.info("Step 3/4 generation: took=%.2fs", perf_counter() - t0)

        caption = self._caption(brief, profile)

        debit = self.ledger.debit(
            user_id,
            self.cost_units,
            GENERATION_REASON,
            ref_type="studio_generation",
            ref_id=brief.product.id,
            description=f"Studio generation ({built.pipeline})",
        )
        if not debit.success:
            LOG.warning("Debit failed after generation: %s (image %s kept)", debit.error, output_url)
            raise InsufficientCreditsError(self.cost_units, debit.new_balance or 0, "debit", detail=debit.error or "")

        session_id: str | None = None
        if self.sessions is not None:
            record = SessionRecord(
                user_id=user_id,
                output_image_url=output_url,
                prompt=built.prompt,
                pipeline=built.pipeline,
                credits_cost=self.cost_units,
                product_id=brief.product.id,
                brand_id=brief.brand_id,
                caption=caption,
                brief=brief.model_dump(mode="json"),
            )
            sessions = self.sessions
            session_id = fire_and_log("Session insert", lambda: sessions.create(record)).value

        LOG.info("Step 4/4 billing: charged=%s remaining=%s total=%.2fs", self.cost_units, debit.new_balance, perf_counter() - t_start)
        return GenerationResult(
            output_image_url=output_url,
            prompt=built.prompt,
            negative_prompt=built.negative_prompt,
            caption=caption,
            credits_cost=self.cost_units,
            credits_remaining=debit.new_balance if debit.new_balance is not None else 0,
            pipeline=built.pipeline,
            clean_reference_url=reference_url,
            session_id=session_id,
        )
