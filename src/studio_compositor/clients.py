"""Construct the pipeline's external clients once, from configuration."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from studio_compositor.billing.credits import SupportsCreditLedger
from studio_compositor.billing.sessions import SupportsSessionStore
from studio_compositor.config import StudioConfig
from studio_compositor.detectors.analyzer import VisionAnalyzer
from studio_compositor.detectors.background import ReplicateBackgroundRemover
from studio_compositor.detectors.moondream import DEFAULT_API_URL, MoondreamClient
from studio_compositor.detectors.products import MultiProductDetector, PacingPolicy
from studio_compositor.errors import ConfigurationError
from studio_compositor.fetch.sources import ImageLoader
from studio_compositor.generation.gemini import GeminiImageBackend, GenerationInvoker
from studio_compositor.llm.client import LiteLLMVisionClient
from studio_compositor.pipelines.clean_reference import CleanReferenceCompositor
from studio_compositor.prompts.caption import CaptionWriter
from studio_compositor.storage.blob import LocalBlobStore, S3BlobStore, SupportsBlobStore
from studio_compositor.studio.coordinator import BackgroundCatalog, BrandDirectory, StudioCoordinator

LOG = logging.getLogger(__name__)


@dataclass(slots=True)
class StudioClients:
    """External clients shared by the pipeline components.

    Optional clients are None when their credentials are not configured.
    """

    vision: LiteLLMVisionClient
    identifier: LiteLLMVisionClient
    store: SupportsBlobStore
    loader: ImageLoader
    segmenter: MoondreamClient | None = None
    remover: ReplicateBackgroundRemover | None = None
    image_backend: GeminiImageBackend | None = None


def _require(value: str | None, name: str) -> str:
    if not value:
        raise ConfigurationError(f"{name} is not set.")
    return value


def build_store(config: StudioConfig) -> SupportsBlobStore:
    """S3 store when a bucket is configured, local directory otherwise."""
    if config.s3_bucket:
        return S3BlobStore(
            bucket=config.s3_bucket,
            prefix=config.s3_prefix,
            public_base_url=config.s3_public_url,
            region=config.aws_region,
            endpoint_url=config.s3_endpoint_url,
        )
    LOG.info("S3_BUCKET not set, storing blobs under %s", config.storage_dir)
    return LocalBlobStore(root=config.storage_dir)


def build_clients(config: StudioConfig, *, detection: bool = False, generation: bool = False) -> StudioClients:
    """Build clients for the requested capabilities.

    Args:
        config: Loaded settings.
        detection: Require the segmentation service (MOONDREAM_API_KEY).
        generation: Require the image backend (GOOGLE_AI_API_KEY).

    Raises:
        ConfigurationError: If a credential needed by a requested capability is missing.
    """
    google_key = config.google_api_key
    if generation:
        google_key = _require(google_key, "GOOGLE_AI_API_KEY")

    vision = LiteLLMVisionClient(config.vision_model, api_key=google_key)
    identifier = LiteLLMVisionClient(config.effective_identify_model, api_key=google_key)

    segmenter = None
    if detection:
        segmenter = MoondreamClient(
            api_key=_require(config.moondream_api_key, "MOONDREAM_API_KEY"),
            api_url=config.moondream_api_url or DEFAULT_API_URL,
        )

    remover = None
    if config.replicate_api_token:
        remover = ReplicateBackgroundRemover(config.replicate_api_token)

    image_backend = GeminiImageBackend(google_key, config.image_model) if generation else None

    return StudioClients(
        vision=vision,
        identifier=identifier,
        store=build_store(config),
        loader=ImageLoader(),
        segmenter=segmenter,
        remover=remover,
        image_backend=image_backend,
    )


def build_detector(config: StudioConfig, clients: StudioClients) -> MultiProductDetector:
    if clients.segmenter is None:
        raise ConfigurationError("Detection needs a segmentation client (MOONDREAM_API_KEY).")
    return MultiProductDetector(
        clients.identifier,
        clients.segmenter,
        pacing=PacingPolicy(delay_s=config.segment_delay_s, max_attempts=config.segment_max_attempts),
        language=config.market_language,
    )


def build_analyzer(config: StudioConfig, clients: StudioClients) -> VisionAnalyzer:
    return VisionAnalyzer(clients.vision, language=config.market_language, market=config.market_aesthetic)


def build_compositor(clients: StudioClients) -> CleanReferenceCompositor:
    return CleanReferenceCompositor(clients.loader, clients.remover)


def build_coordinator(
    config: StudioConfig,
    clients: StudioClients,
    ledger: SupportsCreditLedger,
    *,
    sessions: SupportsSessionStore | None = None,
    brands: BrandDirectory | None = None,
    backgrounds: BackgroundCatalog | None = None,
) -> StudioCoordinator:
    if clients.image_backend is None:
        raise ConfigurationError("Generation needs an image backend (GOOGLE_AI_API_KEY).")
    return StudioCoordinator(
        GenerationInvoker(clients.image_backend, clients.loader, clients.store),
        ledger,
        compositor=build_compositor(clients),
        store=clients.store,
        sessions=sessions,
        brands=brands,
        backgrounds=backgrounds,
        captions=CaptionWriter(clients.vision),
        cost_units=config.generation_cost_units,
        market=config.market_aesthetic,
    )
