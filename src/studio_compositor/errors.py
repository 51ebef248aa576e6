"""Domain errors raised by the compositing pipeline."""

from __future__ import annotations

from typing import Literal

CreditStage = Literal["preflight", "debit"]


class StudioError(RuntimeError):
    """Base class for pipeline errors surfaced to callers."""


class ConfigurationError(StudioError):
    """A required setting or credential is missing or malformed."""


class InvalidBriefError(StudioError, ValueError):
    """The generation brief cannot be used as given."""


class ImageFetchError(StudioError):
    """An image reference could not be resolved to image bytes."""


class GenerationFailedError(StudioError):
    """The image backend produced no usable output. Nothing is charged."""


class InsufficientCreditsError(StudioError):
    """The account cannot pay for a generation.

    Attributes:
        required: Units the generation costs.
        available: Units the account held when the check failed.
        stage: "preflight" for the non-atomic check before any work,
            "debit" when the atomic debit lost a race after generation.
    """

    def __init__(self, required: int, available: int, stage: CreditStage, detail: str = "") -> None:
        self.required = required
        self.available = available
        self.stage = stage
        self.detail = detail
        msg = f"Insufficient credits ({stage}): required={required} available={available}"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)
