"""Environment-driven settings."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from studio_compositor.errors import ConfigurationError

DEFAULT_VISION_MODEL = "gemini/gemini-2.5-flash"
DEFAULT_IMAGE_MODEL = "gemini-2.5-flash-image"


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    """Parse an optional bool env var strictly."""
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    raise ConfigurationError(f"Invalid {name}={raw!r}; expected 0/1/true/false.")


def _env_str(env: Mapping[str, str], name: str) -> str | None:
    raw = env.get(name)
    return raw.strip() if raw and raw.strip() else None


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = _env_str(env, name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"Invalid {name}={raw!r}; expected a number.") from e


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = _env_str(env, name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"Invalid {name}={raw!r}; expected an integer.") from e


@dataclass(frozen=True, slots=True)
class StudioConfig:
    """Settings for building the pipeline's clients.

    Credentials are optional here; `build_clients` fails on the ones it needs.
    """

    google_api_key: str | None = None
    vision_model: str = DEFAULT_VISION_MODEL
    identify_model: str | None = None
    image_model: str = DEFAULT_IMAGE_MODEL
    moondream_api_key: str | None = None
    moondream_api_url: str | None = None
    replicate_api_token: str | None = None
    s3_bucket: str | None = None
    s3_prefix: str = ""
    s3_public_url: str | None = None
    aws_region: str = "us-east-1"
    s3_endpoint_url: str | None = None
    storage_dir: Path = Path("outputs/storage")
    segment_delay_s: float = 0.3
    segment_max_attempts: int = 1
    market_language: str = "french"
    market_aesthetic: str = "Senegal"
    generation_cost_units: int = 100
    use_brand_style: bool = True

    @property
    def effective_identify_model(self) -> str:
        return self.identify_model or self.vision_model

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> StudioConfig:
        """Load settings from `env` (defaults to `os.environ`).

        Raises:
            ConfigurationError: If a value is malformed.
        """
        env = os.environ if env is None else env
        cfg = cls(
            google_api_key=_env_str(env, "GOOGLE_AI_API_KEY"),
            vision_model=_env_str(env, "VISION_MODEL") or DEFAULT_VISION_MODEL,
            identify_model=_env_str(env, "IDENTIFY_MODEL"),
            image_model=_env_str(env, "IMAGE_MODEL") or DEFAULT_IMAGE_MODEL,
            moondream_api_key=_env_str(env, "MOONDREAM_API_KEY"),
            moondream_api_url=_env_str(env, "MOONDREAM_API_URL"),
            replicate_api_token=_env_str(env, "REPLICATE_API_TOKEN"),
            s3_bucket=_env_str(env, "S3_BUCKET"),
            s3_prefix=_env_str(env, "S3_PREFIX") or "",
            s3_public_url=_env_str(env, "S3_PUBLIC_URL"),
            aws_region=_env_str(env, "AWS_DEFAULT_REGION") or "us-east-1",
            s3_endpoint_url=_env_str(env, "S3_ENDPOINT_URL"),
            storage_dir=Path(_env_str(env, "STORAGE_DIR") or "outputs/storage"),
            segment_delay_s=_env_float(env, "SEGMENT_DELAY_S", 0.3),
            segment_max_attempts=_env_int(env, "SEGMENT_MAX_ATTEMPTS", 1),
            market_language=(_env_str(env, "MARKET_LANGUAGE") or "french").lower(),
            market_aesthetic=_env_str(env, "MARKET_AESTHETIC") or "Senegal",
            generation_cost_units=_env_int(env, "GENERATION_COST_UNITS", 100),
            use_brand_style=_env_bool(env, "USE_BRAND_STYLE", True),
        )
        if cfg.segment_delay_s < 0:
            raise ConfigurationError("SEGMENT_DELAY_S must be >= 0")
        if cfg.segment_max_attempts < 1:
            raise ConfigurationError("SEGMENT_MAX_ATTEMPTS must be >= 1")
        if cfg.generation_cost_units <= 0:
            raise ConfigurationError("GENERATION_COST_UNITS must be > 0")
        return cfg
