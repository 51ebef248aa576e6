from __future__ import annotations

from pathlib import Path
from typing import Any

import httpx
import pytest

from studio_compositor.clients import build_clients, build_store
from studio_compositor.config import StudioConfig
from studio_compositor.errors import ConfigurationError, ImageFetchError
from studio_compositor.fetch.remote import RemoteImageFetcher, validate_url
from studio_compositor.fetch.sources import ImageLoader, is_remote
from studio_compositor.storage.blob import (
    LocalBlobStore,
    S3BlobStore,
    clean_reference_key,
    generated_image_key,
)


def _fetcher(handler: Any, **kwargs: Any) -> RemoteImageFetcher:
    transport = httpx.MockTransport(handler)
    return RemoteImageFetcher(client_factory=lambda **kw: httpx.Client(transport=transport, **kw), **kwargs)


@pytest.mark.parametrize(
    "url",
    [
        "file:///etc/passwd",
        "ftp://example.com/a.png",
        "http://localhost/a.png",
        "http://127.0.0.1/a.png",
        "http://10.0.0.8/a.png",
        "http://192.168.1.2/a.png",
        "http://169.254.169.254/latest/meta-data",
        "http://metadata.google.internal/computeMetadata",
        "http://[::1]/a.png",
        "https:///nohost.png",
    ],
)
def test_validate_url_blocks_unsafe_targets(url: str) -> None:
    with pytest.raises(ImageFetchError):
        validate_url(url)


def test_validate_url_allowlist() -> None:
    assert validate_url("https://Images.CDN.example.com/a.png") == "images.cdn.example.com"
    assert validate_url("https://cdn.example.com/a.png", ["example.com"]) == "cdn.example.com"
    with pytest.raises(ImageFetchError, match="allowlist"):
        validate_url("https://evil.test/a.png", ["example.com"])


def test_fetch_returns_bytes_and_clean_mime() -> None:
    fetcher = _fetcher(lambda _req: httpx.Response(200, headers={"content-type": "image/webp;q=1"}, content=b"RIFF"))
    out = fetcher.fetch("https://cdn.test/a.webp")
    assert out.data == b"RIFF"
    assert out.mime_type == "image/webp"


@pytest.mark.parametrize(
    ("response", "match"),
    [
        (httpx.Response(200, headers={"content-type": "text/html"}, content=b"<html/>"), "did not return an image"),
        (httpx.Response(404), "Failed to fetch"),
        (httpx.Response(200, headers={"content-type": "image/png"}, content=b"x" * 64), "too large"),
    ],
)
def test_fetch_rejections(response: httpx.Response, match: str) -> None:
    fetcher = _fetcher(lambda _req: response, max_bytes=32)
    with pytest.raises(ImageFetchError, match=match):
        fetcher.fetch("https://cdn.test/a.png")


def test_fetch_can_accept_non_image_when_not_required() -> None:
    fetcher = _fetcher(lambda _req: httpx.Response(200, headers={"content-type": "application/octet-stream"}, content=b"b"), require_image=False)
    assert fetcher.fetch("https://cdn.test/blob").mime_type == "application/octet-stream"


def test_image_loader_resolves_public_dir_and_missing_files(tmp_path: Path) -> None:
    (tmp_path / "backgrounds").mkdir()
    (tmp_path / "backgrounds" / "dakar.jpg").write_bytes(b"jpeg")
    loader = ImageLoader(public_dir=tmp_path)

    out = loader.load("/backgrounds/dakar.jpg")
    assert out.data == b"jpeg"
    assert out.mime_type == "image/jpeg"

    with pytest.raises(ImageFetchError, match="not found"):
        loader.load("/backgrounds/missing.jpg")
    with pytest.raises(ImageFetchError, match="Empty"):
        loader.load("")
    assert is_remote("https://x/y.png")
    assert not is_remote("/x/y.png")


def test_storage_keys() -> None:
    assert generated_image_key("u1", now=1700000000.5, token="abcd") == "generated/u1/1700000000500-abcd.png"
    assert clean_reference_key("product-2", now=1.5) == "clean-references/product-2-1500.png"
    assert generated_image_key("u1") != generated_image_key("u1")
    assert generated_image_key("u1", "image/jpeg", now=1.0, token="t").endswith("-t.jpg")
    assert generated_image_key("u1", "image/webp; q=1", now=1.0, token="t").endswith("-t.webp")
    assert generated_image_key("u1", "application/octet-stream", now=1.0, token="t").endswith("-t.png")


class _FakeS3:
    def __init__(self) -> None:
        self.puts: list[dict[str, Any]] = []

    def put_object(self, **kwargs: Any) -> None:
        self.puts.append(kwargs)

    def generate_presigned_url(self, op: str, Params: dict[str, str], ExpiresIn: int) -> str:
        return f"https://signed/{Params['Bucket']}/{Params['Key']}?ttl={ExpiresIn}&op={op}"


def test_s3_store_urls_and_signed_urls() -> None:
    s3 = _FakeS3()
    cdn = S3BlobStore(bucket="b", prefix="/studio/", public_base_url="https://cdn.test/", client=s3)
    assert cdn.put(b"png", "generated/u1/1-a.png", "image/png") == "https://cdn.test/studio/generated/u1/1-a.png"
    assert s3.puts[0] == {"Bucket": "b", "Key": "studio/generated/u1/1-a.png", "Body": b"png", "ContentType": "image/png"}
    assert cdn.signed_url("k.png", ttl_s=60) == "https://signed/b/studio/k.png?ttl=60&op=get_object"

    r2 = S3BlobStore(bucket="b", endpoint_url="https://r2.test", client=s3)
    assert r2.put(b"x", "k.png", "image/png") == "https://r2.test/b/k.png"

    aws = S3BlobStore(bucket="b", region="eu-west-3", client=s3)
    assert aws.put(b"x", "k.png", "image/png") == "https://b.s3.eu-west-3.amazonaws.com/k.png"


def test_local_store_writes_under_root(tmp_path: Path) -> None:
    store = LocalBlobStore(root=tmp_path)
    url = store.put(b"data", "generated/u1/1-a.png", "image/png")
    assert Path(url).read_bytes() == b"data"
    assert store.signed_url("generated/u1/1-a.png") == url


def test_config_defaults_and_overrides() -> None:
    cfg = StudioConfig.from_env({})
    assert cfg.vision_model == "gemini/gemini-2.5-flash"
    assert cfg.effective_identify_model == cfg.vision_model
    assert cfg.image_model == "gemini-2.5-flash-image"
    assert cfg.segment_delay_s == pytest.approx(0.3)
    assert cfg.segment_max_attempts == 1
    assert cfg.market_language == "french"
    assert cfg.market_aesthetic == "Senegal"
    assert cfg.generation_cost_units == 100
    assert cfg.use_brand_style is True

    cfg = StudioConfig.from_env(
        {
            "IDENTIFY_MODEL": "gemini/gemini-2.5-flash-lite",
            "SEGMENT_DELAY_S": "1.5",
            "SEGMENT_MAX_ATTEMPTS": "2",
            "MARKET_LANGUAGE": "English",
            "USE_BRAND_STYLE": "off",
        }
    )
    assert cfg.effective_identify_model == "gemini/gemini-2.5-flash-lite"
    assert cfg.segment_delay_s == pytest.approx(1.5)
    assert cfg.segment_max_attempts == 2
    assert cfg.market_language == "english"
    assert cfg.use_brand_style is False


@pytest.mark.parametrize(
    "env",
    [
        {"USE_BRAND_STYLE": "maybe"},
        {"SEGMENT_DELAY_S": "fast"},
        {"SEGMENT_DELAY_S": "-1"},
        {"SEGMENT_MAX_ATTEMPTS": "0"},
        {"GENERATION_COST_UNITS": "abc"},
    ],
)
def test_config_rejects_malformed_values(env: dict[str, str]) -> None:
    with pytest.raises(ConfigurationError):
        StudioConfig.from_env(env)


def test_build_clients_requires_credentials_per_capability(tmp_path: Path) -> None:
    cfg = StudioConfig(storage_dir=tmp_path)
    with pytest.raises(ConfigurationError, match="MOONDREAM_API_KEY"):
        build_clients(cfg, detection=True)
    with pytest.raises(ConfigurationError, match="GOOGLE_AI_API_KEY"):
        build_clients(cfg, generation=True)

    clients = build_clients(StudioConfig(moondream_api_key="md", storage_dir=tmp_path), detection=True)
    assert clients.segmenter is not None
    assert clients.remover is None
    assert clients.image_backend is None
    assert isinstance(build_store(cfg), LocalBlobStore)
