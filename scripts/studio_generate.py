#!/usr/bin/env python3
"""Run one studio generation from a brief file.

The brief is a YAML or JSON document matching `GenerationBrief` (snake_case
or camelCase keys). Credits are held in an in-memory ledger seeded with
`--credits` units, so the run shows exactly what would be charged.

Example:
  GOOGLE_AI_API_KEY=... python scripts/studio_generate.py \
      --brief briefs/bag.yaml --brand brands/house.yaml --credits 500 --verbose

Writes `--out` (default `outputs/studio/result.yaml`) with the output image
URL, prompt, caption, cost and remaining balance.
"""

import argparse
import logging
import sys
from dataclasses import asdict
from pathlib import Path

import yaml

from studio_compositor.billing.credits import InMemoryCreditLedger, units_to_credits
from studio_compositor.billing.sessions import InMemorySessionStore
from studio_compositor.clients import build_clients, build_coordinator
from studio_compositor.config import StudioConfig
from studio_compositor.errors import StudioError
from studio_compositor.studio.brief import BackgroundMetadata, BrandDNA, VerbalDNA
from studio_compositor.studio.coordinator import BrandProfile
from studio_compositor.vision.image import ensure_dir


class _FileBrands:
    """Brand directory serving a single brand loaded from a file."""

    def __init__(self, brand: BrandProfile) -> None:
        self.brand = brand

    def get_brand(self, brand_id: str, user_id: str) -> BrandProfile | None:
        return self.brand

    def default_brand(self, user_id: str) -> BrandProfile | None:
        return self.brand


class _FileBackgrounds:
    """Background catalog loaded from a YAML mapping of id -> metadata."""

    def __init__(self, entries: dict[str, BackgroundMetadata]) -> None:
        self.entries = entries

    def get(self, background_id: str) -> BackgroundMetadata | None:
        return self.entries.get(background_id)


def _load_doc(path: Path) -> object:
    # YAML is a superset of JSON.
    return yaml.safe_load(path.read_text(encoding="utf-8"))


def main(argv: list[str]) -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--brief", type=str, required=True)
    ap.add_argument("--user_id", type=str, default="local-user")
    ap.add_argument("--credits", type=int, default=1000, help="Starting balance in units.")
    ap.add_argument("--brand", type=str, default=None, help="Brand DNA YAML/JSON file.")
    ap.add_argument("--voice", type=str, default=None, help="Verbal DNA YAML/JSON file used for captions.")
    ap.add_argument("--backgrounds", type=str, default=None, help="Background catalog YAML file.")
    ap.add_argument("--no_brand_style", action="store_true")
    ap.add_argument("--out", type=str, default="outputs/studio/result.yaml")
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")

    brief_path = Path(args.brief).expanduser().resolve()
    if not brief_path.is_file():
        raise SystemExit(f"--brief is not a file: {brief_path}")

    try:
        config = StudioConfig.from_env()
        clients = build_clients(config, generation=True)
    except StudioError as e:
        raise SystemExit(str(e)) from e

    brands = None
    if args.brand or args.voice:
        brands = _FileBrands(
            BrandProfile(
                visual_dna=BrandDNA.model_validate(_load_doc(Path(args.brand))) if args.brand else None,
                verbal_dna=VerbalDNA.model_validate(_load_doc(Path(args.voice))) if args.voice else None,
            )
        )
    backgrounds = None
    if args.backgrounds:
        raw = _load_doc(Path(args.backgrounds)) or {}
        backgrounds = _FileBackgrounds({str(k): BackgroundMetadata.model_validate(v) for k, v in dict(raw).items()})

    ledger = InMemoryCreditLedger()
    if args.credits > 0:
        ledger.credit(args.user_id, args.credits, "cli_seed")
    coordinator = build_coordinator(
        config,
        clients,
        ledger,
        sessions=InMemorySessionStore(),
        brands=brands,
        backgrounds=backgrounds,
    )

    try:
        result = coordinator.run_generation(
            _load_doc(brief_path),
            args.user_id,
            use_brand_style=config.use_brand_style and not args.no_brand_style,
        )
    except StudioError as e:
        print(f"[ERROR] {type(e).__name__}: {e}", file=sys.stderr)
        return 1

    out_path = Path(args.out).expanduser().resolve()
    ensure_dir(out_path.parent)
    payload = asdict(result)
    payload["credits_remaining_display"] = units_to_credits(result.credits_remaining)
    out_path.write_text(yaml.safe_dump(payload, sort_keys=False, allow_unicode=True), encoding="utf-8")
    print(f"Generated {result.output_image_url} (charged {result.credits_cost} units)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
