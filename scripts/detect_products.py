#!/usr/bin/env python3
"""Batch runner for multi-product detection and clean-reference compositing.

For each JPG/PNG image under `--images_dir`:
- identifies every product and outlines it (Moondream + fast VLM),
- builds one transparent-background clean reference per product,
- optionally analyzes each clean reference with the vision model.

Outputs under `--out_root/<image_stem>/`:
  - `product-<n>.png`: clean references
  - `detections.yaml`: products, boxes, provenance and analysis
and a global `--out_root/summary.yaml`.

Configuration is read from the environment (see `StudioConfig.from_env`):
`MOONDREAM_API_KEY` is required; `REPLICATE_API_TOKEN` enables background
removal for products without an outline; `VISION_MODEL` / `IDENTIFY_MODEL`
select LiteLLM models.
"""

import argparse
import logging
import sys
from pathlib import Path

import yaml

from studio_compositor.clients import build_analyzer, build_clients, build_compositor, build_detector
from studio_compositor.config import StudioConfig
from studio_compositor.errors import ConfigurationError
from studio_compositor.vision.image import ensure_dir, mime_from_path, open_image

_EXTS = {".jpg", ".jpeg", ".png", ".webp"}


def _iter_images(images_dir: Path) -> list[Path]:
    return sorted(p for p in images_dir.iterdir() if p.is_file() and p.suffix.lower() in _EXTS)


def _yaml_dump(data: object) -> str:
    dumped = yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
    return dumped or ""


def main(argv: list[str]) -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--images_dir", type=str, default="assets/images")
    ap.add_argument("--out_root", type=str, default="outputs/detections")
    ap.add_argument("--analyze", action="store_true", help="Run product analysis on each clean reference.")
    ap.add_argument("--overwrite", action="store_true")
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")

    images_dir = Path(args.images_dir).expanduser().resolve()
    if not images_dir.is_dir():
        raise SystemExit(f"--images_dir is not a directory: {images_dir}")
    out_root = Path(args.out_root).expanduser().resolve()
    ensure_dir(out_root)

    try:
        config = StudioConfig.from_env()
        clients = build_clients(config, detection=True)
    except ConfigurationError as e:
        raise SystemExit(str(e)) from e
    detector = build_detector(config, clients)
    compositor = build_compositor(clients)
    analyzer = build_analyzer(config, clients) if args.analyze else None

    image_paths = _iter_images(images_dir)
    if not image_paths:
        raise SystemExit(f"No images found under: {images_dir}")

    summary: list[dict[str, object]] = []
    failures = 0
    for image_path in image_paths:
        per_outdir = out_root / image_path.stem
        detections_yaml = per_outdir / "detections.yaml"
        if detections_yaml.exists() and not args.overwrite:
            summary.append(yaml.safe_load(detections_yaml.read_text(encoding="utf-8")))
            continue
        print(f"Analysing {image_path}")

        try:
            ensure_dir(per_outdir)
            data = image_path.read_bytes()
            mime = mime_from_path(image_path)
            w, h = open_image(data).size
            result = detector.detect(data, mime)

            products: list[dict[str, object]] = []
            for product in result.products:
                png = compositor.build(str(image_path), product.bounding_box, product.outline_path)
                ref_path = per_outdir / f"{product.id}.png"
                ref_path.write_bytes(png)
                entry: dict[str, object] = {
                    "id": product.id,
                    "description": product.description,
                    "source": product.source,
                    "bounding_box": product.bounding_box.as_dict(),
                    "has_outline": product.outline_path is not None,
                    "clean_reference": str(ref_path),
                }
                if analyzer is not None:
                    entry["analysis"] = analyzer.analyze(png, "image/png").model_dump()
                products.append(entry)

            record = {
                "image": str(image_path),
                "image_w": w,
                "image_h": h,
                "total_count": result.total_count,
                "products": products,
            }
            detections_yaml.write_text(_yaml_dump(record), encoding="utf-8")
            summary.append(record)
        except Exception as e:
            failures += 1
            print(f"[ERROR] {image_path}: {type(e).__name__}: {e}", file=sys.stderr)

    (out_root / "summary.yaml").write_text(_yaml_dump({"images": summary}), encoding="utf-8")

    if failures:
        print(f"Completed with {failures} failures.", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
