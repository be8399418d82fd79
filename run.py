from __future__ import annotations

import argparse
import logging
import time
from pathlib import Path

from dotenv import load_dotenv
from tqdm import tqdm

from portrait_matte.channel import ProcessTransport, ThreadTransport
from portrait_matte.composite import inject_alpha, save_rgba_png
from portrait_matte.engine import SegmentationEngine
from portrait_matte.errors import MattingError
from portrait_matte.preprocess import load_image


def _iter_images(input_dir: Path):
    exts = {".jpg", ".jpeg", ".png", ".webp", ".bmp", ".tif", ".tiff"}
    for p in sorted(input_dir.rglob("*")):
        if p.is_file() and p.suffix.lower() in exts:
            yield p


def main() -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Portrait matting (ONNX Runtime, adaptive provider fallback).")
    parser.add_argument("--input", required=True, type=str, help="Input directory containing images.")
    parser.add_argument("--output", required=True, type=str, help="Output directory for RGBA PNGs.")
    parser.add_argument(
        "--model",
        action="append",
        default=None,
        help="Model URL or path (repeatable or comma-separated). Defaults to RMBG_MODEL_URLS / RMBG_MODEL_URL.",
    )
    parser.add_argument("--cpu-only", action="store_true", help="Skip accelerated providers.")
    parser.add_argument("--process", action="store_true", help="Run the worker in a separate process.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every pipeline phase.")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    input_dir = Path(args.input)
    output_dir = Path(args.output)
    if not input_dir.exists():
        raise FileNotFoundError(f"Input dir not found: {input_dir}")

    transport = ProcessTransport if args.process else ThreadTransport
    with SegmentationEngine(args.model, transport_factory=transport) as engine:
        engine.load_model(force_provider_fallback=args.cpu_only).result()

        images = list(_iter_images(input_dir))
        if not images:
            print(f"No images found under {input_dir}")
            return 0

        failed = 0
        total0 = time.perf_counter()
        for img_path in tqdm(images, desc="Matting", unit="img"):
            rel = img_path.relative_to(input_dir)
            out_path = (output_dir / rel).with_suffix(".png")

            t0 = time.perf_counter()
            rgb = load_image(str(img_path))
            try:
                result = engine.segment(rgb.copy()).result()
            except MattingError as e:
                failed += 1
                print(f"{img_path.name}: FAILED ({type(e).__name__}: {e})")
                continue

            out_path.parent.mkdir(parents=True, exist_ok=True)
            save_rgba_png(inject_alpha(rgb, result.alpha), str(out_path))
            print(f"{img_path.name}: total={time.perf_counter() - t0:.3f}s ({result.width}x{result.height})")

        total1 = time.perf_counter()
        print(f"Done. {len(images) - failed}/{len(images)} images in {total1-total0:.2f}s")
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
