"""
Quick local test helper: runs the U2Net pipeline on a local image and writes
an RGBA PNG to disk. This bypasses the HTTP layer.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

# Ensure project root is importable when running from scripts/
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from u2net_service.errors import BackgroundRemovalError
from u2net_service.pipeline import process_image_bytes


def _parse_pair(value: str) -> tuple[float, float]:
    try:
        a, b = value.lower().replace("x", ",").split(",")
        return float(a), float(b)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected two numbers like 120,80 got {value!r}") from exc


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run U2Net background removal on a local image")
    parser.add_argument("--input", required=True, help="Path to the input image")
    parser.add_argument("--output", required=True, help="Path to write the RGBA PNG")
    parser.add_argument("--seed", type=_parse_pair, default=None, help="Subject point as x,y")
    parser.add_argument(
        "--display",
        type=_parse_pair,
        default=None,
        help="Displayed image size as WxH; when set, --seed is in display coordinates",
    )
    parser.add_argument("--verbose", action="store_true", help="Log pipeline stages")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    input_path = Path(args.input)
    output_path = Path(args.output)
    if not input_path.exists():
        raise FileNotFoundError(f"Input file not found: {input_path}")

    image_bytes = input_path.read_bytes()
    try:
        png_bytes = process_image_bytes(image_bytes, seed=args.seed, display_size=args.display)
    except BackgroundRemovalError as exc:
        print(exc.user_message, file=sys.stderr)
        return 1
    except Exception as exc:  # noqa: BLE001
        logging.getLogger(__name__).debug("pipeline crashed", exc_info=True)
        print(BackgroundRemovalError(str(exc) or type(exc).__name__).user_message, file=sys.stderr)
        return 1
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(png_bytes)
    print(f"Wrote RGBA output to {output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
