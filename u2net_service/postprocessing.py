"""Post-processing for U2Net saliency maps: threshold, feather, compose."""

from __future__ import annotations

from io import BytesIO
import logging
from pathlib import Path

import cv2
import numpy as np
from PIL import Image

from .errors import EncodeError
from .inference import SaliencyMap

logger = logging.getLogger(__name__)

MASK_THRESHOLD = 128


def saliency_to_gray(saliency: SaliencyMap) -> np.ndarray:
    """Clamp to [0, 1] and scale to 0..255, rounding halves up."""
    values = saliency.values
    if values.shape != (saliency.height, saliency.width):
        raise ValueError(
            f"Saliency values shape {values.shape} does not match declared "
            f"{saliency.width}x{saliency.height}"
        )
    clamped = np.clip(values.astype(np.float32), 0.0, 1.0)
    return np.floor(clamped * 255.0 + 0.5).astype(np.uint8)


def build_binary_mask(
    saliency: SaliencyMap,
    width: int,
    height: int,
    threshold: int = MASK_THRESHOLD,
) -> np.ndarray:
    """
    Upsample the saliency map to the working size and binarize it.

    Returns a (height, width) uint8 mask of 0/1.
    """
    gray = saliency_to_gray(saliency)
    if (saliency.width, saliency.height) != (width, height):
        gray = cv2.resize(gray, (width, height), interpolation=cv2.INTER_LINEAR)
    mask = (gray >= threshold).astype(np.uint8)
    logger.debug(
        "mask: %dx%d -> %dx%d threshold=%d foreground=%.2f%%",
        saliency.width,
        saliency.height,
        width,
        height,
        threshold,
        100.0 * float(mask.mean()) if mask.size else 0.0,
    )
    return mask


def _horizontal_mean3(a: np.ndarray) -> np.ndarray:
    """3-tap mean along rows, averaging only neighbours that exist."""
    a32 = a.astype(np.int32)
    total = a32.copy()
    count = np.ones(a32.shape[1], dtype=np.int32)
    total[:, 1:] += a32[:, :-1]
    total[:, :-1] += a32[:, 1:]
    count[1:] += 1
    count[:-1] += 1
    return (total // count[None, :]).astype(np.uint8)


def feather_mask(mask: np.ndarray, radius: int = 2) -> np.ndarray:
    """
    Soften a binary mask into an alpha channel.

    Each unit of radius runs one full horizontal then vertical box pass; edge
    pixels average in-bounds neighbours only, so borders are neither
    darkened nor brightened. `radius <= 0` gives a hard 0/255 alpha.
    """
    if mask.ndim != 2:
        raise ValueError(f"Expected 2D mask, got shape={mask.shape}")
    alpha = np.where(mask != 0, 255, 0).astype(np.uint8)
    if radius <= 0:
        return alpha
    for _ in range(int(radius)):
        alpha = _horizontal_mean3(alpha)
        alpha = _horizontal_mean3(alpha.T).T
    return np.ascontiguousarray(alpha)


def compose_rgba(rgb: np.ndarray, alpha: np.ndarray) -> np.ndarray:
    """Stack RGB with a replacement alpha plane; RGB bytes are left untouched."""
    if rgb.ndim != 3 or rgb.shape[2] not in (3, 4):
        raise ValueError(f"Expected RGB image (H,W,3), got {rgb.shape}")
    if alpha.ndim != 2 or alpha.shape[:2] != rgb.shape[:2]:
        raise ValueError(f"Alpha shape {alpha.shape} does not match RGB {rgb.shape[:2]}")
    return np.dstack((rgb[..., :3].astype(np.uint8), alpha.astype(np.uint8)))


def encode_png(rgba: np.ndarray) -> bytes:
    """
    Encode RGBA pixels as a lossless PNG.

    Raises:
        EncodeError: when Pillow cannot build or save the image.
    """
    try:
        out = Image.fromarray(np.ascontiguousarray(rgba, dtype=np.uint8))
        if out.mode != "RGBA":
            out = out.convert("RGBA")
        buf = BytesIO()
        out.save(buf, format="PNG")
    except (OSError, ValueError, TypeError) as exc:
        raise EncodeError(f"PNG encoding failed ({exc})") from exc
    return buf.getvalue()


def maybe_dump_debug(mask: np.ndarray, alpha: np.ndarray, debug_dir: Path) -> None:
    """Optionally write debug visualizations when DEBUG is enabled."""
    try:
        debug_dir.mkdir(parents=True, exist_ok=True)
        cv2.imwrite(str(debug_dir / "mask.png"), (mask != 0).astype(np.uint8) * 255)
        cv2.imwrite(str(debug_dir / "alpha.png"), alpha)
        logger.debug("postprocess: wrote debug outputs to %s", debug_dir)
    except Exception as exc:  # noqa: BLE001
        logger.warning("postprocess: failed to write debug outputs: %s", exc)
