"""
Image loading and preprocessing for U2Net.

Images are decoded once, capped to a working resolution on the longest side
to bound compute cost, and resampled to the model's fixed square input.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import logging
from pathlib import Path
from typing import Tuple, Union

import numpy as np
from PIL import Image, UnidentifiedImageError
import requests

from .errors import ImageLoadError

logger = logging.getLogger(__name__)

ImageSource = Union[bytes, str, Path]


@dataclass
class WorkingImage:
    original_image: Image.Image
    rgb: np.ndarray  # (H, W, 3) uint8 at working resolution
    natural_size: Tuple[int, int]  # (width, height)
    working_size: Tuple[int, int]
    scale: float


def _download_image(url: str, timeout_seconds: int) -> bytes:
    resp = requests.get(url, timeout=(5, timeout_seconds))
    resp.raise_for_status()
    return resp.content


def read_image_bytes(source: ImageSource, timeout_seconds: int = 30) -> bytes:
    """Fetch the raw encoded bytes behind an image source."""
    if isinstance(source, (bytes, bytearray)):
        return bytes(source)
    text = str(source)
    if text.startswith(("http://", "https://")):
        try:
            return _download_image(text, timeout_seconds)
        except requests.RequestException as exc:
            raise ImageLoadError(f"could not download image ({exc})") from exc
    try:
        return Path(text).read_bytes()
    except OSError as exc:
        raise ImageLoadError(f"could not read image file {text}") from exc


def load_image(source: ImageSource, timeout_seconds: int = 30) -> Image.Image:
    """
    Decode bytes, a file path, or an http(s) URL into an RGB image.

    Raises:
        ImageLoadError: when the resource cannot be fetched or decoded.
    """
    data = read_image_bytes(source, timeout_seconds)
    if not data:
        raise ImageLoadError("image data is empty")
    try:
        image = Image.open(BytesIO(data))
        image.load()
        image = image.convert("RGB")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise ImageLoadError("invalid image data") from exc

    width, height = image.size
    if width <= 0 or height <= 0:
        raise ImageLoadError(f"invalid image size {width}x{height}")
    logger.debug("loaded image %dx%d", width, height)
    return image


def compute_working_size(width: int, height: int, max_side: int) -> Tuple[Tuple[int, int], float]:
    """Preserve aspect ratio while constraining the longest side; never upscale."""
    scale = min(1.0, max_side / max(width, height))
    new_w = max(1, int(round(width * scale)))
    new_h = max(1, int(round(height * scale)))
    return (new_w, new_h), scale


def prepare_working_image(image: Image.Image, max_side: int) -> WorkingImage:
    """Resample the decoded image to the working resolution used for refinement."""
    natural_size = image.size
    working_size, scale = compute_working_size(natural_size[0], natural_size[1], max_side)
    if working_size != natural_size:
        resized = image.resize(working_size, Image.BILINEAR)
    else:
        resized = image
    rgb = np.asarray(resized, dtype=np.uint8).copy()
    return WorkingImage(
        original_image=image,
        rgb=rgb,
        natural_size=natural_size,
        working_size=working_size,
        scale=scale,
    )


def build_input_tensor(rgb: np.ndarray, input_size: int) -> np.ndarray:
    """
    Resample to the model's square input and lay it out as (1, 3, S, S) float32.

    U2Net-p expects plain [0, 1] RGB without mean/std normalization.
    """
    if rgb.ndim != 3 or rgb.shape[2] != 3:
        raise ValueError(f"Expected RGB image (H,W,3), got shape={rgb.shape}")
    square = Image.fromarray(rgb).resize((input_size, input_size), Image.BILINEAR)
    im_np = np.asarray(square).astype("float32") / 255.0
    im_np = np.transpose(im_np, (2, 0, 1))  # HWC -> CHW
    return np.ascontiguousarray(im_np[None, ...], dtype=np.float32)


def media_type_of(data: bytes) -> str:
    """MIME type of encoded image bytes, as reported by Pillow."""
    try:
        with Image.open(BytesIO(data)) as image:
            fmt = image.format
    except (UnidentifiedImageError, OSError):
        return "application/octet-stream"
    return Image.MIME.get(fmt or "", "application/octet-stream")
