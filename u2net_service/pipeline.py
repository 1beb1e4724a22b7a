"""
High-level U2Net background-removal pipeline.

`remove_background` is the main entry point used by the HTTP API and the
local CLI. It keeps orchestration simple:
image in -> saliency -> binary mask -> one region -> feathered alpha -> RGBA PNG out.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time
from typing import Callable, Optional, Tuple

from . import config
from .inference import SaliencyMap, predict_saliency
from .model_loader import SessionProvider, get_session_provider, runtime_ready, wait_for_runtime
from .postprocessing import build_binary_mask, compose_rgba, encode_png, feather_mask, maybe_dump_debug
from .preprocessing import ImageSource, WorkingImage, load_image, prepare_working_image
from .regions import RegionSelection, select_region
from .seed_capture import map_display_to_working

logger = logging.getLogger(__name__)


@dataclass
class RemovalResult:
    png_bytes: bytes
    width: int
    height: int
    seed: Optional[Tuple[int, int]]  # working-resolution seed actually requested
    mode: str  # "seeded" | "largest"
    foreground_pixels: int


def _load_working_image(source: ImageSource, settings: config.Settings) -> WorkingImage:
    image = load_image(source, timeout_seconds=settings.request_timeout_seconds)
    return prepare_working_image(image, settings.max_working_side)


def _cut_out(
    working: WorkingImage,
    saliency: SaliencyMap,
    seed: Optional[Tuple[int, int]],
    settings: config.Settings,
) -> Tuple[RegionSelection, bytes]:
    """Mask, region, feather and encode; CPU-bound."""
    width, height = working.working_size
    mask = build_binary_mask(saliency, width, height, threshold=settings.mask_threshold)
    selection = select_region(mask, seed, method=settings.region_method)
    alpha = feather_mask(selection.mask, settings.feather_radius)

    if settings.debug:
        maybe_dump_debug(selection.mask, alpha, settings.debug_output_dir)

    return selection, encode_png(compose_rgba(working.rgb, alpha))


async def remove_background(
    source: ImageSource,
    *,
    seed: Optional[Tuple[float, float]] = None,
    display_size: Optional[Tuple[float, float]] = None,
    provider: Optional[SessionProvider] = None,
    settings: Optional[config.Settings] = None,
    is_runtime_ready: Optional[Callable[[], bool]] = None,
) -> RemovalResult:
    """
    Full pipeline from an image source to RGBA PNG bytes.

    `seed` is in display coordinates when `display_size` is given, otherwise
    in working-resolution pixels.

    Raises:
        RuntimeUnavailableError, ImageLoadError, ModelLoadError, InferenceError, EncodeError:
            all subclasses of BackgroundRemovalError; the caller's working
            image is never modified here.
    """
    settings = config.resolve_settings(settings)
    provider = provider or get_session_provider()
    ready = is_runtime_ready or (lambda: runtime_ready(settings))

    t0 = time.perf_counter()
    await wait_for_runtime(ready, timeout=settings.runtime_wait_seconds, interval=settings.runtime_poll_interval)

    # Downloads and decoding block, so they run in a worker thread.
    working = await asyncio.to_thread(_load_working_image, source, settings)
    width, height = working.working_size
    t_load = time.perf_counter()

    saliency = await predict_saliency(provider, working.rgb, settings.u2net_input_size)
    t_inf = time.perf_counter()

    working_seed: Optional[Tuple[int, int]] = None
    if seed is not None:
        if display_size is not None:
            working_seed = map_display_to_working(seed, display_size, working.working_size)
        else:
            working_seed = (int(seed[0]), int(seed[1]))

    selection, png_bytes = await asyncio.to_thread(_cut_out, working, saliency, working_seed, settings)
    t_done = time.perf_counter()

    logger.debug(
        "remove_background %dx%d mode=%s seed=%s fg=%d total=%.3fs (load=%.3fs inf=%.3fs post=%.3fs)",
        width,
        height,
        selection.mode,
        working_seed,
        selection.pixel_count,
        t_done - t0,
        t_load - t0,
        t_inf - t_load,
        t_done - t_inf,
    )
    return RemovalResult(
        png_bytes=png_bytes,
        width=width,
        height=height,
        seed=working_seed,
        mode=selection.mode,
        foreground_pixels=selection.pixel_count,
    )


def process_image_bytes(
    image_bytes: bytes,
    seed: Optional[Tuple[float, float]] = None,
    display_size: Optional[Tuple[float, float]] = None,
    settings: Optional[config.Settings] = None,
) -> bytes:
    """Synchronous wrapper returning only the PNG bytes."""
    result = asyncio.run(
        remove_background(image_bytes, seed=seed, display_size=display_size, settings=settings)
    )
    return result.png_bytes
