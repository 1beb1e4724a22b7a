from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging

import numpy as np

from .errors import BackgroundRemovalError, InferenceError
from .model_loader import SessionProvider
from .preprocessing import build_input_tensor

logger = logging.getLogger(__name__)


@dataclass
class SaliencyMap:
    """Raw model output in the model's own output coordinate space."""

    values: np.ndarray  # (height, width) float32, not yet clamped
    width: int
    height: int


def extract_saliency_map(output: np.ndarray) -> SaliencyMap:
    """
    Reduce a model output tensor to one channel.

    Expect (1,1,H,W), (1,H,W) or (H,W); spatial dims come from the last two axes.
    """
    y = np.asarray(output, dtype=np.float32)
    if y.ndim == 4:
        y = y[0, 0]
    elif y.ndim == 3:
        y = y[0]
    elif y.ndim != 2:
        raise RuntimeError(f"Unexpected output tensor shape: {tuple(y.shape)}")
    height, width = y.shape
    return SaliencyMap(values=y, width=int(width), height=int(height))


async def predict_saliency(provider: SessionProvider, rgb: np.ndarray, input_size: int) -> SaliencyMap:
    """Run the memoized saliency model over a working-resolution RGB image."""
    tensor = build_input_tensor(rgb, input_size)
    model = await provider.get()
    try:
        output = await asyncio.to_thread(model.infer, tensor)
        saliency = extract_saliency_map(output)
    except BackgroundRemovalError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise InferenceError(str(exc) or type(exc).__name__) from exc
    logger.debug(
        "saliency: input=%dx%d output=%dx%d range=[%.3f, %.3f]",
        input_size,
        input_size,
        saliency.width,
        saliency.height,
        float(saliency.values.min()),
        float(saliency.values.max()),
    )
    return saliency
