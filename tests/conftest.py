"""Shared fixtures: a scripted saliency model and small synthetic images."""

from __future__ import annotations

from io import BytesIO
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from u2net_service.config import Settings
from u2net_service.model_loader import SessionProvider

IMAGE_SIZE = (64, 48)  # (width, height)


class FakeSaliencyModel:
    """Returns the same saliency map for any input, shaped like U2Net output."""

    def __init__(self, saliency: np.ndarray):
        self.saliency = saliency.astype(np.float32)
        self.calls = 0

    def infer(self, tensor: np.ndarray) -> np.ndarray:
        self.calls += 1
        assert tensor.dtype == np.float32
        assert tensor.shape[:2] == (1, 3)
        return self.saliency[None, None, ...]


def two_blob_saliency() -> np.ndarray:
    """32x32 map: a tall blob on the left, a small one on the right."""
    sal = np.zeros((32, 32), dtype=np.float32)
    sal[4:28, 2:14] = 1.0
    sal[10:16, 22:28] = 1.0
    return sal


# Points inside each blob once the map is upsampled to IMAGE_SIZE.
BIG_BLOB_POINT = (15, 24)
SMALL_BLOB_POINT = (50, 19)


def make_image_bytes(size=IMAGE_SIZE, fmt: str = "PNG") -> bytes:
    width, height = size
    xs = np.linspace(0, 255, width, dtype=np.uint8)[None, :].repeat(height, axis=0)
    ys = np.linspace(0, 255, height, dtype=np.uint8)[:, None].repeat(width, axis=1)
    rgb = np.dstack((xs, ys, np.full_like(xs, 90)))
    buf = BytesIO()
    Image.fromarray(rgb).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def image_bytes() -> bytes:
    return make_image_bytes()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    # A non-ONNX path keeps the runtime check independent of installed providers.
    return Settings(
        u2net_model_path=tmp_path / "u2netp.pt",
        runtime_wait_seconds=0.2,
        runtime_poll_interval=0.01,
        feather_radius=2,
    )


@pytest.fixture
def fake_model() -> FakeSaliencyModel:
    return FakeSaliencyModel(two_blob_saliency())


@pytest.fixture
def provider(fake_model: FakeSaliencyModel) -> SessionProvider:
    return SessionProvider(loader=lambda: fake_model)
