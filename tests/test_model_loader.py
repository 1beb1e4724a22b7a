"""Saliency session memoization, backends and the runtime wait."""

from __future__ import annotations

import asyncio
from pathlib import Path
import threading
import time
from typing import Tuple

import numpy as np
import pytest
import torch

from u2net_service.config import Settings
from u2net_service.errors import InferenceError, ModelLoadError, RuntimeUnavailableError
from u2net_service.inference import extract_saliency_map, predict_saliency
from u2net_service.model_loader import (
    SessionProvider,
    SessionState,
    TorchScriptSaliencyModel,
    load_saliency_model,
    runtime_ready,
    wait_for_runtime,
)

from .conftest import FakeSaliencyModel


class _CountingLoader:
    def __init__(self, fail_times: int = 0, delay: float = 0.05):
        self.fail_times = fail_times
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            self.calls += 1
            attempt = self.calls
        time.sleep(self.delay)
        if attempt <= self.fail_times:
            raise ModelLoadError("network hiccup")
        return FakeSaliencyModel(np.ones((4, 4), dtype=np.float32))


@pytest.mark.asyncio
async def test_concurrent_first_calls_share_one_load() -> None:
    loader = _CountingLoader()
    provider = SessionProvider(loader)

    models = await asyncio.gather(*(provider.get() for _ in range(5)))

    assert loader.calls == 1
    assert all(m is models[0] for m in models)
    assert provider.state == SessionState.READY


@pytest.mark.asyncio
async def test_failed_load_can_be_retried() -> None:
    loader = _CountingLoader(fail_times=1, delay=0)
    provider = SessionProvider(loader, retry_on_failure=True)

    with pytest.raises(ModelLoadError):
        await provider.get()
    assert provider.state == SessionState.FAILED

    model = await provider.get()
    assert model is not None
    assert loader.calls == 2


@pytest.mark.asyncio
async def test_failed_load_is_sticky_without_retry() -> None:
    loader = _CountingLoader(fail_times=1, delay=0)
    provider = SessionProvider(loader, retry_on_failure=False)

    with pytest.raises(ModelLoadError):
        await provider.get()
    with pytest.raises(ModelLoadError):
        await provider.get()

    assert loader.calls == 1
    provider.reset()
    assert await provider.get() is not None


@pytest.mark.asyncio
async def test_unexpected_loader_errors_become_model_load_errors() -> None:
    def broken():
        raise RuntimeError("bad opset")

    provider = SessionProvider(broken)

    with pytest.raises(ModelLoadError, match="bad opset"):
        await provider.get()


@pytest.mark.asyncio
async def test_wait_for_runtime_times_out() -> None:
    with pytest.raises(RuntimeUnavailableError):
        await wait_for_runtime(lambda: False, timeout=0.05, interval=0.01)


@pytest.mark.asyncio
async def test_wait_for_runtime_returns_once_ready() -> None:
    polls = {"n": 0}

    def ready() -> bool:
        polls["n"] += 1
        return polls["n"] >= 3

    await wait_for_runtime(ready, timeout=1.0, interval=0.01)

    assert polls["n"] == 3


def test_missing_model_raises(tmp_path: Path) -> None:
    settings = Settings(u2net_model_path=tmp_path / "absent.onnx")

    with pytest.raises(ModelLoadError):
        load_saliency_model(settings)


@pytest.mark.parametrize("name", ["broken.onnx", "broken.pt"])
def test_corrupt_model_raises(tmp_path: Path, name: str) -> None:
    path = tmp_path / name
    path.write_bytes(b"definitely not a model")

    with pytest.raises(ModelLoadError):
        load_saliency_model(Settings(u2net_model_path=path))


class _TinySaliency(torch.nn.Module):
    def forward(self, x: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        d0 = x.mean(dim=1, keepdim=True)
        return d0, d0 * 0.0


def test_torchscript_backend_uses_first_output(tmp_path: Path) -> None:
    path = tmp_path / "tiny.pt"
    traced = torch.jit.trace(_TinySaliency(), torch.ones(1, 3, 8, 8))
    torch.jit.save(traced, str(path))

    model = load_saliency_model(Settings(u2net_model_path=path))
    out = model.infer(np.ones((1, 3, 8, 8), dtype=np.float32))

    assert isinstance(model, TorchScriptSaliencyModel)
    assert out.shape == (1, 1, 8, 8)
    assert np.allclose(out, 1.0)


def test_runtime_ready_for_torchscript_models(tmp_path: Path) -> None:
    assert runtime_ready(Settings(u2net_model_path=tmp_path / "m.pt")) is True


@pytest.mark.parametrize("shape", [(1, 1, 6, 9), (1, 6, 9), (6, 9)])
def test_extract_saliency_map_reads_last_two_axes(shape) -> None:
    saliency = extract_saliency_map(np.zeros(shape, dtype=np.float32))

    assert (saliency.width, saliency.height) == (9, 6)
    assert saliency.values.shape == (6, 9)


def test_extract_saliency_map_rejects_odd_shapes() -> None:
    with pytest.raises(RuntimeError):
        extract_saliency_map(np.zeros((1, 1, 1, 2, 2), dtype=np.float32))


@pytest.mark.asyncio
async def test_predict_saliency_keeps_model_output_resolution(provider, fake_model) -> None:
    rgb = np.zeros((48, 64, 3), dtype=np.uint8)

    saliency = await predict_saliency(provider, rgb, input_size=320)

    assert (saliency.width, saliency.height) == (32, 32)
    assert fake_model.calls == 1


class _BrokenModel:
    def __init__(self, output=None):
        self.output = output

    def infer(self, tensor: np.ndarray) -> np.ndarray:
        if self.output is None:
            raise RuntimeError("onnx run failed")
        return self.output


@pytest.mark.asyncio
async def test_model_run_failure_becomes_inference_error() -> None:
    provider = SessionProvider(lambda: _BrokenModel())

    with pytest.raises(InferenceError, match="onnx run failed") as info:
        await predict_saliency(provider, np.zeros((8, 8, 3), dtype=np.uint8), input_size=16)

    assert info.value.user_message == "Background removal failed: onnx run failed"
    assert isinstance(info.value.__cause__, RuntimeError)


@pytest.mark.asyncio
async def test_unexpected_output_shape_becomes_inference_error() -> None:
    provider = SessionProvider(lambda: _BrokenModel(np.zeros((1, 1, 1, 2, 2), dtype=np.float32)))

    with pytest.raises(InferenceError, match="Unexpected output tensor shape"):
        await predict_saliency(provider, np.zeros((8, 8, 3), dtype=np.uint8), input_size=16)
