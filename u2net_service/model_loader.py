"""
Model loading utilities for the U2Net saliency network.

The loader:
 - wraps an ONNX or TorchScript export behind one `infer(tensor)` call,
 - keeps a single shared session per provider, created on first use,
 - lets concurrent first callers share the same in-flight creation,
 - exposes `get_session_provider()` for inference callers.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from functools import lru_cache
import logging
from pathlib import Path
import time
from typing import Callable, Optional, Protocol

import numpy as np
import onnxruntime as ort
import torch

from . import config
from .errors import ModelLoadError, RuntimeUnavailableError

logger = logging.getLogger(__name__)

ONNX_SUFFIXES = {".onnx"}


class SaliencyModel(Protocol):
    def infer(self, tensor: np.ndarray) -> np.ndarray:
        ...


class OnnxSaliencyModel:
    """ONNX Runtime session; uses the first declared input and output."""

    def __init__(self, model_path: Path, providers: list[str]):
        self.session = ort.InferenceSession(str(model_path), providers=providers)
        self.input_name = self.session.get_inputs()[0].name
        self.output_name = self.session.get_outputs()[0].name

    def infer(self, tensor: np.ndarray) -> np.ndarray:
        outputs = self.session.run([self.output_name], {self.input_name: tensor})
        return np.asarray(outputs[0], dtype=np.float32)


class TorchScriptSaliencyModel:
    """TorchScript export on CPU. U2Net returns (d0, ..., d6); d0 is the fused map."""

    def __init__(self, model_path: Path):
        self.module = torch.jit.load(str(model_path), map_location="cpu")
        self.module.eval()

    def infer(self, tensor: np.ndarray) -> np.ndarray:
        with torch.no_grad():
            out = self.module(torch.from_numpy(tensor))
        if isinstance(out, (list, tuple)):
            out = out[0]
        if not isinstance(out, torch.Tensor):
            raise RuntimeError(f"Model output is not a tensor: {type(out)}")
        return out.detach().cpu().numpy().astype(np.float32, copy=False)


def is_onnx_model(model_path: Path) -> bool:
    return Path(model_path).suffix.lower() in ONNX_SUFFIXES


def load_saliency_model(settings: Optional[config.Settings] = None) -> SaliencyModel:
    """
    Build the saliency backend for the configured model artifact.

    Raises:
        ModelLoadError: when the artifact is missing or the backend rejects it.
    """
    settings = config.resolve_settings(settings)
    model_path = Path(settings.u2net_model_path)
    if not model_path.exists():
        raise ModelLoadError(f"model not found at {model_path}")

    try:
        if is_onnx_model(model_path):
            logger.info("Loading ONNX saliency model from %s", model_path)
            return OnnxSaliencyModel(model_path, list(settings.execution_providers))
        logger.info("Loading TorchScript saliency model from %s", model_path)
        return TorchScriptSaliencyModel(model_path)
    except Exception as exc:  # noqa: BLE001 - backend errors vary widely
        raise ModelLoadError(f"model at {model_path} is incompatible with the backend ({exc})") from exc


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


class SessionProvider:
    """
    Memoized saliency session.

    The first `get()` schedules `loader` on a worker thread; every caller that
    arrives before it finishes awaits the same future. A failed attempt is
    forgotten when `retry_on_failure` is set so a later call loads again;
    otherwise the failure is re-raised for the lifetime of the provider.
    """

    def __init__(self, loader: Callable[[], SaliencyModel], retry_on_failure: bool = True):
        self._loader = loader
        self._retry_on_failure = retry_on_failure
        self._model: Optional[SaliencyModel] = None
        self._pending: Optional[asyncio.Future] = None
        self._error: Optional[ModelLoadError] = None
        self._state = SessionState.UNINITIALIZED

    @property
    def state(self) -> SessionState:
        return self._state

    async def get(self) -> SaliencyModel:
        if self._model is not None:
            return self._model
        if self._error is not None:
            raise self._error
        if self._pending is None:
            self._state = SessionState.INITIALIZING
            self._pending = asyncio.ensure_future(self._create())
        # Shielded so a cancelled caller does not abort the shared load.
        return await asyncio.shield(self._pending)

    async def _create(self) -> SaliencyModel:
        started = time.perf_counter()
        try:
            model = await asyncio.to_thread(self._loader)
        except Exception as exc:  # noqa: BLE001
            error = exc if isinstance(exc, ModelLoadError) else ModelLoadError(str(exc))
            self._state = SessionState.FAILED
            self._pending = None
            if not self._retry_on_failure:
                self._error = error
            logger.warning("Saliency session creation failed: %s", error.detail)
            if error is exc:
                raise
            raise error from exc

        self._model = model
        self._state = SessionState.READY
        logger.info("Saliency session ready in %.2fs", time.perf_counter() - started)
        return model

    def reset(self) -> None:
        """Drop the cached session or sticky failure."""
        self._model = None
        self._pending = None
        self._error = None
        self._state = SessionState.UNINITIALIZED


def runtime_ready(settings: Optional[config.Settings] = None) -> bool:
    """True when the backend for the configured model can run here."""
    settings = config.resolve_settings(settings)
    if not is_onnx_model(settings.u2net_model_path):
        return True
    available = set(ort.get_available_providers())
    return any(p in available for p in settings.execution_providers)


async def wait_for_runtime(
    is_ready: Callable[[], bool],
    timeout: float = 15.0,
    interval: float = 0.1,
) -> None:
    """
    Poll `is_ready` until it returns True.

    Raises:
        RuntimeUnavailableError: when the runtime is still unavailable after `timeout` seconds.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not is_ready():
        if loop.time() >= deadline:
            raise RuntimeUnavailableError(f"inference runtime not ready after {timeout:g}s")
        await asyncio.sleep(interval)


@lru_cache()
def get_session_provider() -> SessionProvider:
    """Return the process-wide provider built from the cached settings."""
    settings = config.get_settings()
    return SessionProvider(
        loader=lambda: load_saliency_model(settings),
        retry_on_failure=settings.retry_failed_model_load,
    )
