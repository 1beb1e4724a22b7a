"""
FastAPI layer exposing U2Net background removal.

Endpoints:
 - GET /health
 - POST /remove-bg
 - /sessions/...: interactive editing sessions with seed picking
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
import logging
from typing import Optional
import uuid

from fastapi import Depends, FastAPI, HTTPException, Response
from pydantic import BaseModel, Field, HttpUrl

from . import config
from .errors import (
    BackgroundRemovalError,
    ImageLoadError,
    ModelLoadError,
    RuntimeUnavailableError,
)
from .model_loader import SessionProvider, get_session_provider
from .pipeline import RemovalResult, remove_background
from .preprocessing import load_image, media_type_of, read_image_bytes
from .seed_capture import PickState, SeedPicker, render_marker

settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(title="U2Net Background Removal Service", version="0.1.0")


class RemoveBgRequest(BaseModel):
    imageUrl: HttpUrl
    seedX: Optional[float] = None
    seedY: Optional[float] = None
    displayWidth: Optional[float] = Field(None, gt=0)
    displayHeight: Optional[float] = Field(None, gt=0)


class SessionCreateRequest(BaseModel):
    imageUrl: HttpUrl


class PointerRequest(BaseModel):
    x: float
    y: float
    displayWidth: float = Field(..., gt=0)
    displayHeight: float = Field(..., gt=0)


class SessionResponse(BaseModel):
    sessionId: str
    state: str
    width: int
    height: int
    seedX: Optional[float] = None
    seedY: Optional[float] = None


@dataclass
class EditingSession:
    image_bytes: bytes
    width: int
    height: int
    media_type: str = "image/png"
    picker: SeedPicker = field(default_factory=SeedPicker)


# Least recently used first; capped by settings.max_sessions.
_SESSIONS: "OrderedDict[str, EditingSession]" = OrderedDict()


def _status_for(exc: BackgroundRemovalError) -> int:
    if isinstance(exc, ImageLoadError):
        return 400
    if isinstance(exc, (RuntimeUnavailableError, ModelLoadError)):
        return 503
    # InferenceError, EncodeError
    return 500


def _to_http_error(exc: BackgroundRemovalError) -> HTTPException:
    status = _status_for(exc)
    if status >= 500:
        logger.exception("Background removal failed: %s", exc.detail)
    else:
        logger.warning("Background removal rejected: %s", exc.detail)
    return HTTPException(status_code=status, detail=exc.user_message)


def _unexpected_error(exc: Exception) -> HTTPException:
    logger.exception("Background removal failed unexpectedly: %s", exc)
    return HTTPException(status_code=500, detail=BackgroundRemovalError("unexpected error").user_message)


def _png_response(result: RemovalResult) -> Response:
    return Response(
        content=result.png_bytes,
        media_type="image/png",
        headers={"X-Removal-Mode": result.mode},
    )


def _get_session(session_id: str) -> EditingSession:
    session = _SESSIONS.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Unknown session")
    _SESSIONS.move_to_end(session_id)
    return session


def _store_session(session_id: str, session: EditingSession, limit: int) -> None:
    _SESSIONS[session_id] = session
    while len(_SESSIONS) > limit:
        evicted, _ = _SESSIONS.popitem(last=False)
        logger.info("Evicted editing session %s (limit %d)", evicted, limit)


def _describe(session_id: str, session: EditingSession) -> SessionResponse:
    pending = session.picker.pending
    return SessionResponse(
        sessionId=session_id,
        state=session.picker.state.value,
        width=session.width,
        height=session.height,
        seedX=pending.point[0] if pending else None,
        seedY=pending.point[1] if pending else None,
    )


def _fetch_session_image(url: str, settings: config.Settings) -> EditingSession:
    try:
        image_bytes = read_image_bytes(url, settings.request_timeout_seconds)
        image = load_image(image_bytes)
    except ImageLoadError as exc:
        raise _to_http_error(exc) from exc
    width, height = image.size
    return EditingSession(
        image_bytes=image_bytes,
        width=width,
        height=height,
        media_type=media_type_of(image_bytes),
    )


@app.get("/health")
def health(provider: SessionProvider = Depends(get_session_provider)):
    return {"status": "ok", "model": provider.state.value}


@app.post("/remove-bg")
async def remove_bg(
    body: RemoveBgRequest,
    provider: SessionProvider = Depends(get_session_provider),
    settings: config.Settings = Depends(config.get_settings),
):
    seed = None
    if body.seedX is not None and body.seedY is not None:
        seed = (body.seedX, body.seedY)
    display_size = None
    if body.displayWidth is not None and body.displayHeight is not None:
        display_size = (body.displayWidth, body.displayHeight)

    try:
        result = await remove_background(
            str(body.imageUrl),
            seed=seed,
            display_size=display_size,
            provider=provider,
            settings=settings,
        )
    except BackgroundRemovalError as exc:
        raise _to_http_error(exc) from exc
    except Exception as exc:  # noqa: BLE001
        raise _unexpected_error(exc) from exc
    return _png_response(result)


@app.post("/sessions", response_model=SessionResponse)
def create_session(body: SessionCreateRequest, settings: config.Settings = Depends(config.get_settings)):
    session = _fetch_session_image(str(body.imageUrl), settings)
    session_id = uuid.uuid4().hex
    _store_session(session_id, session, settings.max_sessions)
    logger.info("Created editing session %s (%dx%d)", session_id, session.width, session.height)
    return _describe(session_id, session)


@app.put("/sessions/{session_id}/image", response_model=SessionResponse)
def replace_session_image(
    session_id: str,
    body: SessionCreateRequest,
    settings: config.Settings = Depends(config.get_settings),
):
    session = _get_session(session_id)
    replacement = _fetch_session_image(str(body.imageUrl), settings)
    session.image_bytes = replacement.image_bytes
    session.width, session.height = replacement.width, replacement.height
    session.media_type = replacement.media_type
    session.picker.reset()
    return _describe(session_id, session)


@app.post("/sessions/{session_id}/pick", response_model=SessionResponse)
def start_picking(session_id: str):
    session = _get_session(session_id)
    session.picker.start_picking()
    return _describe(session_id, session)


@app.post("/sessions/{session_id}/pointer", response_model=SessionResponse)
def pointer_down(session_id: str, body: PointerRequest):
    session = _get_session(session_id)
    try:
        accepted = session.picker.pointer_down(body.x, body.y, (body.displayWidth, body.displayHeight))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not accepted:
        raise HTTPException(status_code=409, detail="Pick mode is not active")
    return _describe(session_id, session)


@app.post("/sessions/{session_id}/clear", response_model=SessionResponse)
def clear_seed(session_id: str):
    session = _get_session(session_id)
    session.picker.clear()
    return _describe(session_id, session)


@app.post("/sessions/{session_id}/cancel", response_model=SessionResponse)
def cancel_picking(session_id: str):
    session = _get_session(session_id)
    session.picker.cancel()
    return _describe(session_id, session)


@app.get("/sessions/{session_id}/overlay.png")
def overlay(
    session_id: str,
    displayWidth: int,
    displayHeight: int,
    settings: config.Settings = Depends(config.get_settings),
):
    session = _get_session(session_id)
    if displayWidth <= 0 or displayHeight <= 0:
        raise HTTPException(status_code=400, detail="Display size must be positive")
    pending = session.picker.pending
    point = None
    if pending is not None:
        # Re-project when the display was resized since the tap.
        point = (
            pending.point[0] / pending.display_size[0] * displayWidth,
            pending.point[1] / pending.display_size[1] * displayHeight,
        )
    png = render_marker((displayWidth, displayHeight), point, radius=settings.marker_radius)
    return Response(content=png, media_type="image/png")


@app.post("/sessions/{session_id}/apply")
async def apply_session(
    session_id: str,
    provider: SessionProvider = Depends(get_session_provider),
    settings: config.Settings = Depends(config.get_settings),
):
    session = _get_session(session_id)
    pending = session.picker.pending if session.picker.state == PickState.SEEDED else None
    try:
        result = await remove_background(
            session.image_bytes,
            seed=pending.point if pending else None,
            display_size=pending.display_size if pending else None,
            provider=provider,
            settings=settings,
        )
    except BackgroundRemovalError as exc:
        raise _to_http_error(exc) from exc
    except Exception as exc:  # noqa: BLE001
        raise _unexpected_error(exc) from exc

    session.picker.apply()
    session.image_bytes = result.png_bytes
    session.width, session.height = result.width, result.height
    session.media_type = "image/png"
    return _png_response(result)


@app.get("/sessions/{session_id}/image.png")
def session_image(session_id: str):
    session = _get_session(session_id)
    return Response(content=session.image_bytes, media_type=session.media_type)


@app.delete("/sessions/{session_id}")
def delete_session(session_id: str):
    _get_session(session_id)
    del _SESSIONS[session_id]
    return {"deleted": session_id}
