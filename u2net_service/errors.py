"""Error taxonomy for background removal.

Every failure that should reach the user derives from
`BackgroundRemovalError`, which carries a single human-readable message.
"""

from __future__ import annotations


class BackgroundRemovalError(Exception):
    """Base class for failures surfaced at the remove-background boundary."""

    reason = "processing error"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.reason
        super().__init__(self.detail)

    @property
    def user_message(self) -> str:
        return f"Background removal failed: {self.detail}"


class RuntimeUnavailableError(BackgroundRemovalError):
    reason = "inference runtime not available"


class ImageLoadError(BackgroundRemovalError):
    reason = "could not load image"


class ModelLoadError(BackgroundRemovalError):
    reason = "could not load saliency model"


class EncodeError(BackgroundRemovalError):
    reason = "could not encode output image"


class InferenceError(BackgroundRemovalError):
    reason = "saliency inference failed"
