"""
Configuration loader for the U2Net background-removal service.

Environment variables are centralized here to keep the rest of the code
focused on business logic and to make operational tuning clear.
"""

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Model + preprocessing
    u2net_model_path: Path = Field(Path("models/u2netp.onnx"), env="U2NET_MODEL_PATH")
    u2net_input_size: int = Field(320, env="U2NET_INPUT_SIZE")
    max_working_side: int = Field(1280, env="MAX_WORKING_SIDE")
    execution_providers: List[str] = Field(
        default_factory=lambda: ["CPUExecutionProvider"], env="EXECUTION_PROVIDERS"
    )

    # Runtime / session
    runtime_wait_seconds: float = Field(15.0, env="RUNTIME_WAIT_SECONDS")
    runtime_poll_interval: float = Field(0.1, env="RUNTIME_POLL_INTERVAL")
    retry_failed_model_load: bool = Field(True, env="RETRY_FAILED_MODEL_LOAD")

    # Mask refinement
    mask_threshold: int = Field(128, env="MASK_THRESHOLD")
    feather_radius: int = Field(2, env="FEATHER_RADIUS")
    region_method: str = Field("labels", env="REGION_METHOD")

    # Seed overlay
    marker_radius: int = Field(8, env="MARKER_RADIUS")

    # API
    request_timeout_seconds: int = Field(30, env="REQUEST_TIMEOUT_SECONDS")
    max_sessions: int = Field(64, env="MAX_SESSIONS")
    log_level: str = Field("INFO", env="LOG_LEVEL")

    # Debugging
    debug: bool = Field(False, env="DEBUG")
    debug_output_dir: Path = Field(Path("/tmp/u2net_debug"), env="DEBUG_OUTPUT_DIR")

    class Config:
        env_file = ".env"
        case_sensitive = False

    @validator("region_method")
    def validate_region_method(cls, v: str) -> str:  # noqa: B902
        if v not in {"labels", "queue"}:
            raise ValueError("REGION_METHOD must be one of labels|queue")
        return v

    @validator("mask_threshold")
    def validate_mask_threshold(cls, v: int) -> int:  # noqa: B902
        if not 0 <= v <= 255:
            raise ValueError("MASK_THRESHOLD must be within 0..255")
        return v

    @validator("u2net_input_size", "max_working_side", "max_sessions")
    def validate_positive(cls, v: int) -> int:  # noqa: B902
        if v <= 0:
            raise ValueError("sizes must be positive")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()


def resolve_settings(settings: Optional[Settings] = None) -> Settings:
    """Use explicitly injected settings when given, otherwise the cached ones."""
    return settings or get_settings()
