"""Sidecar settings read from the environment."""

import os
from dataclasses import dataclass

from security import MAX_FRAME_BYTES, validate_resolution, validate_stride

DEFAULT_RESOLUTION = 256
DEFAULT_STRIDE = 3


@dataclass(frozen=True)
class Settings:
    resolution: int = DEFAULT_RESOLUTION
    stride: int = DEFAULT_STRIDE
    max_frame_bytes: int = MAX_FRAME_BYTES
    log_dir: str = ""
    log_level: str = "INFO"
    sentry_dsn: str = ""
    sentry_env: str = "development"


def _int_var(environ, name: str, default: int) -> int:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def load_settings(environ=None) -> Settings:
    """Build Settings from environment variables.

    Raises:
        ValueError: If a variable is set to an invalid value.
    """
    env = os.environ if environ is None else environ

    resolution = _int_var(env, "CHROMASCOPE_RESOLUTION", DEFAULT_RESOLUTION)
    errors = validate_resolution(resolution)
    if errors:
        raise ValueError(f"CHROMASCOPE_RESOLUTION: {'; '.join(errors)}")

    stride = _int_var(env, "CHROMASCOPE_STRIDE", DEFAULT_STRIDE)
    errors = validate_stride(stride)
    if errors:
        raise ValueError(f"CHROMASCOPE_STRIDE: {'; '.join(errors)}")

    max_frame_bytes = _int_var(env, "CHROMASCOPE_MAX_FRAME_BYTES", MAX_FRAME_BYTES)
    if max_frame_bytes <= 0:
        raise ValueError("CHROMASCOPE_MAX_FRAME_BYTES must be positive")

    return Settings(
        resolution=resolution,
        stride=stride,
        max_frame_bytes=max_frame_bytes,
        log_dir=env.get("APP_LOG_DIR", ""),
        log_level=env.get("APP_LOG_LEVEL", "INFO").upper(),
        sentry_dsn=env.get("SENTRY_DSN", ""),
        sentry_env=env.get("SENTRY_ENV", "development"),
    )
