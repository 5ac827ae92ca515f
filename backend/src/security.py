"""Security validation gates for the Chromascope sidecar."""

import base64
import binascii
import json
import numbers
import os
import re

# SEC-1: Decoded pixel payload cap (64 MB, ~4K BGRA frame with headroom)
MAX_FRAME_BYTES = 64 * 1024 * 1024

# SEC-2: Sampling stride cap (one pixel in a million is already meaningless)
MAX_STRIDE = 1_000_000

# SEC-3: Transport ceiling for one command message. Must stay well above the
# encoded SEC-1 cap: oversized frames are answered by validate_frame_payload,
# only messages past this ceiling are dropped by the socket.
MAX_MESSAGE_BYTES = 512 * 1024 * 1024

ALLOWED_RESOLUTIONS = (256, 128, 64, 32)


def validate_frame_payload(size: int, max_bytes: int = MAX_FRAME_BYTES) -> list[str]:
    """Validate a decoded pixel payload size. Returns list of errors (empty = valid)."""
    errors: list[str] = []
    if size > max_bytes:
        size_mb = size / (1024 * 1024)
        errors.append(
            f"Frame too large: {size_mb:.1f} MB (max {max_bytes // (1024 * 1024)} MB)"
        )
    return errors


def validate_stride(value) -> list[str]:
    """Validate a sampling stride (SEC-2). Returns list of errors."""
    errors: list[str] = []
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        errors.append(f"Stride must be an integer, got {type(value).__name__}")
        return errors
    if value < 1:
        errors.append(f"Stride must be >= 1, got {value}")
    elif value > MAX_STRIDE:
        errors.append(f"Stride {value} exceeds maximum {MAX_STRIDE} (SEC-2)")
    return errors


def validate_resolution(value) -> list[str]:
    """Validate a histogram bucket count. Returns list of errors."""
    errors: list[str] = []
    if value not in ALLOWED_RESOLUTIONS:
        errors.append(
            f"Resolution {value!r} not allowed. Allowed: {list(ALLOWED_RESOLUTIONS)}"
        )
    return errors


def decode_pixels(payload: str, max_bytes: int = MAX_FRAME_BYTES) -> tuple[bytes, list[str]]:
    """Decode a base64 pixel payload. Returns (pixels, errors).

    The encoded length is checked before decoding so an oversized message
    is rejected without allocating the decoded buffer.
    """
    if not isinstance(payload, str):
        return b"", ["pixels must be a base64 string"]
    errors = validate_frame_payload(len(payload) * 3 // 4, max_bytes)
    if errors:
        return b"", errors
    try:
        pixels = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        return b"", ["pixels is not valid base64"]
    return pixels, []


# --- PII stripping for Sentry and crash dumps ---

_HOME = os.path.expanduser("~")
_USERNAME = os.path.basename(_HOME)
_PATH_PATTERN = re.compile(r"/Users/[^/\s]+|/home/[^/\s]+|C:\\Users\\[^\\\s]+")
_SENSITIVE_KEYS = {"_token", "token", "auth", "key", "secret", "password", "dsn"}


def _scrub_dict(d: dict):
    """Redact values for keys that look sensitive."""
    for key in list(d.keys()):
        if any(s in key.lower() for s in _SENSITIVE_KEYS):
            d[key] = "<REDACTED>"


def strip_pii(event: dict, hint: dict) -> dict:
    """Sentry before_send hook. Strips home paths, usernames and auth tokens.

    Also used on crash dumps.
    """
    event_str = json.dumps(event)
    event_str = event_str.replace(_HOME, "<HOME>")
    if _USERNAME:
        event_str = event_str.replace(_USERNAME, "<USER>")
    event_str = _PATH_PATTERN.sub("<REDACTED_PATH>", event_str)
    event = json.loads(event_str)

    _scrub_dict(event.get("extra", {}))
    _scrub_dict(event.get("tags", {}))
    for ctx in event.get("contexts", {}).values():
        if isinstance(ctx, dict):
            _scrub_dict(ctx)
    return event
