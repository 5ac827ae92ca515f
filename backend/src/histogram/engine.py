"""Histogram engine — per-channel RGB histogram from a raw BGRA pixel buffer.

Pixels arrive as 4-byte groups in (B, G, R, A) order. Only every Nth group is
read (the sampling stride), each channel value is shifted down to the
configured resolution, and the raw counts are damped by a fixed >> 4 before
subscribers are notified.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Callable, Protocol

import numpy as np
import sentry_sdk

from security import validate_stride

logger = logging.getLogger(__name__)

DEFAULT_STRIDE = 3
BYTES_PER_PIXEL = 4

# Fixed damping applied to every bucket after accumulation (divide by 16)
RESCALE_BITS = 4

HistogramCallback = Callable[[list[int], list[int], list[int]], None]


class HistogramResolution(Enum):
    RES_256 = 256
    RES_128 = 128
    RES_64 = 64
    RES_32 = 32

    @property
    def shift(self) -> int:
        """Bits an 8-bit channel value is shifted right to index a bucket."""
        return (256 // self.value).bit_length() - 1


class EngineState(Enum):
    IDLE = "idle"
    COMPUTING = "computing"


class Channel(IntEnum):
    """Byte offset of each channel inside a BGRA pixel group."""

    BLUE = 0
    GREEN = 1
    RED = 2


class PixelSource(Protocol):
    """Anything that can hand over a BGRA byte buffer (e.g. a render surface)."""

    def get_pixel_bytes(self) -> bytes | None: ...


@dataclass(frozen=True)
class HistogramResult:
    """Immutable snapshot of one completed pass."""

    red: tuple[int, ...]
    green: tuple[int, ...]
    blue: tuple[int, ...]
    sequence: int
    resolution: int
    sampled: int

    def to_dict(self) -> dict:
        return {
            "red": list(self.red),
            "green": list(self.green),
            "blue": list(self.blue),
            "sequence": self.sequence,
            "resolution": self.resolution,
            "sampled": self.sampled,
        }


def resolve_resolution(resolution) -> HistogramResolution:
    """Coerce an enum member or bucket count. Unknown values fall back to 256."""
    if isinstance(resolution, HistogramResolution):
        return resolution
    try:
        return HistogramResolution(resolution)
    except ValueError:
        logger.warning("Unsupported histogram resolution %r, using 256", resolution)
        return HistogramResolution.RES_256


def is_empty(pixels) -> bool:
    if pixels is None:
        return True
    if isinstance(pixels, np.ndarray):
        return pixels.size == 0
    return len(pixels) == 0


def as_byte_array(pixels) -> np.ndarray:
    """Flat uint8 view of a bytes-like object or numpy array."""
    if isinstance(pixels, np.ndarray):
        return np.ascontiguousarray(pixels, dtype=np.uint8).reshape(-1)
    return np.frombuffer(pixels, dtype=np.uint8)


def sampled_offsets(length: int, stride: int) -> range:
    """Byte offsets of the pixel groups read from a buffer of `length` bytes.

    A trailing partial group (fewer than 4 bytes) is never visited.
    """
    whole = (length // BYTES_PER_PIXEL) * BYTES_PER_PIXEL
    return range(0, whole, BYTES_PER_PIXEL * stride)


def sample_groups(data: np.ndarray, stride: int) -> np.ndarray:
    """(N, 4) array of the pixel groups selected by `stride`."""
    whole = (data.size // BYTES_PER_PIXEL) * BYTES_PER_PIXEL
    return data[:whole].reshape(-1, BYTES_PER_PIXEL)[::stride]


def extract_channel(groups: np.ndarray, channel: Channel, shift: int) -> np.ndarray:
    """Bucket index of `channel` for every sampled group."""
    return groups[:, int(channel)] >> shift


def accumulate(
    pixels, shift: int, stride: int, resolution: int
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Raw (un-damped) per-channel counts, returned as (red, green, blue)."""
    groups = sample_groups(as_byte_array(pixels), stride)
    counts = {}
    for channel in Channel:
        indices = extract_channel(groups, channel, shift)
        counts[channel] = np.bincount(indices, minlength=resolution).astype(np.int64)
    return counts[Channel.RED], counts[Channel.GREEN], counts[Channel.BLUE]


def rescale(counts: np.ndarray) -> np.ndarray:
    return counts >> RESCALE_BITS


class HistogramEngine:
    """Computes RGB histograms and notifies subscribers synchronously.

    Each subscriber gets its own copy of the finished buffers, so a consumer
    still reading one pass is never overwritten by the next. Passes on one
    engine are serialized; the frame counter has its own lock so it can be
    read and reset from another thread. Subscribers are called after the
    pass lock is released.
    """

    def __init__(
        self,
        resolution: HistogramResolution | int = HistogramResolution.RES_256,
        stride: int = DEFAULT_STRIDE,
    ) -> None:
        self._resolution = resolve_resolution(resolution)
        self._stride = DEFAULT_STRIDE
        self.stride = stride
        size = self._resolution.value
        self._red = np.zeros(size, dtype=np.int64)
        self._green = np.zeros(size, dtype=np.int64)
        self._blue = np.zeros(size, dtype=np.int64)
        self._state = EngineState.IDLE
        self._frame_count = 0
        self._sequence = 0
        self._callbacks: list[HistogramCallback] = []
        self._compute_lock = threading.Lock()
        self._count_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._active = 0

    @property
    def resolution(self) -> int:
        return self._resolution.value

    @property
    def shift(self) -> int:
        return self._resolution.shift

    @property
    def stride(self) -> int:
        return self._stride

    @stride.setter
    def stride(self, value: int) -> None:
        errors = validate_stride(value)
        if errors:
            raise ValueError("; ".join(errors))
        self._stride = int(value)

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is EngineState.COMPUTING

    @property
    def frame_count(self) -> int:
        with self._count_lock:
            return self._frame_count

    @property
    def counts(self) -> tuple[list[int], list[int], list[int]]:
        """Copies of the current (red, green, blue) buffers."""
        return self._red.tolist(), self._green.tolist(), self._blue.tolist()

    def subscribe(self, callback: HistogramCallback) -> None:
        self._callbacks.append(callback)

    def unsubscribe(self, callback: HistogramCallback) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    def get_frame_count_and_reset(self) -> int:
        with self._count_lock:
            count = self._frame_count
            self._frame_count = 0
        return count

    def stop(self) -> None:
        """Cancellation hook. Passes are not interruptible, so this does nothing."""

    def compute_from_source(self, source: PixelSource | None) -> HistogramResult | None:
        if source is None:
            return None
        return self.compute_histogram(source.get_pixel_bytes())

    def compute_histogram(self, pixels) -> HistogramResult | None:
        """Run one pass over `pixels`. Returns None (and does nothing) for empty input.

        Run this off the render/UI thread; it blocks until subscribers return.
        Subscribers run outside the pass lock, so a callback may start a
        nested pass on this engine.
        """
        if is_empty(pixels):
            return None

        self._enter()
        try:
            with self._compute_lock:
                self._red.fill(0)
                self._green.fill(0)
                self._blue.fill(0)
                with self._count_lock:
                    self._frame_count += 1
                self._sequence += 1

                data = as_byte_array(pixels)
                red, green, blue = accumulate(
                    data, self.shift, self._stride, self.resolution
                )
                self._red[:] = rescale(red)
                self._green[:] = rescale(green)
                self._blue[:] = rescale(blue)

                result = HistogramResult(
                    red=tuple(self._red.tolist()),
                    green=tuple(self._green.tolist()),
                    blue=tuple(self._blue.tolist()),
                    sequence=self._sequence,
                    resolution=self.resolution,
                    sampled=len(sampled_offsets(data.size, self._stride)),
                )
            self._notify(result)
            return result
        finally:
            self._leave()

    def _enter(self) -> None:
        with self._state_lock:
            self._active += 1
            self._state = EngineState.COMPUTING

    def _leave(self) -> None:
        with self._state_lock:
            self._active -= 1
            if self._active == 0:
                self._state = EngineState.IDLE

    def _notify(self, result: HistogramResult) -> None:
        for callback in list(self._callbacks):
            try:
                callback(list(result.red), list(result.green), list(result.blue))
            except Exception as e:
                sentry_sdk.capture_exception(e)
                logger.exception(
                    "Histogram callback %s failed",
                    getattr(callback, "__name__", repr(callback)),
                )
