"""Background histogram worker — keeps histogram passes off the render thread."""

import logging
import threading
from enum import Enum

import sentry_sdk

from histogram.engine import HistogramEngine, HistogramResult

logger = logging.getLogger(__name__)


class WorkerStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class HistogramWorker:
    """Drives a HistogramEngine from a daemon thread.

    Frames go through a single-slot mailbox: a frame submitted while another
    is still pending replaces it, so a slow pass never builds a backlog.
    Replaced frames are counted as dropped.
    """

    def __init__(self, engine: HistogramEngine, poll_interval: float = 0.5):
        self._engine = engine
        self._poll_interval = poll_interval
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._pending = None
        self._latest: HistogramResult | None = None
        self._status = WorkerStatus.IDLE
        self.submitted = 0
        self.processed = 0
        self.skipped = 0
        self.dropped = 0
        self.errors = 0

    @property
    def engine(self) -> HistogramEngine:
        return self._engine

    @property
    def latest(self) -> HistogramResult | None:
        with self._lock:
            return self._latest

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start the worker thread.

        Raises:
            RuntimeError: If the worker is already running.
        """
        if self.is_running:
            raise RuntimeError("Histogram worker already running")
        self._stop_event.clear()
        thread = threading.Thread(
            target=self._run, name="histogram-worker", daemon=True
        )
        self._thread = thread
        self._status = WorkerStatus.RUNNING
        thread.start()

    def submit(self, pixels) -> bool:
        """Queue a frame. Returns True if a pending frame was replaced."""
        with self._lock:
            dropped = self._pending is not None
            self._pending = pixels
            self.submitted += 1
            if dropped:
                self.dropped += 1
        self._wake.set()
        return dropped

    def stop(self, timeout: float = 2.0):
        """Stop the thread. A frame still pending is discarded.

        If a pass outlives `timeout` the status stays RUNNING; call stop()
        again once it finishes.
        """
        self._stop_event.set()
        self._wake.set()
        self._engine.stop()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        with self._lock:
            self._pending = None
        if self.is_running:
            logger.warning("Histogram worker did not stop within %.1fs", timeout)
            return
        self._status = WorkerStatus.STOPPED

    def status(self) -> dict:
        """Return serializable status dict."""
        with self._lock:
            return {
                "status": self._status.value,
                "running": self.is_running,
                "submitted": self.submitted,
                "processed": self.processed,
                "skipped": self.skipped,
                "dropped": self.dropped,
                "errors": self.errors,
            }

    def _take(self):
        with self._lock:
            pixels, self._pending = self._pending, None
            self._wake.clear()
        return pixels

    def _run(self):
        while not self._stop_event.is_set():
            if not self._wake.wait(timeout=self._poll_interval):
                continue
            if self._stop_event.is_set():
                break
            pixels = self._take()
            if pixels is None:
                continue
            try:
                result = self._engine.compute_histogram(pixels)
            except Exception as e:
                sentry_sdk.capture_exception(e)
                logger.exception("Histogram pass failed")
                with self._lock:
                    self.errors += 1
                continue
            with self._lock:
                if result is None:
                    self.skipped += 1
                else:
                    self.processed += 1
                    self._latest = result
