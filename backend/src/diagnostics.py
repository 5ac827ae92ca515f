"""Diagnostics — faulthandler, structured logging, crash dumps.

Layers:
1. faulthandler: C-level crash tracebacks (numpy segfaults, SIGABRT)
2. sys.excepthook: unhandled Python exceptions → JSON crash dumps
3. Structured JSON logging with RotatingFileHandler
"""

import datetime
import faulthandler
import json
import logging
import logging.handlers
import os
import sys
import traceback
from pathlib import Path

from security import strip_pii

logger = logging.getLogger(__name__)

APP_DIR = "~/.chromascope"
LOG_NAME = "chromascope.log"
FAULT_LOG_NAME = "chromascope_fault.log"

MAX_CRASH_REPORTS = 5
MAX_LOG_AGE_DAYS = 7
MAX_LOG_BYTES = 10_000_000
LOG_BACKUPS = 7


def _app_dir() -> str:
    return os.path.expanduser(APP_DIR)


def _validate_log_dir(env_dir: str) -> str:
    """Keep the log directory under ~/.chromascope. Returns safe path."""
    default = os.path.join(_app_dir(), "logs")
    if not env_dir:
        return default
    resolved = os.path.realpath(env_dir)
    allowed = os.path.realpath(_app_dir())
    if resolved != allowed and not resolved.startswith(allowed + os.sep):
        logger.warning("APP_LOG_DIR outside allowed prefix, using default")
        return default
    return resolved


class JSONFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.datetime.fromtimestamp(
                record.created, tz=datetime.timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry)


def _prune(directory: str, pattern: str, keep: int | None = None, max_age_days: int | None = None):
    """Delete files matching `pattern`: beyond the newest `keep`, or older than `max_age_days`."""
    try:
        files = sorted(
            Path(directory).glob(pattern),
            key=lambda f: f.stat().st_mtime,
            reverse=True,
        )
        doomed = files[keep:] if keep is not None else []
        if max_age_days is not None:
            cutoff = (
                datetime.datetime.now() - datetime.timedelta(days=max_age_days)
            ).timestamp()
            doomed += [f for f in files if f.stat().st_mtime < cutoff and f not in doomed]
        for f in doomed:
            f.unlink(missing_ok=True)
    except OSError:
        logger.debug("Could not prune %s/%s", directory, pattern)


def setup_structured_logging(log_dir: str | None = None, log_level: str | None = None) -> str:
    """Attach a rotating JSON log handler to the root logger.

    Args:
        log_dir: Override log directory (validated against the ~/.chromascope prefix).
        log_level: Level name; defaults to APP_LOG_LEVEL or INFO.
    """
    resolved_dir = _validate_log_dir(log_dir or os.environ.get("APP_LOG_DIR", ""))
    os.makedirs(resolved_dir, mode=0o700, exist_ok=True)

    level_name = (log_level or os.environ.get("APP_LOG_LEVEL", "INFO")).upper()

    handler = logging.handlers.RotatingFileHandler(
        os.path.join(resolved_dir, LOG_NAME),
        maxBytes=MAX_LOG_BYTES,
        backupCount=LOG_BACKUPS,
    )
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.addHandler(handler)

    _prune(resolved_dir, f"{LOG_NAME}*", max_age_days=MAX_LOG_AGE_DAYS)
    return resolved_dir


def setup_faulthandler(log_dir: str):
    """Enable faulthandler on its own file.

    RotatingFileHandler would invalidate the descriptor on rotation, so
    the fault log never shares the main log file.
    """
    fault_path = os.path.join(log_dir, FAULT_LOG_NAME)
    try:
        fault_file = open(fault_path, "a", buffering=1)  # noqa: SIM115
        os.chmod(fault_path, 0o600)
        faulthandler.enable(file=fault_file, all_threads=True)
    except OSError as e:
        print(f"WARNING: Could not enable faulthandler: {e}", file=sys.stderr)


def write_crash_report(exc_type, exc_value, exc_tb, crash_dir: str | None = None) -> str:
    """Write a PII-stripped JSON crash dump. Returns its path."""
    crash_dir = crash_dir or os.path.join(_app_dir(), "crash_reports")
    os.makedirs(crash_dir, mode=0o700, exist_ok=True)

    timestamp = datetime.datetime.now(tz=datetime.timezone.utc).strftime(
        "%Y%m%dT%H%M%S%fZ"
    )
    crash_path = os.path.join(crash_dir, f"crash_{timestamp}.json")
    crash_data = {
        "timestamp": timestamp,
        "exception_type": exc_type.__name__ if exc_type else "Unknown",
        "exception_message": str(exc_value),
        "traceback": traceback.format_exception(exc_type, exc_value, exc_tb),
        "python_version": sys.version,
        "platform": sys.platform,
    }
    crash_data = strip_pii({"extra": crash_data}, {}).get("extra", crash_data)

    old_umask = os.umask(0o077)
    try:
        with open(crash_path, "w") as f:
            json.dump(crash_data, f, indent=2)
    finally:
        os.umask(old_umask)

    _prune(crash_dir, "crash_*.json", keep=MAX_CRASH_REPORTS)
    return crash_path


def setup_excepthook(crash_dir: str | None = None):
    """Install sys.excepthook that writes crash dumps, then defers to the default hook."""

    def _crash_excepthook(exc_type, exc_value, exc_tb):
        try:
            write_crash_report(exc_type, exc_value, exc_tb, crash_dir)
        except Exception:
            # Never recurse from inside the crash handler
            print("WARNING: Could not write crash report", file=sys.stderr)
        sys.__excepthook__(exc_type, exc_value, exc_tb)

    sys.excepthook = _crash_excepthook


def init_diagnostics(settings=None):
    """Initialize all diagnostic layers. Call from main.py."""
    log_dir = setup_structured_logging(
        settings.log_dir if settings else None,
        settings.log_level if settings else None,
    )
    setup_faulthandler(log_dir)
    setup_excepthook()
    logger.info("Diagnostics initialized: logging=%s, faulthandler=enabled", log_dir)
