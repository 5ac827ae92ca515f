import os
import platform
import sys
from pathlib import Path

import sentry_sdk

from _version import __version__
from config import load_settings
from diagnostics import init_diagnostics
from security import strip_pii
from zmq_server import ZMQServer

# SEC-3: Resource limits (Linux/macOS only)
MAX_MEMORY_BYTES = 2 * 1024 * 1024 * 1024  # 2 GB

CONSENT_PATH = "~/.chromascope/telemetry_consent"


def _telemetry_consented() -> bool:
    consent = Path(os.path.expanduser(CONSENT_PATH))
    return consent.exists() and consent.read_text().strip() == "yes"


def init_sentry(settings):
    """Consent-gated Sentry init. Without consent the DSN stays empty (no-op client)."""
    dsn = settings.sentry_dsn if _telemetry_consented() else ""
    sentry_sdk.init(
        dsn=dsn,
        release=f"chromascope@{__version__}",
        environment=settings.sentry_env,
        traces_sample_rate=0.1,
        before_send=strip_pii,
        max_breadcrumbs=50,
    )


def _apply_resource_limits():
    """Apply SEC-3 memory limits. Skipped on Windows."""
    if platform.system() == "Windows":
        return
    try:
        import resource

        soft, hard = resource.getrlimit(resource.RLIMIT_AS)
        resource.setrlimit(resource.RLIMIT_AS, (MAX_MEMORY_BYTES, hard))
    except (ImportError, ValueError, OSError):
        print("WARNING: Could not set memory limit (SEC-3)", file=sys.stderr)


def main():
    try:
        settings = load_settings()
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(2)
    init_sentry(settings)
    init_diagnostics(settings)
    _apply_resource_limits()
    server = ZMQServer(settings)
    print(f"ZMQ_PORT={server.port}", flush=True)
    print(f"ZMQ_PING_PORT={server.ping_port}", flush=True)
    print(f"ZMQ_TOKEN={server.token}", flush=True)
    server.run()


if __name__ == "__main__":
    main()
