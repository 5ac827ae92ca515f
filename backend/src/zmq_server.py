import json
import logging
import time
import uuid

import sentry_sdk
import zmq

from config import Settings
from histogram.engine import HistogramEngine
from histogram.worker import HistogramWorker
from security import MAX_MESSAGE_BYTES, decode_pixels, validate_stride

logger = logging.getLogger(__name__)

# base64 inflates by 4/3; leave room for the JSON envelope
_ENVELOPE_BYTES = 4096


def _max_message_size(max_frame_bytes: int) -> int:
    """Socket ceiling: at least twice the encoded frame cap."""
    return max(MAX_MESSAGE_BYTES, max_frame_bytes * 4 // 3 * 2 + _ENVELOPE_BYTES)


class ZMQServer:
    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()
        self.context = zmq.Context()
        self.socket = self.context.socket(zmq.REP)
        self.socket.setsockopt(
            zmq.MAXMSGSIZE, _max_message_size(self.settings.max_frame_bytes)
        )
        self.port = self.socket.bind_to_random_port("tcp://127.0.0.1")
        # Dedicated ping socket, never blocked by a long histogram pass
        self.ping_socket = self.context.socket(zmq.REP)
        self.ping_socket.setsockopt(zmq.MAXMSGSIZE, 4096)
        self.ping_port = self.ping_socket.bind_to_random_port("tcp://127.0.0.1")
        # Auth token: other local processes cannot drive the sidecar without it
        self.token = str(uuid.uuid4())
        self.start_time = time.time()
        self.running = False
        self.last_frame_ms = 0.0
        self.engine = self._make_engine()
        self.worker = HistogramWorker(self.engine)
        self.worker.start()

    def _make_engine(self) -> HistogramEngine:
        return HistogramEngine(self.settings.resolution, self.settings.stride)

    def reset_state(self):
        """Fresh engine and worker without closing sockets/context.

        Used by session-scoped test fixtures to reset between tests
        while keeping the server running.
        """
        self.worker.stop()
        self.engine = self._make_engine()
        self.worker = HistogramWorker(self.engine)
        self.worker.start()
        self.last_frame_ms = 0.0

    def _validate_token(self, message: dict) -> str | None:
        """Validate auth token. Returns error message or None if valid."""
        if message.get("_token") != self.token:
            return "invalid or missing auth token"
        return None

    def _make_ping_response(self, msg_id: str | None) -> dict:
        return {
            "id": msg_id,
            "status": "alive",
            "uptime_s": round(time.time() - self.start_time, 1),
            "last_frame_ms": self.last_frame_ms,
        }

    def handle_message(self, message: dict) -> dict:
        cmd = message.get("cmd")
        msg_id = message.get("id")

        token_err = self._validate_token(message)
        if token_err:
            return {"id": msg_id, "ok": False, "error": token_err}

        if cmd == "ping":
            return self._make_ping_response(msg_id)
        elif cmd == "shutdown":
            self.running = False
            return {"id": msg_id, "ok": True}
        elif cmd == "histogram":
            return self._handle_histogram(message, msg_id)
        elif cmd == "submit":
            return self._handle_submit(message, msg_id)
        elif cmd == "latest":
            return self._handle_latest(msg_id)
        elif cmd == "set_stride":
            return self._handle_set_stride(message, msg_id)
        elif cmd == "frame_count":
            return {
                "id": msg_id,
                "ok": True,
                "frame_count": self.engine.get_frame_count_and_reset(),
            }
        elif cmd == "status":
            return self._handle_status(msg_id)
        else:
            return {"id": msg_id, "ok": False, "error": f"unknown: {cmd}"}

    def _decode(self, message: dict, msg_id: str | None) -> tuple[bytes, dict | None]:
        if "pixels" not in message:
            return b"", {"id": msg_id, "ok": False, "error": "missing pixels"}
        pixels, errors = decode_pixels(
            message["pixels"], self.settings.max_frame_bytes
        )
        if errors:
            return b"", {"id": msg_id, "ok": False, "error": "; ".join(errors)}
        return pixels, None

    def _handle_histogram(self, message: dict, msg_id: str | None) -> dict:
        pixels, err = self._decode(message, msg_id)
        if err:
            return err
        try:
            t0 = time.time()
            result = self.engine.compute_histogram(pixels)
            if result is None:
                return {"id": msg_id, "ok": True, "skipped": True}
            self.last_frame_ms = round((time.time() - t0) * 1000, 2)
            return {"id": msg_id, "ok": True, **result.to_dict()}
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.error("Histogram handler error: %s", type(e).__name__)
            return {"id": msg_id, "ok": False, "error": "Internal processing error"}

    def _handle_submit(self, message: dict, msg_id: str | None) -> dict:
        pixels, err = self._decode(message, msg_id)
        if err:
            return err
        dropped = self.worker.submit(pixels)
        return {"id": msg_id, "ok": True, "dropped": dropped}

    def _handle_latest(self, msg_id: str | None) -> dict:
        latest = self.worker.latest
        return {
            "id": msg_id,
            "ok": True,
            "result": latest.to_dict() if latest is not None else None,
            "worker": self.worker.status(),
        }

    def _handle_set_stride(self, message: dict, msg_id: str | None) -> dict:
        stride = message.get("stride")
        errors = validate_stride(stride)
        if errors:
            return {"id": msg_id, "ok": False, "error": "; ".join(errors)}
        self.engine.stride = stride
        return {"id": msg_id, "ok": True, "stride": self.engine.stride}

    def _handle_status(self, msg_id: str | None) -> dict:
        return {
            "id": msg_id,
            "ok": True,
            "state": self.engine.state.value,
            "resolution": self.engine.resolution,
            "stride": self.engine.stride,
            "frame_count": self.engine.frame_count,
        }

    def run(self):
        self.running = True
        poller = zmq.Poller()
        poller.register(self.socket, zmq.POLLIN)
        poller.register(self.ping_socket, zmq.POLLIN)
        while self.running:
            events = dict(poller.poll(timeout=500))

            # Handle ping socket first (lightweight, never blocked)
            if self.ping_socket in events:
                try:
                    message = json.loads(self.ping_socket.recv())
                    msg_id = message.get("id")
                    token_err = self._validate_token(message)
                    if token_err:
                        self.ping_socket.send_json(
                            {"id": msg_id, "ok": False, "error": token_err}
                        )
                    else:
                        self.ping_socket.send_json(self._make_ping_response(msg_id))
                except json.JSONDecodeError:
                    self.ping_socket.send_json(
                        {"ok": False, "error": "Invalid message format"}
                    )
                except zmq.ZMQError:
                    logger.error("ZMQ error on ping socket")
                    break

            if self.socket in events:
                try:
                    message = json.loads(self.socket.recv())
                except json.JSONDecodeError:
                    # MUST send reply before next recv (REP protocol)
                    self.socket.send_json(
                        {"ok": False, "error": "Invalid message format"}
                    )
                    continue
                except zmq.ZMQError:
                    logger.error("ZMQ error on main socket")
                    break

                if not isinstance(message, dict):
                    self.socket.send_json(
                        {"ok": False, "error": "Invalid message format"}
                    )
                    continue

                try:
                    response = self.handle_message(message)
                except Exception as e:
                    sentry_sdk.capture_exception(e)
                    logger.error("Unhandled handler error: %s", type(e).__name__)
                    response = {"ok": False, "error": "Internal processing error"}

                self.socket.send_json(response)
        self.close()

    def close(self):
        self.worker.stop()
        self.ping_socket.close()
        self.socket.close()
        self.context.term()
