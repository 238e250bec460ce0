"""Delivery channel for sealed session envelopes.

Two transports carry the ciphertext back from the approval surface: a manual
paste (optionally ``@path`` to read it from a file) and a one-shot HTTP
listener bound to the loopback interface for the lifetime of one request.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from socketserver import ThreadingMixIn
from typing import Any, Optional
from urllib.parse import parse_qs, urlsplit

from .errors import TransportError, UsageError

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/callback"
MAX_BODY_BYTES = 64 * 1024
# Oversized bodies are read and discarded up to this size so the client sees
# the 413 instead of a reset.
DRAIN_LIMIT_BYTES = 1024 * 1024

SUCCESS_PAGE = """<!doctype html>
<html>
  <head><meta charset="utf-8"><title>Wallet linked</title></head>
  <body style="font-family: sans-serif; text-align: center; padding-top: 4em">
    <h1>Session delivered</h1>
    <p>The CLI received your approval. You can close this window.</p>
  </body>
</html>
"""


def read_ciphertext_argument(value: str) -> str:
    """Return a ciphertext from a literal value or an ``@path`` reference."""

    value = (value or "").strip()
    if value.startswith("@"):
        path = Path(value[1:]).expanduser()
        try:
            value = path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise UsageError(f"Failed to read ciphertext from file '{path}': {exc}") from exc
    if not value:
        raise UsageError("Ciphertext is empty")
    return value


@dataclass(frozen=True)
class CallbackPayload:
    ciphertext: str
    request_id: Optional[str] = None


class OneShotResult:
    """Single-assignment slot shared by handler threads and the waiter."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._value: Any = None

    def set(self, value: Any) -> bool:
        """Store ``value`` unless already resolved; return whether it won."""

        with self._lock:
            if self._event.is_set():
                return False
            self._value = value
            self._event.set()
            return True

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    @property
    def resolved(self) -> bool:
        return self._event.is_set()

    @property
    def value(self) -> Any:
        return self._value


def parse_callback_body(body: bytes, content_type: str) -> CallbackPayload:
    """Extract ``ciphertext`` and the optional request id from a POST body."""

    text = body.decode("utf-8")
    if "json" in content_type or text.lstrip().startswith("{"):
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("JSON body must be an object")
        fields = {key: data.get(key) for key in ("ciphertext", "rid", "requestId")}
    else:
        form = parse_qs(text, keep_blank_values=True)
        fields = {key: (form.get(key) or [None])[0] for key in ("ciphertext", "rid", "requestId")}

    ciphertext = fields["ciphertext"]
    if not isinstance(ciphertext, str) or not ciphertext.strip():
        raise KeyError("ciphertext")
    request_id = fields["rid"] or fields["requestId"]
    return CallbackPayload(ciphertext.strip(), str(request_id) if request_id else None)


class _CallbackHTTPServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True

    def __init__(self, address, result: OneShotResult, expected_request_id: str | None, max_body: int):
        super().__init__(address, _CallbackRequestHandler)
        self.result = result
        self.expected_request_id = expected_request_id
        self.max_body = max_body


class _CallbackRequestHandler(BaseHTTPRequestHandler):
    server: _CallbackHTTPServer

    def log_message(self, format, *args):
        logger.debug("callback %s - %s", self.address_string(), format % args)

    def _send(self, status: int, body: str, content_type: str = "application/json") -> None:
        payload = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", f"{content_type}; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        self.send_header("Access-Control-Allow-Origin", "*")
        if self.close_connection:
            self.send_header("Connection", "close")
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(payload)

    def _send_error_json(self, status: int, message: str) -> None:
        self._send(status, json.dumps({"ok": False, "error": message}))

    def _reject_method(self) -> None:
        self.close_connection = True
        self.send_response(405)
        self.send_header("Allow", "POST")
        self.send_header("Content-Length", "0")
        self.send_header("Connection", "close")
        self.end_headers()

    do_GET = do_PUT = do_DELETE = do_PATCH = do_HEAD = do_OPTIONS = _reject_method

    def _drain(self, length: int) -> None:
        remaining = min(length, DRAIN_LIMIT_BYTES)
        while remaining > 0:
            chunk = self.rfile.read(min(remaining, 16 * 1024))
            if not chunk:
                break
            remaining -= len(chunk)

    def do_POST(self):
        if urlsplit(self.path).path != CALLBACK_PATH:
            self.close_connection = True
            self._send_error_json(404, "not found")
            return

        raw_length = self.headers.get("Content-Length")
        if raw_length is None:
            self.close_connection = True
            self._send_error_json(411, "Content-Length required")
            return
        try:
            length = int(raw_length)
        except ValueError:
            self.close_connection = True
            self._send_error_json(400, "invalid Content-Length")
            return
        if length < 0:
            self.close_connection = True
            self._send_error_json(400, "invalid Content-Length")
            return
        if length > self.server.max_body:
            logger.warning("Rejected oversized callback body (%d bytes)", length)
            self.close_connection = True
            self._drain(length)
            self._send_error_json(413, f"payload too large (max {self.server.max_body} bytes)")
            return

        body = self.rfile.read(length)
        try:
            payload = parse_callback_body(body, self.headers.get("Content-Type", ""))
        except KeyError:
            self._send_error_json(400, "missing ciphertext")
            return
        except ValueError:
            self._send_error_json(400, "malformed body")
            return

        expected = self.server.expected_request_id
        if expected and payload.request_id and payload.request_id != expected:
            logger.warning("Callback for unexpected request id %s", payload.request_id)
            self._send_error_json(400, "request id does not match")
            return

        if not self.server.result.set(payload):
            self._send_error_json(409, "callback already received")
            return
        logger.info("Received session callback", extra={"rid": payload.request_id})
        self._send(200, SUCCESS_PAGE, content_type="text/html")


class CallbackServer:
    """Ephemeral loopback listener that resolves with the first valid callback.

    The listener is bound on construction so :attr:`callback_url` can be placed
    in the approval URL before the user is sent to it.  :meth:`wait` closes it
    whether a callback arrived or the timeout elapsed.
    """

    def __init__(
        self,
        timeout: float = 300,
        host: str = "127.0.0.1",
        expected_request_id: str | None = None,
        *,
        max_body: int = MAX_BODY_BYTES,
    ) -> None:
        self.timeout = timeout
        self._result = OneShotResult()
        try:
            self._server = _CallbackHTTPServer((host, 0), self._result, expected_request_id, max_body)
        except OSError as exc:
            raise TransportError(f"Cannot bind callback listener on {host}: {exc}") from exc
        self._closed = False
        self._lock = threading.Lock()
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            kwargs={"poll_interval": 0.1},
            name="polygon-agent-callback",
            daemon=True,
        )
        self._thread.start()
        logger.debug("Callback listener bound on port %d", self.port)

    @property
    def port(self) -> int:
        return self._server.server_address[1]

    @property
    def callback_url(self) -> str:
        return f"http://localhost:{self.port}{CALLBACK_PATH}"

    @property
    def closed(self) -> bool:
        return self._closed

    def wait(self) -> CallbackPayload:
        """Block until a callback arrives or the timeout elapses."""

        try:
            if not self._result.wait(self.timeout):
                raise TransportError(f"timed out waiting for callback ({self.timeout:g}s)")
            return self._result.value
        finally:
            self.close()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._server.shutdown()
        self._server.server_close()
        self._thread.join(timeout=5)
        logger.debug("Callback listener closed")

    def __enter__(self) -> "CallbackServer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
