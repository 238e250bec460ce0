"""Optional observation of outbound HTTP calls.

Components receive a ``requests.Session`` from :func:`build_http_session`; when
fetch debugging is on the session carries a response hook that appends one
line per call to a log file.  Nothing else depends on whether it is installed.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Protocol

import requests

from .storage import isoformat, utcnow

logger = logging.getLogger(__name__)

REDACTED_HEADERS = frozenset({"x-access-key", "authorization", "cookie"})
MAX_LOGGED_BODY = 2048


class HttpObserver(Protocol):
    def on_response(self, response: requests.Response) -> None:
        ...


def _truncate(text: str) -> str:
    if len(text) <= MAX_LOGGED_BODY:
        return text
    return text[:MAX_LOGGED_BODY] + f"...[{len(text) - MAX_LOGGED_BODY} more]"


class FileHttpObserver:
    """Append a JSON line per request/response pair to ``path``."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def on_response(self, response: requests.Response) -> None:
        request = response.request
        headers = {
            key: ("<redacted>" if key.lower() in REDACTED_HEADERS else value)
            for key, value in (request.headers or {}).items()
        }
        body = request.body
        if isinstance(body, bytes):
            body = body.decode("utf-8", errors="replace")
        entry = {
            "ts": isoformat(utcnow()),
            "method": request.method,
            "url": request.url,
            "headers": headers,
            "body": _truncate(body) if body else None,
            "status": response.status_code,
            "elapsedMs": int(response.elapsed.total_seconds() * 1000),
            "response": _truncate(response.text or ""),
        }
        line = json.dumps(entry, sort_keys=True)
        try:
            with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
        except OSError as exc:
            logger.warning("Unable to write fetch log %s: %s", self.path, exc)


def build_http_session(observer: HttpObserver | None = None) -> requests.Session:
    session = requests.Session()
    if observer is not None:

        def _hook(response: requests.Response, *args, **kwargs) -> None:
            observer.on_response(response)

        session.hooks["response"].append(_hook)
    return session
