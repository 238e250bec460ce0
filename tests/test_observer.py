from __future__ import annotations

import json
from datetime import timedelta

import requests

from polygon_agent.observer import MAX_LOGGED_BODY, FileHttpObserver, build_http_session


def make_response(body: str) -> requests.Response:
    request = requests.Request(
        "POST",
        "https://indexer.example.org/rpc",
        headers={"X-Access-Key": "secret-key", "Accept": "application/json"},
        data=body,
    ).prepare()
    response = requests.Response()
    response.request = request
    response.status_code = 200
    response.encoding = "utf-8"
    response._content = b'{"ok": true}'
    response.elapsed = timedelta(milliseconds=42)
    return response


def test_observer_appends_redacted_lines(tmp_path) -> None:
    path = tmp_path / "logs" / "fetch.log"
    observer = FileHttpObserver(path)

    observer.on_response(make_response("a" * (MAX_LOGGED_BODY + 10)))
    observer.on_response(make_response("short"))

    lines = [json.loads(line) for line in path.read_text().splitlines()]
    assert len(lines) == 2
    first = lines[0]
    assert first["headers"]["X-Access-Key"] == "<redacted>"
    assert first["headers"]["Accept"] == "application/json"
    assert first["body"].endswith("...[10 more]")
    assert first["status"] == 200
    assert first["elapsedMs"] == 42
    assert lines[1]["body"] == "short"
    assert "secret-key" not in path.read_text()


def test_session_hook_only_when_observing(tmp_path) -> None:
    assert build_http_session().hooks["response"] == []
    assert len(build_http_session(FileHttpObserver(tmp_path / "f.log")).hooks["response"]) == 1
