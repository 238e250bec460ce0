from __future__ import annotations

import http.client
from pathlib import Path

import pytest
import requests

from polygon_agent.callback import (
    CallbackServer,
    OneShotResult,
    parse_callback_body,
    read_ciphertext_argument,
)
from polygon_agent.errors import TransportError, UsageError


@pytest.fixture
def server():
    listener = CallbackServer(timeout=5, expected_request_id="abc123")
    yield listener
    listener.close()


def test_callback_url_points_at_loopback(server: CallbackServer) -> None:
    assert server.callback_url == f"http://localhost:{server.port}/callback"
    assert server.port > 0


def test_json_callback_resolves_and_closes(server: CallbackServer) -> None:
    response = requests.post(server.callback_url, json={"ciphertext": "sealed", "rid": "abc123"}, timeout=5)

    assert response.status_code == 200
    assert "Session delivered" in response.text
    payload = server.wait()
    assert payload.ciphertext == "sealed"
    assert payload.request_id == "abc123"
    assert server.closed


def test_form_callback_is_accepted(server: CallbackServer) -> None:
    response = requests.post(server.callback_url, data={"ciphertext": "sealed-form"}, timeout=5)

    assert response.status_code == 200
    assert server.wait().ciphertext == "sealed-form"


def test_second_callback_is_conflict(server: CallbackServer) -> None:
    first = requests.post(server.callback_url, json={"ciphertext": "one"}, timeout=5)
    second = requests.post(server.callback_url, json={"ciphertext": "two"}, timeout=5)

    assert first.status_code == 200
    assert second.status_code == 409
    assert server.wait().ciphertext == "one"


def test_oversized_body_then_valid_post(server: CallbackServer) -> None:
    oversized = requests.post(
        server.callback_url,
        data=b"ciphertext=" + b"a" * (70 * 1024),
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        timeout=5,
    )

    assert oversized.status_code == 413
    assert not server.closed

    valid = requests.post(server.callback_url, json={"ciphertext": "sealed"}, timeout=5)
    assert valid.status_code == 200
    assert server.wait().ciphertext == "sealed"


@pytest.mark.parametrize(
    "path, body, status",
    [
        ("/elsewhere", {"ciphertext": "x"}, 404),
        ("/callback", {"rid": "abc123"}, 400),
        ("/callback", {"ciphertext": "x", "rid": "someone-else"}, 400),
    ],
)
def test_rejected_posts_leave_listener_waiting(server: CallbackServer, path, body, status) -> None:
    response = requests.post(f"http://localhost:{server.port}{path}", json=body, timeout=5)

    assert response.status_code == status
    assert response.json()["ok"] is False

    requests.post(server.callback_url, json={"ciphertext": "late"}, timeout=5)
    assert server.wait().ciphertext == "late"


def test_malformed_json_is_bad_request(server: CallbackServer) -> None:
    response = requests.post(
        server.callback_url, data="{broken", headers={"Content-Type": "application/json"}, timeout=5
    )

    assert response.status_code == 400


def test_other_methods_are_not_allowed(server: CallbackServer) -> None:
    response = requests.get(server.callback_url, timeout=5)

    assert response.status_code == 405
    assert response.headers["Allow"] == "POST"


def test_missing_content_length(server: CallbackServer) -> None:
    conn = http.client.HTTPConnection("127.0.0.1", server.port, timeout=5)
    try:
        conn.putrequest("POST", "/callback")
        conn.endheaders()
        response = conn.getresponse()
        assert response.status == 411
    finally:
        conn.close()


def test_timeout_closes_listener() -> None:
    listener = CallbackServer(timeout=1)
    port = listener.port

    with pytest.raises(TransportError) as excinfo:
        listener.wait()

    assert "timed out waiting for callback (1s)" in str(excinfo.value)
    assert listener.closed
    with pytest.raises(requests.ConnectionError):
        requests.post(f"http://127.0.0.1:{port}/callback", json={"ciphertext": "x"}, timeout=2)


def test_close_is_idempotent() -> None:
    with CallbackServer(timeout=1) as listener:
        listener.close()
    assert listener.closed


def test_one_shot_result_keeps_first_value() -> None:
    result = OneShotResult()

    assert result.set("first") is True
    assert result.set("second") is False
    assert result.resolved
    assert result.value == "first"


def test_parse_callback_body_variants() -> None:
    assert parse_callback_body(b'{"ciphertext": " abc ", "requestId": "r1"}', "application/json").request_id == "r1"
    assert parse_callback_body(b"ciphertext=abc&rid=r2", "application/x-www-form-urlencoded").ciphertext == "abc"
    with pytest.raises(KeyError):
        parse_callback_body(b"rid=r2", "")
    with pytest.raises(ValueError):
        parse_callback_body(b"[1, 2]", "application/json")


def test_read_ciphertext_argument(tmp_path: Path) -> None:
    path = tmp_path / "sealed.txt"
    path.write_text("  from-file\n")

    assert read_ciphertext_argument("literal") == "literal"
    assert read_ciphertext_argument(f"@{path}") == "from-file"
    with pytest.raises(UsageError):
        read_ciphertext_argument(f"@{tmp_path / 'missing.txt'}")
    with pytest.raises(UsageError):
        read_ciphertext_argument("   ")
