from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from polygon_agent.envelope import seal_envelope
from polygon_agent.errors import (
    AmbiguousRequestError,
    DecryptionError,
    ExpiredRequestError,
    StoreError,
    UsageError,
    ValidationError,
    WalletNotFoundError,
)
from polygon_agent.handshake import create_request, load_request
from polygon_agent.session import WalletSessionStore, ingest_session
from polygon_agent.storage import KIND_WALLETS

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_ingest_by_wallet_name(store, envelope_payload) -> None:
    request = create_request(store, "main", "polygon", access_key="AQAAproject", now=NOW)
    ciphertext = seal_envelope(request.public_key, envelope_payload(request))

    session = ingest_session(store, ciphertext, wallet_name="main", now=NOW + timedelta(minutes=1))

    assert session.wallet_address == "0x1111111111111111111111111111111111111111"
    assert session.chain_id == 137
    assert session.chain_name == "polygon"
    assert session.access_key == "AQAAproject"
    assert session.deadline == int(NOW.timestamp()) + 86400
    assert load_request(store, request.request_id).is_consumed

    loaded = WalletSessionStore(store).load("main")
    assert loaded == session


def test_ingest_by_request_id_with_several_pending(store, envelope_payload) -> None:
    create_request(store, "main", "polygon", now=NOW)
    request = create_request(store, "main", "polygon", now=NOW)
    ciphertext = seal_envelope(request.public_key, envelope_payload(request))

    with pytest.raises(AmbiguousRequestError):
        ingest_session(store, ciphertext, wallet_name="main", now=NOW)

    session = ingest_session(store, ciphertext, request_id=request.request_id, now=NOW)
    assert session.wallet_name == "main"


def test_ciphertext_cannot_be_ingested_twice(store, envelope_payload) -> None:
    request = create_request(store, "main", "polygon", now=NOW)
    ciphertext = seal_envelope(request.public_key, envelope_payload(request))
    ingest_session(store, ciphertext, request_id=request.request_id, now=NOW)

    with pytest.raises(ExpiredRequestError) as excinfo:
        ingest_session(store, ciphertext, request_id=request.request_id, now=NOW)

    assert "already used" in str(excinfo.value)


def test_expired_request_is_refused(store, envelope_payload) -> None:
    request = create_request(store, "main", "polygon", now=NOW)
    ciphertext = seal_envelope(request.public_key, envelope_payload(request))

    with pytest.raises(ExpiredRequestError):
        ingest_session(store, ciphertext, request_id=request.request_id, now=NOW + timedelta(hours=2))

    assert store.list(KIND_WALLETS) == []


def test_failures_write_nothing(store, envelope_payload) -> None:
    request = create_request(store, "main", "amoy", now=NOW)
    wrong_chain = seal_envelope(request.public_key, envelope_payload(request, chain_id=137))
    other = create_request(store, "other", "amoy", now=NOW)
    wrong_key = seal_envelope(other.public_key, envelope_payload(other, chain_id=80002))

    with pytest.raises(ValidationError):
        ingest_session(store, wrong_chain, request_id=request.request_id, now=NOW)
    with pytest.raises(DecryptionError):
        ingest_session(store, wrong_key, request_id=request.request_id, now=NOW)

    assert store.list(KIND_WALLETS) == []
    assert not load_request(store, request.request_id).is_consumed


def test_relinking_replaces_session(store, envelope_payload) -> None:
    first = create_request(store, "main", "polygon", now=NOW)
    ingest_session(store, seal_envelope(first.public_key, envelope_payload(first)), request_id=first.request_id, now=NOW)
    second = create_request(store, "main", "polygon", now=NOW)
    replacement = envelope_payload(second, walletAddress="0x" + "55" * 20)

    session = ingest_session(store, seal_envelope(second.public_key, replacement), wallet_name="main", now=NOW)

    assert WalletSessionStore(store).list() == ["main"]
    assert WalletSessionStore(store).load("main").wallet_address == session.wallet_address == "0x" + "55" * 20


def test_request_id_for_other_wallet_is_usage_error(store, envelope_payload) -> None:
    request = create_request(store, "main", "polygon", now=NOW)
    ciphertext = seal_envelope(request.public_key, envelope_payload(request))

    with pytest.raises(UsageError):
        ingest_session(store, ciphertext, wallet_name="other", request_id=request.request_id, now=NOW)
    with pytest.raises(UsageError):
        ingest_session(store, ciphertext, now=NOW)


def test_session_store_remove_and_missing(store, envelope_payload) -> None:
    sessions = WalletSessionStore(store)
    request = create_request(store, "main", "polygon", now=NOW)
    ingest_session(store, seal_envelope(request.public_key, envelope_payload(request)), wallet_name="main", now=NOW)

    assert sessions.remove("main") is True
    assert sessions.remove("main") is False
    with pytest.raises(WalletNotFoundError):
        sessions.load("main")


def test_ingest_by_name_after_expiry_reports_expired(store, envelope_payload) -> None:
    request = create_request(store, "main", "polygon", now=NOW)
    ciphertext = seal_envelope(request.public_key, envelope_payload(request))

    with pytest.raises(ExpiredRequestError) as excinfo:
        ingest_session(store, ciphertext, wallet_name="main", now=NOW + timedelta(hours=3))

    assert "expired" in str(excinfo.value)
    assert store.list(KIND_WALLETS) == []


def test_ingest_by_name_after_use_reports_already_used(store, envelope_payload) -> None:
    request = create_request(store, "main", "polygon", now=NOW)
    ciphertext = seal_envelope(request.public_key, envelope_payload(request))
    ingest_session(store, ciphertext, wallet_name="main", now=NOW)

    with pytest.raises(ExpiredRequestError) as excinfo:
        ingest_session(store, ciphertext, wallet_name="main", now=NOW + timedelta(minutes=5))

    assert "already used" in str(excinfo.value)


def test_request_is_consumed_before_session_is_saved(store, envelope_payload, monkeypatch) -> None:
    request = create_request(store, "main", "polygon", now=NOW)
    ciphertext = seal_envelope(request.public_key, envelope_payload(request))

    def failing_mark(*args, **kwargs):
        raise StoreError("disk full")

    monkeypatch.setattr("polygon_agent.session.mark_consumed", failing_mark)

    with pytest.raises(StoreError):
        ingest_session(store, ciphertext, request_id=request.request_id, now=NOW)

    assert store.list(KIND_WALLETS) == []
