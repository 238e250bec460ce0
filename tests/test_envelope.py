from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from polygon_agent.envelope import (
    DECRYPT_FAILURE_MESSAGE,
    SessionEnvelope,
    open_envelope,
    seal_envelope,
    validate_envelope,
)
from polygon_agent.errors import DecryptionError, ExpiredRequestError, ValidationError
from polygon_agent.handshake import b64url_encode, create_request

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def request_(store):
    return create_request(store, "main", "polygon", now=NOW)


def test_sealed_envelope_opens_with_request_key(request_, envelope_payload) -> None:
    payload = envelope_payload(request_)

    envelope = open_envelope(request_, seal_envelope(request_.public_key, payload))

    assert envelope.request_id == request_.request_id
    assert envelope.wallet_address == payload["walletAddress"]
    assert envelope.chain_id == 137
    assert envelope.explicit.signing_key == "0x" + "ab" * 32
    assert envelope.explicit.permission_config["valueLimit"] == "2000000000000000000"
    assert envelope.implicit.login_metadata["loginMethod"] == "email"
    validate_envelope(envelope, request_, now=NOW + timedelta(minutes=5))


def test_ciphertext_for_other_request_fails(store, request_, envelope_payload) -> None:
    other = create_request(store, "main", "polygon", now=NOW)
    ciphertext = seal_envelope(other.public_key, envelope_payload(other))

    with pytest.raises(DecryptionError) as excinfo:
        open_envelope(request_, ciphertext)

    assert str(excinfo.value) == DECRYPT_FAILURE_MESSAGE


@pytest.mark.parametrize("ciphertext", ["", "!!!not-base64!!!", b64url_encode(b"short")])
def test_garbage_ciphertext_is_decryption_error(request_, ciphertext) -> None:
    with pytest.raises(DecryptionError):
        open_envelope(request_, ciphertext)


def test_non_json_plaintext_is_validation_error(request_) -> None:
    from nacl.public import PublicKey, SealedBox

    from polygon_agent.handshake import b64url_decode

    sealed = SealedBox(PublicKey(b64url_decode(request_.public_key))).encrypt(b"not json")

    with pytest.raises(ValidationError):
        open_envelope(request_, b64url_encode(sealed))


def test_non_object_envelope_is_rejected() -> None:
    with pytest.raises(ValidationError):
        SessionEnvelope.from_wire(["walletAddress"])


def test_expired_request_is_rejected_before_fields(request_, envelope_payload) -> None:
    envelope = SessionEnvelope.from_wire(envelope_payload(request_, walletAddress=None))

    with pytest.raises(ExpiredRequestError):
        validate_envelope(envelope, request_, now=NOW + timedelta(hours=3))


def test_chain_mismatch_names_both_chains(store, envelope_payload) -> None:
    request = create_request(store, "main", "amoy", now=NOW)
    envelope = SessionEnvelope.from_wire(envelope_payload(request, chain_id=137))

    with pytest.raises(ValidationError) as excinfo:
        validate_envelope(envelope, request, now=NOW)

    message = str(excinfo.value)
    assert "amoy" in message
    assert "80002" in message
    assert "137" in message


@pytest.mark.parametrize(
    "overrides, fragment",
    [
        ({"walletAddress": None}, "walletAddress"),
        ({"walletAddress": "0x1234"}, "walletAddress"),
        ({"chainId": None}, "Missing chainId"),
        ({"chainId": "137"}, "numeric"),
        ({"chainId": True}, "numeric"),
        ({"explicitSession": {"config": {}}}, "explicitSession.pk"),
        ({"implicit": None}, "implicit.pk"),
        ({"implicit": {"pk": "0x01", "identitySignature": "0x02"}}, "attestation"),
        ({"implicit": {"pk": "0x01", "attestation": {"a": 1}}}, "identitySignature"),
        ({"rid": "f" * 32}, "does not match"),
    ],
)
def test_field_checks(request_, envelope_payload, overrides, fragment) -> None:
    envelope = SessionEnvelope.from_wire(envelope_payload(request_, **overrides))

    with pytest.raises(ValidationError) as excinfo:
        validate_envelope(envelope, request_, now=NOW)

    assert fragment in str(excinfo.value)


def test_address_is_checked_before_chain(request_, envelope_payload) -> None:
    envelope = SessionEnvelope.from_wire(
        envelope_payload(request_, walletAddress="nope", chainId="bad")
    )

    with pytest.raises(ValidationError) as excinfo:
        validate_envelope(envelope, request_, now=NOW)

    assert "walletAddress" in str(excinfo.value)


def test_envelope_wire_round_trip(request_, envelope_payload) -> None:
    envelope = SessionEnvelope.from_wire(envelope_payload(request_))

    assert SessionEnvelope.from_wire(envelope.to_wire()) == envelope
