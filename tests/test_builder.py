from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest
import requests
from eth_account import Account
from eth_account.messages import encode_typed_data

from polygon_agent.builder import (
    BuilderClient,
    BuilderIdentity,
    ethauth_typed_data,
    generate_ethauth_proof,
    load_builder,
    save_builder,
    setup_builder,
)
from polygon_agent.errors import TransportError, UsageError
from polygon_agent.handshake import b64url_decode

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
KEY = "0x" + "11" * 32
API = "https://builder.example.org"


class FakeResponse:
    def __init__(self, payload, status_code: int = 200, url: str = API):
        self._payload = payload
        self.status_code = status_code
        self.url = url
        self.text = payload if isinstance(payload, str) else json.dumps(payload)

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        if isinstance(self._payload, str):
            raise ValueError("not json")
        return self._payload


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[dict] = []

    def post(self, url, data=None, headers=None, timeout=None):
        self.requests.append({"url": url, "body": json.loads(data), "headers": headers})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def builder_responses():
    return (
        FakeResponse({"ok": True, "auth": {"jwtToken": "jwt-123"}}),
        FakeResponse({"project": {"id": 42, "name": "agents"}}),
        FakeResponse({"accessKey": {"accessKey": "AQAAAAAAAKbuilderkey"}}),
    )


def test_ethauth_proof_is_signed_by_the_key() -> None:
    proof = generate_ethauth_proof(KEY, now=NOW)

    prefix, address, encoded_claims, signature = proof.split(".")
    claims = json.loads(b64url_decode(encoded_claims))
    issued = int(NOW.timestamp())
    assert prefix == "eth"
    assert address == Account.from_key(KEY).address.lower()
    assert claims == {"app": "sequence-builder", "iat": issued, "exp": issued + 3600, "v": "1"}
    assert "=" not in encoded_claims

    recovered = Account.recover_message(
        encode_typed_data(full_message=ethauth_typed_data(claims)), signature=signature
    )
    assert recovered.lower() == address


def test_typed_data_keeps_claim_order_and_skips_empty() -> None:
    typed = ethauth_typed_data({"v": "1", "app": "sequence-builder", "n": 0, "exp": 10, "iat": 5})

    assert [field["name"] for field in typed["types"]["Claims"]] == ["app", "iat", "exp", "v"]
    assert typed["domain"] == {"name": "ETHAuth", "version": "1"}
    assert "n" not in typed["message"]


def test_setup_creates_project_and_stores_identity(store) -> None:
    session = FakeSession(*builder_responses())

    identity, created = setup_builder(store, BuilderClient(API, session=session), "agents", now=NOW)

    assert created is True
    assert [request["url"] for request in session.requests] == [
        f"{API}/rpc/Builder/GetAuthToken",
        f"{API}/rpc/Builder/CreateProject",
        f"{API}/rpc/QuotaControl/GetDefaultAccessKey",
    ]
    auth, project, access = session.requests
    assert auth["body"]["ethauthProof"].startswith(f"eth.{identity.eoa_address.lower()}.")
    assert "Authorization" not in auth["headers"]
    assert project["body"] == {"name": "agents"}
    assert project["headers"]["Authorization"] == "Bearer jwt-123"
    assert access["body"] == {"projectID": 42}

    assert Account.from_key(identity.private_key).address == identity.eoa_address
    stored = load_builder(store)
    assert stored == identity
    assert stored.access_key == "AQAAAAAAAKbuilderkey"
    assert stored.project_name == "agents"
    assert "privateKey" not in stored.public_view()


def test_setup_keeps_existing_identity_unless_forced(store) -> None:
    save_builder(store, BuilderIdentity(access_key="AQAAAAAAAKoldkey", created_at=NOW))

    identity, created = setup_builder(store, BuilderClient(API, session=FakeSession()), "agents")
    assert created is False
    assert identity.access_key == "AQAAAAAAAKoldkey"

    session = FakeSession(*builder_responses())
    identity, created = setup_builder(store, BuilderClient(API, session=session), "agents", force=True)
    assert created is True
    assert load_builder(store).access_key == "AQAAAAAAAKbuilderkey"


def test_setup_requires_a_name(store) -> None:
    with pytest.raises(UsageError):
        setup_builder(store, BuilderClient(API, session=FakeSession()), "  ")


@pytest.mark.parametrize(
    "responses, fragment",
    [
        ((FakeResponse({"ok": False}),), "GetAuthToken"),
        ((FakeResponse("denied", status_code=401),), "401"),
        ((FakeResponse({"ok": True, "auth": {"jwtToken": "jwt"}}), FakeResponse({"project": None})), "CreateProject"),
        ((requests.ConnectionError("offline"),), "offline"),
    ],
)
def test_setup_failures_store_nothing(store, responses, fragment) -> None:
    with pytest.raises(TransportError) as excinfo:
        setup_builder(store, BuilderClient(API, session=FakeSession(*responses)), "agents", now=NOW)

    assert fragment in str(excinfo.value)
    assert load_builder(store) is None
