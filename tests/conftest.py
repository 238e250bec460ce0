from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import pytest

from polygon_agent.config import AgentConfig
from polygon_agent.handshake import SessionRequest
from polygon_agent.storage import CredentialStore

WALLET_ADDRESS = "0x1111111111111111111111111111111111111111"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path: Path) -> CredentialStore:
    return CredentialStore(tmp_path / "home")


@pytest.fixture
def agent_config(tmp_path: Path) -> AgentConfig:
    return AgentConfig(
        home=tmp_path / "home",
        connector_url="https://connect.example.org",
        access_key="AQAAAAAAAKproject",
        indexer_access_key="indexer-key",
    )


@pytest.fixture
def envelope_payload() -> Callable[..., dict[str, Any]]:
    def build(
        request: SessionRequest,
        *,
        chain_id: int = 137,
        deadline: Any = None,
        **overrides: Any,
    ) -> dict[str, Any]:
        if deadline is None:
            deadline = int(request.created_at.timestamp()) + 86400
        payload: dict[str, Any] = {
            "rid": request.request_id,
            "walletName": request.wallet_name,
            "walletAddress": WALLET_ADDRESS,
            "chainId": chain_id,
            "explicitSession": {
                "pk": "0x" + "ab" * 32,
                "sessionAddress": "0x" + "22" * 20,
                "config": {
                    "chainId": chain_id,
                    "valueLimit": "2000000000000000000",
                    "deadline": deadline,
                    "permissions": [],
                },
            },
            "implicit": {
                "pk": "0x" + "cd" * 32,
                "attestation": {"approvedSigner": "0x" + "33" * 20, "identityType": "0x00"},
                "identitySignature": "0x" + "ef" * 65,
                "guard": "https://guard.example.org",
                "loginMethod": "email",
                "userEmail": "agent@example.org",
            },
        }
        payload.update(overrides)
        return payload

    return build
