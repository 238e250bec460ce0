from __future__ import annotations

import json
from dataclasses import replace

import pytest
import requests

from polygon_agent.config import ConfigurationError
from polygon_agent.errors import TransportError
from polygon_agent.indexer import IndexerClient, RPCError, parse_gateway_balances
from polygon_agent.networks import resolve_network

WALLET = "0x1111111111111111111111111111111111111111"
USDC = "0x3c499c542cef5e3811e1192ce70d8cc03d5c3359"
POLYGON = resolve_network(137)


class FakeResponse:
    def __init__(self, payload, status_code: int = 200, url: str = "https://example.org"):
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


def gateway_payload(native: str | None = "0xde0b6b3a7640000") -> dict:
    native_rows = [{"chainId": 137, "results": [{"balance": native}]}] if native else []
    return {
        "nativeBalances": native_rows,
        "balances": [
            {
                "chainId": 137,
                "results": [
                    {
                        "contractAddress": USDC,
                        "balance": "2500000",
                        "contractInfo": {"symbol": "USDC", "decimals": 6},
                    }
                ],
            }
        ],
    }


def test_parse_flat_gateway_response() -> None:
    native, erc20 = parse_gateway_balances(gateway_payload(), POLYGON)

    assert native[0].balance == 10**18
    assert native[0].symbol == "POL"
    assert erc20[0].to_dict() == {
        "type": "erc20",
        "symbol": "USDC",
        "balance": "2.5",
        "contractAddress": USDC,
    }


def test_parse_nested_by_chain_id() -> None:
    data = {"byChainId": {"137": gateway_payload()}}

    native, erc20 = parse_gateway_balances(data, POLYGON)

    assert len(native) == 1
    assert len(erc20) == 1


def test_parse_chains_list_and_missing_chain() -> None:
    entry = dict(gateway_payload(), chainId=137)

    assert parse_gateway_balances({"chains": [entry]}, POLYGON)[1][0].symbol == "USDC"
    assert parse_gateway_balances({"chains": []}, POLYGON) == ([], [])
    assert parse_gateway_balances(None, POLYGON) == ([], [])


def test_unparseable_balance_counts_as_zero() -> None:
    payload = gateway_payload()
    payload["balances"][0]["results"][0]["balance"] = "lots"

    _, erc20 = parse_gateway_balances(payload, POLYGON)

    assert erc20[0].balance == 0


def test_get_balances_sends_access_key(agent_config) -> None:
    session = FakeSession(FakeResponse(gateway_payload()))
    client = IndexerClient(agent_config, session=session)

    balances = client.get_balances(WALLET, POLYGON)

    assert [balance.type for balance in balances] == ["native", "erc20"]
    sent = session.requests[0]
    assert sent["headers"]["X-Access-Key"] == "indexer-key"
    assert sent["body"]["filter"]["accountAddresses"] == [WALLET]


def test_native_balance_falls_back_to_rpc(agent_config) -> None:
    session = FakeSession(
        FakeResponse(gateway_payload(native=None)),
        FakeResponse({"jsonrpc": "2.0", "id": "1", "result": "0x2386f26fc10000"}),
    )
    client = IndexerClient(agent_config, session=session)

    balances = client.get_balances(WALLET, POLYGON)

    assert balances[0].type == "native"
    assert balances[0].balance == 10**16
    rpc = session.requests[1]
    assert rpc["url"] == POLYGON.rpc_url
    assert rpc["body"]["method"] == "eth_getBalance"
    assert rpc["body"]["params"] == [WALLET, "latest"]


def test_failed_rpc_fallback_still_returns_tokens(agent_config) -> None:
    session = FakeSession(
        FakeResponse(gateway_payload(native=None)),
        FakeResponse({"jsonrpc": "2.0", "id": "1", "error": {"code": -32000, "message": "busy"}}),
    )

    balances = IndexerClient(agent_config, session=session).get_balances(WALLET, POLYGON)

    assert [balance.type for balance in balances] == ["erc20"]


def test_rpc_error_object(agent_config) -> None:
    session = FakeSession(FakeResponse({"error": {"code": -32601, "message": "no such method"}}))

    with pytest.raises(RPCError) as excinfo:
        IndexerClient(agent_config, session=session).rpc_call(POLYGON, "eth_nope", [])

    assert excinfo.value.rpc_code == -32601


def test_rejected_access_key_has_hint(agent_config) -> None:
    session = FakeSession(FakeResponse({"error": "unauthorized"}, status_code=401))

    with pytest.raises(TransportError) as excinfo:
        IndexerClient(agent_config, session=session).token_balances(WALLET, 137)

    assert "SEQUENCE_INDEXER_ACCESS_KEY" in excinfo.value.hint
    assert excinfo.value.retryable


def test_connection_failure_is_transport_error(agent_config) -> None:
    session = FakeSession(requests.ConnectionError("refused"))

    with pytest.raises(TransportError):
        IndexerClient(agent_config, session=session).fetch_gateway(WALLET)


def test_malformed_json_is_transport_error(agent_config) -> None:
    session = FakeSession(FakeResponse("<html>"))

    with pytest.raises(TransportError):
        IndexerClient(agent_config, session=session).fetch_gateway(WALLET)


def test_missing_indexer_key(agent_config) -> None:
    client = IndexerClient(replace(agent_config, indexer_access_key=None), session=FakeSession())

    with pytest.raises(ConfigurationError):
        client.fetch_gateway(WALLET)
