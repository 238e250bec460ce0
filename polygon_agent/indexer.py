"""Balance lookups via the indexer gateway and plain JSON-RPC.

The gateway answers for every chain at once and has shipped several response
shapes; :func:`parse_gateway_balances` accepts all of them.  When the gateway
reports no native balance, ``eth_getBalance`` against the chain's public RPC
fills the gap.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional

import requests
from requests import RequestException, Response

from .config import AgentConfig
from .errors import TransportError
from .networks import Network, format_units, resolve_network

logger = logging.getLogger(__name__)


class RPCError(TransportError):
    """Raised when a JSON-RPC endpoint answers with an error object."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"RPC error {code}: {message}")
        self.rpc_code = code


@dataclass(frozen=True)
class TokenBalance:
    type: str
    symbol: str
    balance: int
    decimals: int
    contract_address: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type,
            "symbol": self.symbol,
            "balance": format_units(self.balance, self.decimals),
        }
        if self.contract_address:
            data["contractAddress"] = self.contract_address
        return data


def _matches_chain(entry: Any, chain_id: str) -> bool:
    return isinstance(entry, dict) and str(entry.get("chainId") or entry.get("chainID")) == chain_id


def _find_chain(entries: Any, chain_id: str) -> Optional[dict[str, Any]]:
    if isinstance(entries, list):
        return next((entry for entry in entries if _matches_chain(entry, chain_id)), None)
    return None


def _chain_entry(data: Any, chain_id: str) -> Optional[dict[str, Any]]:
    if not isinstance(data, dict):
        return None
    for key in ("chains", "byChainId"):
        nested = data.get(key)
        if isinstance(nested, dict) and isinstance(nested.get(chain_id), dict):
            return nested[chain_id]
    return _find_chain(data.get("chains"), chain_id) or (
        data if data.get("balances") or data.get("nativeBalances") else None
    )


def _to_int(value: Any) -> int:
    text = str(value if value is not None else "0").strip()
    try:
        return int(text, 16) if text.startswith("0x") else int(text)
    except ValueError:
        logger.debug("Unparseable balance value %r", value)
        return 0


def parse_gateway_balances(data: Any, network: Network) -> tuple[list[TokenBalance], list[TokenBalance]]:
    """Return ``(native, erc20)`` balances for ``network`` from a gateway response."""

    chain_id = str(network.chain_id)
    entry = _chain_entry(data, chain_id)
    if entry is None:
        return [], []

    def results(field: str) -> list[dict[str, Any]]:
        per_chain = _find_chain(entry.get(field), chain_id)
        rows = per_chain.get("results") if per_chain is not None else None
        return [row for row in rows or [] if isinstance(row, dict)]

    native = [
        TokenBalance(
            type="native",
            symbol=row.get("symbol") or row.get("name") or network.native_symbol,
            balance=_to_int(row.get("balance")),
            decimals=network.native_decimals,
        )
        for row in results("nativeBalances")
    ]
    erc20 = []
    for row in results("balances"):
        info = row.get("contractInfo") or {}
        erc20.append(
            TokenBalance(
                type="erc20",
                symbol=info.get("symbol") or "ERC20",
                balance=_to_int(row.get("balance")),
                decimals=int(info.get("decimals") or 0),
                contract_address=row.get("contractAddress"),
            )
        )
    return native, erc20


class IndexerClient:
    """Thin client for the indexer gateway plus a JSON-RPC native fallback."""

    def __init__(
        self,
        config: AgentConfig,
        *,
        session: requests.Session | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.config = config
        self._session = session or requests.Session()
        self._timeout = timeout

    def _post(self, url: str, payload: dict[str, Any], headers: dict[str, str]) -> Any:
        try:
            response = self._session.post(
                url,
                data=json.dumps(payload),
                headers={"content-type": "application/json", **headers},
                timeout=self._timeout,
            )
        except RequestException as exc:
            logger.error(
                "Request to %s failed: %s", url, exc, exc_info=logger.isEnabledFor(logging.DEBUG)
            )
            raise TransportError(f"Request to {url} failed: {exc}") from exc
        self._raise_for_status(response)
        try:
            return response.json()
        except ValueError as exc:
            logger.debug("Malformed JSON from %s: %s", url, response.text, exc_info=True)
            raise TransportError(f"{url} returned malformed JSON") from exc

    def _raise_for_status(self, response: Response) -> None:
        if response.ok:
            return
        logger.error("HTTP error %s from %s", response.status_code, response.url)
        logger.debug("Error body: %s", response.text)
        if response.status_code in (401, 403):
            raise TransportError(
                f"Indexer rejected the access key ({response.status_code})",
                hint="Check SEQUENCE_INDEXER_ACCESS_KEY.",
            )
        raise TransportError(f"Request failed: {response.status_code} {response.text[:200]}")

    def rpc_call(self, network: Network, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": str(uuid.uuid4()), "method": method, "params": params}
        logger.debug("RPC call %s on %s", method, network.name)
        result = self._post(network.rpc_url, payload, {})
        if isinstance(result, dict) and result.get("error"):
            error = result["error"]
            raise RPCError(error.get("code", -1), error.get("message", "unknown"))
        return result.get("result") if isinstance(result, dict) else None

    def native_balance(self, address: str, network: Network) -> int:
        result = self.rpc_call(network, "eth_getBalance", [address, "latest"])
        if not isinstance(result, str) or not result.startswith("0x"):
            raise TransportError(f"Unexpected eth_getBalance result: {result!r}")
        return int(result, 16)

    def fetch_gateway(self, address: str) -> Any:
        access_key = self.config.require("indexer_access_key")
        payload = {
            "omitMetadata": False,
            "filter": {"contractStatus": "VERIFIED", "accountAddresses": [address]},
        }
        return self._post(self.config.indexer_url, payload, {"X-Access-Key": access_key})

    def get_balances(self, address: str, network: Network) -> list[TokenBalance]:
        """Native plus ERC-20 balances of ``address`` on ``network``."""

        native, erc20 = parse_gateway_balances(self.fetch_gateway(address), network)
        if not native:
            try:
                native = [
                    TokenBalance(
                        type="native",
                        symbol=network.native_symbol,
                        balance=self.native_balance(address, network),
                        decimals=network.native_decimals,
                    )
                ]
            except TransportError as exc:
                logger.warning("Native balance fallback failed: %s", exc)
        return [*native, *erc20]

    def token_balances(self, address: str, chain_id: int) -> list[TokenBalance]:
        _, erc20 = parse_gateway_balances(self.fetch_gateway(address), resolve_network(chain_id))
        return erc20
