"""Token symbol resolution.

Lookups consult, in order, the operator's token map override, a small table of
well-known stablecoin deployments, and finally the public token directory.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

import requests
from requests import RequestException

from .errors import TransportError, UnknownTokenError
from .networks import ZERO_ADDRESS, is_address, resolve_network

logger = logging.getLogger(__name__)

NATIVE_SYMBOLS = frozenset({"NATIVE", "POL", "MATIC", "ETH"})

USDC_E_POLYGON = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"


@dataclass(frozen=True)
class TokenInfo:
    symbol: str
    address: str
    decimals: int

    @property
    def is_native(self) -> bool:
        return self.address.lower() == ZERO_ADDRESS


KNOWN_TOKENS: dict[int, dict[str, TokenInfo]] = {
    137: {
        "USDC": TokenInfo("USDC", "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359", 6),
        "USDC.E": TokenInfo("USDC.E", USDC_E_POLYGON, 6),
        "USDT": TokenInfo("USDT", "0xc2132D05D31c914a87C6611C10748AEb04B58e8F", 6),
    },
    1: {
        "USDC": TokenInfo("USDC", "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", 6),
        "USDT": TokenInfo("USDT", "0xdAC17F958D2ee523a2206206994597C13D831ec7", 6),
    },
    8453: {
        "USDC": TokenInfo("USDC", "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", 6),
    },
    84532: {
        "USDC": TokenInfo("USDC", "0x036CbD53842c5426634e7929541eC2318f3dCF7e", 6),
    },
}


class TokenSource(Protocol):
    def lookup(self, chain_id: int, symbol: str) -> TokenInfo | None:
        ...


class TokenDirectoryClient:
    """Read-only client for the public token-directory ERC-20 lists."""

    def __init__(
        self,
        base_url: str,
        *,
        session: requests.Session | None = None,
        timeout: float = 15.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._session = session or requests.Session()
        self._timeout = timeout
        self._index: dict[str, Any] | None = None
        self._lists: dict[int, list[dict[str, Any]]] = {}

    def _get_json(self, url: str) -> Any:
        try:
            response = self._session.get(url, timeout=self._timeout)
            response.raise_for_status()
            return response.json()
        except RequestException as exc:
            raise TransportError(f"Token directory request failed: {url}: {exc}") from exc
        except ValueError as exc:
            raise TransportError(f"Token directory returned malformed JSON: {url}") from exc

    def _chain_folder(self, chain_id: int) -> str | None:
        if self._index is None:
            self._index = self._get_json(f"{self.base_url}/index/index.json") or {}
        entries = self._index.get("index") or {}
        for chain_name, meta in entries.items():
            if chain_name == "_external" or not isinstance(meta, dict):
                continue
            if str(meta.get("chainId")) == str(chain_id):
                return chain_name
        return None

    def _erc20_list(self, chain_id: int) -> list[dict[str, Any]]:
        if chain_id not in self._lists:
            folder = self._chain_folder(chain_id)
            if folder is None:
                self._lists[chain_id] = []
            else:
                data = self._get_json(f"{self.base_url}/index/{folder}/erc20.json")
                tokens = data.get("tokens") if isinstance(data, dict) else data
                self._lists[chain_id] = tokens if isinstance(tokens, list) else []
        return self._lists[chain_id]

    def lookup(self, chain_id: int, symbol: str) -> TokenInfo | None:
        wanted = symbol.upper()
        matches = [
            token
            for token in self._erc20_list(chain_id)
            if str(token.get("symbol", "")).upper() == wanted and is_address(token.get("address"))
        ]
        if not matches:
            return None
        pick = next(
            (t for t in matches if (t.get("extensions") or {}).get("verified") is True),
            None,
        ) or next((t for t in matches if t.get("logoURI")), matches[0])
        return TokenInfo(wanted, pick["address"], int(pick.get("decimals", 18)))


class TokenResolver:
    """Resolve symbols to ``{address, decimals}`` for a chain."""

    def __init__(
        self,
        *,
        token_map: Mapping[str, Any] | None = None,
        directory: TokenSource | None = None,
    ) -> None:
        self._token_map = token_map or {}
        self._directory = directory

    def native(self, chain_id: int) -> TokenInfo:
        network = resolve_network(chain_id)
        return TokenInfo(network.native_symbol, ZERO_ADDRESS, network.native_decimals)

    def _from_override(self, chain_id: int, symbol: str) -> TokenInfo | None:
        entry = (self._token_map.get(str(chain_id)) or {}).get(symbol)
        if not isinstance(entry, Mapping):
            return None
        address = entry.get("address")
        decimals = entry.get("decimals")
        if not is_address(address) or decimals is None:
            logger.warning("Ignoring malformed token map entry for %s on %s", symbol, chain_id)
            return None
        return TokenInfo(symbol, address, int(decimals))

    def resolve(self, chain_id: int, symbol: str) -> TokenInfo:
        sym = str(symbol or "").strip().upper()
        if not sym:
            raise UnknownTokenError("Empty token symbol")
        network = resolve_network(chain_id)
        if sym in NATIVE_SYMBOLS or sym == network.native_symbol:
            return self.native(chain_id)

        token = self._from_override(chain_id, sym) or KNOWN_TOKENS.get(chain_id, {}).get(sym)
        if token is None and self._directory is not None:
            logger.debug("Looking up %s on chain %s in token directory", sym, chain_id)
            token = self._directory.lookup(chain_id, sym)
        if token is None:
            raise UnknownTokenError(f"Unknown token {sym} on {network.name} (chainId={chain_id})")
        return token
