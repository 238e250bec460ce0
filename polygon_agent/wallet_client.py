"""Boundary with the smart-contract wallet runtime.

The runtime signs, relays and quotes fees; polygon-agent only orchestrates it.
Implementations are supplied through a factory so commands never import a
particular SDK.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Mapping, Optional, Protocol, Sequence

import requests

if TYPE_CHECKING:  # pragma: no cover
    from .config import AgentConfig
    from .session import WalletSession


@dataclass(frozen=True)
class Transaction:
    to: str
    value: int = 0
    data: str = "0x"

    def to_dict(self) -> dict[str, Any]:
        return {"to": self.to, "value": str(self.value), "data": self.data}


@dataclass(frozen=True)
class FeeToken:
    symbol: str
    contract_address: Optional[str] = None
    decimals: int = 18

    @property
    def is_native(self) -> bool:
        return not self.contract_address


@dataclass(frozen=True)
class FeeOption:
    """Asset and amount a relayer accepts for executing a transaction batch."""

    token: FeeToken
    to: str
    value: int
    gas_limit: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": {
                "symbol": self.token.symbol,
                "contractAddress": self.token.contract_address,
                "decimals": self.token.decimals,
            },
            "to": self.to,
            "value": str(self.value),
            "gasLimit": self.gas_limit,
        }


@dataclass(frozen=True)
class FeeTokens:
    payment_address: str
    tokens: Sequence[FeeToken] = field(default_factory=tuple)


class WalletClient(Protocol):
    def initialize(self) -> None:
        ...

    def connect(self, chain_id: int, session_config: Mapping[str, Any], options: Mapping[str, Any]) -> None:
        ...

    def get_wallet_address(self) -> Optional[str]:
        ...

    def get_fee_options(self, chain_id: int, transactions: Sequence[Transaction]) -> Sequence[FeeOption]:
        ...

    def get_fee_tokens(self, chain_id: int) -> FeeTokens:
        ...

    def send_transaction(
        self, chain_id: int, transactions: Sequence[Transaction], fee_option: Optional[FeeOption]
    ) -> str:
        ...


WalletClientFactory = Callable[["WalletSession", "AgentConfig", requests.Session], WalletClient]
