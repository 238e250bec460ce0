"""Transaction builders for the wallet operations exposed by the CLI.

Builders are pure: they turn validated inputs into :class:`Transaction`
batches and leave signing and relaying to the dispatcher.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Protocol

from .errors import UsageError
from .networks import require_address
from .permissions import IDENTITY_REGISTRY, REPUTATION_REGISTRY, VALUE_FORWARDER
from .tokens import TokenInfo
from .wallet_client import Transaction

FORWARD_VALUE_SELECTOR = "0x98f850f1"
ERC20_TRANSFER_SELECTOR = "0xa9059cbb"
DEFAULT_SLIPPAGE = Decimal("0.005")

REGISTRIES = {
    "identity": IDENTITY_REGISTRY,
    "reputation": REPUTATION_REGISTRY,
}

_HEX_DATA = re.compile(r"^0x([0-9a-fA-F]{2})*$")


def _word(value: int | str) -> str:
    if isinstance(value, str):
        return value.lower().removeprefix("0x").rjust(64, "0")
    if value < 0 or value >= 2**256:
        raise UsageError(f"Value {value} does not fit in uint256")
    return format(value, "064x")


def encode_address_amount_call(selector: str, address: str, amount: int) -> str:
    """ABI-encode a ``(address, uint256)`` call with a 4-byte selector."""

    return selector + _word(address) + _word(amount)


def native_send_transactions(to: str, value: int, *, direct: bool = False) -> list[Transaction]:
    """Native transfer, routed through the value forwarder unless ``direct``.

    Explicit sessions grant the forwarder contract, so forwarding works with
    the default permissions while a direct transfer needs a wider grant.
    """

    require_address(to, flag="--to")
    if direct:
        return [Transaction(to=to, value=value, data="0x")]
    data = encode_address_amount_call(FORWARD_VALUE_SELECTOR, to, value)
    return [Transaction(to=VALUE_FORWARDER, value=value, data=data)]


def erc20_transfer_transactions(token: TokenInfo, to: str, value: int) -> list[Transaction]:
    require_address(to, flag="--to")
    require_address(token.address, flag="--token")
    if token.is_native:
        raise UsageError(f"{token.symbol} is the native asset; use 'send' without --symbol")
    data = encode_address_amount_call(ERC20_TRANSFER_SELECTOR, to, value)
    return [Transaction(to=token.address, value=0, data=data)]


def registry_call_transactions(registry: str, data: str, value: int = 0) -> list[Transaction]:
    """Raw call into one of the agent registries with pre-encoded calldata."""

    target = REGISTRIES.get(registry.lower()) if not registry.startswith("0x") else registry
    if target is None:
        raise UsageError(
            f"Unknown registry {registry!r}; use one of: {', '.join(sorted(REGISTRIES))}"
        )
    if target.lower() not in {address.lower() for address in REGISTRIES.values()}:
        raise UsageError(f"{target} is not a known registry contract")
    if not _HEX_DATA.match(data or "") or len(data) < 10:
        raise UsageError("--data must be 0x-prefixed calldata with at least a 4-byte selector")
    return [Transaction(to=target, value=value, data=data.lower())]


def parse_slippage(raw: str | None) -> Decimal:
    if raw is None:
        return DEFAULT_SLIPPAGE
    try:
        slippage = Decimal(str(raw))
    except InvalidOperation as exc:
        raise UsageError(f"Invalid --slippage {raw!r}") from exc
    if not slippage.is_finite() or slippage <= 0 or slippage >= Decimal("0.5"):
        raise UsageError("Invalid --slippage (must be between 0 and 0.5)")
    return slippage


@dataclass
class SwapQuote:
    intent_id: str
    deposit_transaction: Transaction
    raw: Mapping[str, Any] = field(default_factory=dict)


class SwapQuoteSource(Protocol):
    """DEX-aggregation collaborator that prices and settles swap intents."""

    def quote(
        self,
        owner: str,
        chain_id: int,
        from_token: TokenInfo,
        to_token: TokenInfo,
        amount: int,
        slippage: Decimal,
    ) -> SwapQuote:
        ...

    def execute(self, intent_id: str, deposit_tx_hash: str) -> Mapping[str, Any]:
        ...


def prepare_swap(
    quotes: SwapQuoteSource,
    owner: str,
    chain_id: int,
    from_token: TokenInfo,
    to_token: TokenInfo,
    amount: int,
    slippage: Decimal,
) -> SwapQuote:
    if from_token.address.lower() == to_token.address.lower():
        raise UsageError("from and to token must be different")
    quote = quotes.quote(owner, chain_id, from_token, to_token, amount, slippage)
    if not quote.intent_id:
        raise UsageError("Swap quote source returned no intent id")
    require_address(quote.deposit_transaction.to, flag="deposit transaction target")
    return quote
