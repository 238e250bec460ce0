"""Fee-option selection for relayed transactions.

Selection runs in tiers:

a. simulation quote from the wallet client, preferring a native-asset option
   when asked to;
b. the relayer's fee-token list, paying a held or default stable asset a fixed
   heuristic amount;
c. the simulation quote again, unconditionally.

The amount used in tier (b) is a rough guess rather than a quote; relayers
refund or reject over/under-payment on their side.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence

from .errors import FeeResolutionError
from .wallet_client import FeeOption, FeeToken, Transaction, WalletClient

logger = logging.getLogger(__name__)

DEFAULT_FEE_SYMBOL = "USDC"


@dataclass(frozen=True)
class FeePreference:
    prefer_native: bool = False
    fee_token: Optional[str] = None

    @property
    def wants_erc20(self) -> bool:
        return bool(self.fee_token) and not self.prefer_native


class HeldTokenSource(Protocol):
    def token_balances(self, address: str, chain_id: int) -> Sequence[Any]:
        ...


def heuristic_fee_value(decimals: int) -> int:
    """Return ``10 ** (decimals - 3)``, i.e. 0.001 of one token."""

    return 10 ** (decimals - 3) if decimals >= 3 else 1


def _describe(options: Sequence[FeeOption]) -> str:
    return json.dumps(
        [
            {
                "symbol": option.token.symbol,
                "tokenAddress": option.token.contract_address,
                "value": str(option.value),
                "gasLimit": option.gas_limit,
            }
            for option in options
        ]
    )


def pick_fee_option(options: Sequence[FeeOption], prefer_native: bool) -> FeeOption:
    if prefer_native:
        for option in options:
            if option.token.is_native:
                return option
    return options[0]


def _held_addresses(
    balances: HeldTokenSource | None, wallet_address: str | None, chain_id: int
) -> set[str]:
    if balances is None or not wallet_address:
        return set()
    try:
        entries = balances.token_balances(wallet_address, chain_id)
    except Exception as exc:  # balance lookups only refine the choice
        logger.debug("Balance lookup for fee selection failed: %s", exc)
        return set()
    held = set()
    for entry in entries:
        address = getattr(entry, "contract_address", None)
        if address and int(getattr(entry, "balance", 0) or 0) > 0:
            held.add(address.lower())
    return held


def choose_fee_token(
    tokens: Sequence[FeeToken], preferred_symbol: str | None, held: set[str]
) -> FeeToken | None:
    erc20 = [token for token in tokens if token.contract_address]
    if not erc20:
        return None
    if preferred_symbol:
        wanted = preferred_symbol.upper()
        for token in erc20:
            if token.symbol.upper() == wanted:
                return token
        logger.debug("Preferred fee token %s not offered by relayer", wanted)
    for token in erc20:
        if token.contract_address.lower() in held:
            return token
    for token in erc20:
        if token.symbol.upper() == DEFAULT_FEE_SYMBOL:
            return token
    return erc20[0]


def _simulate(
    client: WalletClient, chain_id: int, transactions: Sequence[Transaction], prefer_native: bool
) -> FeeOption | None:
    options = list(client.get_fee_options(chain_id, transactions) or [])
    logger.debug("Fee options for chain %s: %s", chain_id, _describe(options))
    if not options:
        return None
    return pick_fee_option(options, prefer_native)


def _forced_from_fee_tokens(
    client: WalletClient,
    chain_id: int,
    preference: FeePreference,
    held: set[str],
) -> FeeOption:
    fee_tokens = client.get_fee_tokens(chain_id)
    if fee_tokens is None or not fee_tokens.payment_address:
        raise LookupError("relayer returned no fee payment address")
    token = choose_fee_token(fee_tokens.tokens, preference.fee_token, held)
    if token is None:
        raise LookupError("relayer offered no ERC-20 fee token")
    option = FeeOption(
        token=token,
        to=fee_tokens.payment_address,
        value=heuristic_fee_value(token.decimals),
        gas_limit=0,
    )
    logger.debug("Forced fee option from fee-token list: %s", _describe([option]))
    return option


def resolve_fee_option(
    client: WalletClient,
    chain_id: int,
    transactions: Sequence[Transaction],
    preference: FeePreference,
    *,
    wallet_address: str | None = None,
    balances: HeldTokenSource | None = None,
    workaround_enabled: bool = True,
) -> FeeOption | None:
    """Return the fee option to pay with, or ``None`` when no fee is required."""

    last_error: Exception | None = None

    if not preference.wants_erc20:
        try:
            return _simulate(client, chain_id, transactions, preference.prefer_native)
        except Exception as exc:
            logger.debug("Fee simulation failed: %s", exc)
            last_error = exc
            if not workaround_enabled:
                raise FeeResolutionError(f"Fee option lookup failed: {exc}") from exc

    try:
        held = _held_addresses(balances, wallet_address, chain_id)
        return _forced_from_fee_tokens(client, chain_id, preference, held)
    except Exception as exc:
        logger.debug("Fee-token fallback failed: %s", exc)
        last_error = exc

    if workaround_enabled or preference.wants_erc20:
        try:
            return _simulate(client, chain_id, transactions, preference.prefer_native)
        except Exception as exc:
            logger.debug("Fee simulation retry failed: %s", exc)
            last_error = exc

    raise FeeResolutionError(
        f"No usable fee option for chain {chain_id}: {last_error}"
    ) from last_error
