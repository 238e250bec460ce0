"""Spending permissions requested for an explicit session.

:func:`build_permission_params` turns CLI flags into the query parameters
embedded in the approval URL.  :func:`expand_permission_rules` is the other side
of that contract: it reproduces the rule set the approval surface derives from
those parameters, so previews and tests can reason about the resulting session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping, Sequence

from .errors import UsageError
from .networks import is_address, parse_amount, parse_units, resolve_network
from .tokens import USDC_E_POLYGON, TokenResolver

logger = logging.getLogger(__name__)

DEFAULT_USDC_LIMIT = "50"
DEFAULT_NATIVE_LIMIT = Decimal(2)
SESSION_DEADLINE_SECONDS = 24 * 60 * 60

VALUE_FORWARDER = "0xABAAd93EeE2a569cF0632f39B10A9f5D734777ca"
IDENTITY_REGISTRY = "0x8004A169FB4a3325136EB29fA0ceB6D2e539a432"
REPUTATION_REGISTRY = "0x8004BAa17C55a88189AE136b182e5fdA19dE9b63"
REGISTRY_CONTRACTS = (IDENTITY_REGISTRY, REPUTATION_REGISTRY)

ERC20_TRANSFER = "function transfer(address to, uint256 value)"

OP_EQUAL = "EQUAL"
OP_LESS_THAN_OR_EQUAL = "LESS_THAN_OR_EQUAL"


@dataclass
class PermissionFlags:
    """CLI flags that shape the requested spending envelope."""

    native_limit: str | None = None
    usdc_limit: str | None = None
    usdt_limit: str | None = None
    token_limits: Sequence[str] = ()
    usdc_to: str | None = None
    usdc_amount: str | None = None
    contracts: Sequence[str] = ()


@dataclass(frozen=True)
class ParameterConstraint:
    function: str
    parameter: str
    operation: str
    value: str

    def to_dict(self) -> dict[str, str]:
        return {
            "function": self.function,
            "parameter": self.parameter,
            "operation": self.operation,
            "value": self.value,
        }


@dataclass(frozen=True)
class PermissionRule:
    target: str
    constraints: tuple[ParameterConstraint, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"target": self.target, "rules": [c.to_dict() for c in self.constraints]}


@dataclass
class PermissionPlan:
    """Rule set plus native ceiling and lifetime for one explicit session."""

    native_value_limit: int
    deadline_seconds: int
    rules: list[PermissionRule] = field(default_factory=list)

    def to_session_config(self, chain_id: int, now: datetime) -> dict[str, Any]:
        return {
            "chainId": chain_id,
            "valueLimit": str(self.native_value_limit),
            "deadline": int(now.timestamp()) + self.deadline_seconds,
            "permissions": [rule.to_dict() for rule in self.rules],
        }


def _normalize_amount(raw: str, *, flag: str) -> str:
    value = parse_amount(raw, flag=flag)
    text = format(value.normalize(), "f")
    return text


def _parse_token_limit(entry: str) -> tuple[str, str]:
    symbol, sep, amount = entry.partition(":")
    symbol = symbol.strip().upper()
    amount = amount.strip()
    if not sep or not symbol or not amount:
        raise UsageError(f"Invalid --token-limit {entry!r}; expected SYMBOL:amount")
    return symbol, _normalize_amount(amount, flag=f"--token-limit {symbol}")


def merge_contracts(user_contracts: Iterable[str]) -> list[str]:
    """Union registry contracts with user addresses, collapsing case duplicates."""

    merged: dict[str, str] = {}
    for address in [*REGISTRY_CONTRACTS, *user_contracts]:
        address = address.strip()
        if not is_address(address):
            raise UsageError(f"Invalid --contract address: {address!r}")
        merged.setdefault(address.lower(), address)
    return [merged[key] for key in sorted(merged)]


def build_permission_params(flags: PermissionFlags) -> dict[str, str]:
    """Return approval-URL query parameters for ``flags``.

    The result depends only on the flags: identical input yields an equal
    mapping, with list-valued parameters sorted.
    """

    if (flags.usdc_to is None) != (flags.usdc_amount is None):
        raise UsageError("--usdc-to and --usdc-amount must be supplied together")

    params: dict[str, str] = {}
    if flags.usdc_to is not None and flags.usdc_amount is not None:
        if not is_address(flags.usdc_to):
            raise UsageError(f"Invalid --usdc-to address: {flags.usdc_to!r}")
        params["erc20"] = "USDC"
        params["erc20To"] = flags.usdc_to
        params["erc20Amount"] = _normalize_amount(flags.usdc_amount, flag="--usdc-amount")

    if flags.native_limit is not None:
        params["nativeLimit"] = _normalize_amount(flags.native_limit, flag="--native-limit")
    params["usdcLimit"] = _normalize_amount(
        flags.usdc_limit if flags.usdc_limit is not None else DEFAULT_USDC_LIMIT,
        flag="--usdc-limit",
    )
    if flags.usdt_limit is not None:
        params["usdtLimit"] = _normalize_amount(flags.usdt_limit, flag="--usdt-limit")

    if flags.token_limits:
        limits: dict[str, str] = {}
        for entry in flags.token_limits:
            symbol, amount = _parse_token_limit(entry)
            limits[symbol] = amount
        params["tokenLimits"] = ",".join(f"{sym}:{limits[sym]}" for sym in sorted(limits))

    params["contracts"] = ",".join(merge_contracts(flags.contracts))
    return params


def _transfer_rule(
    token: str, limit: int, recipient: str | None = None
) -> PermissionRule:
    constraints = [
        ParameterConstraint(ERC20_TRANSFER, "value", OP_LESS_THAN_OR_EQUAL, str(limit)),
    ]
    if recipient is not None:
        constraints.append(ParameterConstraint(ERC20_TRANSFER, "to", OP_EQUAL, recipient))
    return PermissionRule(token, tuple(constraints))


def fee_permission_rules(fee_tokens: Mapping[str, Any] | None) -> list[PermissionRule]:
    """Pre-approve ERC-20 fee payments to the relayer's payment address."""

    if not fee_tokens or not fee_tokens.get("paymentAddress"):
        return []
    payment_address = fee_tokens["paymentAddress"]
    rules = []
    for token in fee_tokens.get("tokens") or []:
        address = token.get("contractAddress")
        if not address:
            continue
        decimals = token.get("decimals") if isinstance(token.get("decimals"), int) else 6
        limit = 10**17 if decimals == 18 else 50 * 10**decimals
        rules.append(_transfer_rule(address, limit, payment_address))
    return rules


def expand_permission_rules(
    params: Mapping[str, str],
    chain_id: int,
    resolver: TokenResolver,
    *,
    fee_tokens: Mapping[str, Any] | None = None,
) -> PermissionPlan:
    """Derive the session's rule set from approval-URL parameters."""

    network = resolve_network(chain_id)
    rules: list[PermissionRule] = [PermissionRule(VALUE_FORWARDER)]

    for address in (params.get("contracts") or "").split(","):
        address = address.strip()
        if is_address(address):
            rules.append(PermissionRule(address))

    erc20, erc20_to, erc20_amount = params.get("erc20"), params.get("erc20To"), params.get("erc20Amount")
    if erc20 and erc20_to and erc20_amount:
        token = resolver.resolve(chain_id, erc20) if not is_address(erc20) else None
        target = token.address if token else erc20
        decimals = token.decimals if token else 18
        rules.append(_transfer_rule(target, parse_units(erc20_amount, decimals), erc20_to))

    usdc_limit = params.get("usdcLimit")
    if usdc_limit:
        usdc = resolver.resolve(chain_id, "USDC")
        limit = parse_units(usdc_limit, usdc.decimals, flag="usdcLimit")
        rules.append(_transfer_rule(usdc.address, limit))
        if chain_id == 137:
            rules.append(_transfer_rule(USDC_E_POLYGON, limit))
    usdt_limit = params.get("usdtLimit")
    if usdt_limit:
        usdt = resolver.resolve(chain_id, "USDT")
        rules.append(_transfer_rule(usdt.address, parse_units(usdt_limit, usdt.decimals, flag="usdtLimit")))

    for entry in filter(None, (params.get("tokenLimits") or "").split(",")):
        symbol, amount = _parse_token_limit(entry)
        token = resolver.resolve(chain_id, symbol)
        rules.append(_transfer_rule(token.address, parse_units(amount, token.decimals, flag=symbol)))

    rules.extend(fee_permission_rules(fee_tokens))

    native_raw = params.get("nativeLimit") or params.get("polLimit")
    native_limit = parse_units(
        native_raw if native_raw else DEFAULT_NATIVE_LIMIT, network.native_decimals, flag="nativeLimit"
    )
    logger.debug(
        "Expanded %d permission rules", len(rules), extra={"chain_id": chain_id}
    )
    return PermissionPlan(
        native_value_limit=native_limit,
        deadline_seconds=SESSION_DEADLINE_SECONDS,
        rules=rules,
    )


def describe_permissions(params: Mapping[str, str]) -> dict[str, Any]:
    """Human-oriented summary of requested limits for CLI previews."""

    preview: dict[str, Any] = {
        "nativeLimit": params.get("nativeLimit") or format(DEFAULT_NATIVE_LIMIT, "f"),
        "usdcLimit": params.get("usdcLimit"),
        "contracts": [c for c in (params.get("contracts") or "").split(",") if c],
    }
    if params.get("usdtLimit"):
        preview["usdtLimit"] = params["usdtLimit"]
    if params.get("tokenLimits"):
        preview["tokenLimits"] = dict(
            entry.split(":", 1) for entry in params["tokenLimits"].split(",")
        )
    if params.get("erc20To"):
        preview["oneOffTransfer"] = {
            "token": params.get("erc20"),
            "to": params["erc20To"],
            "amount": params.get("erc20Amount"),
        }
    return preview
