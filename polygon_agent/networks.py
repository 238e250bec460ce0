"""Chain table, chain-name normalisation and unit conversion."""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from .errors import UsageError, ValidationError

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@dataclass(frozen=True)
class Network:
    """Static description of a supported EVM network."""

    chain_id: int
    name: str
    display_name: str
    native_symbol: str
    rpc_url: str
    explorer_url: str
    native_decimals: int = 18
    is_testnet: bool = False

    def explorer_tx_url(self, tx_hash: str) -> str:
        return f"{self.explorer_url}/tx/{tx_hash}"


NETWORKS: dict[int, Network] = {
    network.chain_id: network
    for network in (
        Network(137, "polygon", "Polygon", "POL", "https://polygon-rpc.com", "https://polygonscan.com"),
        Network(
            80002,
            "amoy",
            "Polygon Amoy",
            "POL",
            "https://rpc-amoy.polygon.technology",
            "https://amoy.polygonscan.com",
            is_testnet=True,
        ),
        Network(1, "mainnet", "Ethereum", "ETH", "https://ethereum-rpc.publicnode.com", "https://etherscan.io"),
        Network(8453, "base", "Base", "ETH", "https://base.publicnode.com", "https://basescan.org"),
        Network(
            84532,
            "base-sepolia",
            "Base Sepolia",
            "ETH",
            "https://sepolia.base.org",
            "https://sepolia.basescan.org",
            is_testnet=True,
        ),
        Network(42161, "arbitrum", "Arbitrum One", "ETH", "https://arb1.arbitrum.io/rpc", "https://arbiscan.io"),
        Network(10, "optimism", "OP Mainnet", "ETH", "https://mainnet.optimism.io", "https://optimistic.etherscan.io"),
    )
}

_ALIASES = {
    "matic": "polygon",
    "pol": "polygon",
    "polygon-amoy": "amoy",
    "ethereum": "mainnet",
    "eth": "mainnet",
    "arbitrum-one": "arbitrum",
    "op": "optimism",
}


def normalize_chain(raw: str | int | None) -> str:
    """Return the canonical chain identifier stored on session requests."""

    value = str(raw if raw is not None else "").strip().lower()
    if not value:
        return "polygon"
    return _ALIASES.get(value, value)


def resolve_network(chain_or_id: str | int) -> Network:
    """Resolve a chain name, alias or numeric id to a :class:`Network`."""

    if isinstance(chain_or_id, int) and not isinstance(chain_or_id, bool):
        network = NETWORKS.get(chain_or_id)
        if network is not None:
            return network
    else:
        text = normalize_chain(chain_or_id)
        if text.isdigit():
            network = NETWORKS.get(int(text))
            if network is not None:
                return network
        for network in NETWORKS.values():
            if network.name == text:
                return network
    raise UsageError(
        f"Unknown chain: {chain_or_id}",
        hint="Supported chains: " + ", ".join(sorted(n.name for n in NETWORKS.values())),
    )


def is_address(value: object) -> bool:
    return isinstance(value, str) and bool(ADDRESS_PATTERN.match(value))


def require_address(value: str, *, flag: str) -> str:
    if not is_address(value):
        raise UsageError(f"{flag} must be a 0x-prefixed 20-byte hex address, got {value!r}")
    return value


def parse_amount(raw: str | Decimal, *, flag: str = "amount") -> Decimal:
    """Parse a strictly positive human-readable decimal amount."""

    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise UsageError(f"Invalid {flag}: {raw!r}") from exc
    if not value.is_finite() or value <= 0:
        raise UsageError(f"{flag} must be a positive number, got {raw!r}")
    return value


def parse_units(raw: str | Decimal, decimals: int, *, flag: str = "amount") -> int:
    """Convert a human amount into integer base units, rejecting excess precision."""

    value = parse_amount(raw, flag=flag)
    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise UsageError(f"{flag} {raw} has more than {decimals} decimal places")
    return int(scaled)


def format_units(value: int | str, decimals: int = 18) -> str:
    """Render integer base units as a trimmed decimal string."""

    amount = Decimal(int(value)).scaleb(-decimals)
    text = format(amount, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def coerce_chain_id(value: object) -> int:
    """Return ``value`` as an int chain id or raise :class:`ValidationError`."""

    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"chainId must be numeric, got {value!r}")
    return value
