"""Transaction dispatch through a stored wallet session."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Sequence

import requests

from .config import AgentConfig
from .errors import ExpiredSessionError, UsageError, ValidationError
from .fees import FeePreference, HeldTokenSource, resolve_fee_option
from .session import WalletSession, WalletSessionStore
from .storage import utcnow
from .wallet_client import FeeOption, Transaction, WalletClientFactory

logger = logging.getLogger(__name__)


def deadline_seconds(value: Any) -> int:
    """Return a session deadline as unix seconds.

    Deadlines arrive as ints, decimal strings, or the approval surface's
    ``{"_isBigInt": true, "data": "..."}`` wrapper.
    """

    if isinstance(value, dict) and value.get("_isBigInt"):
        value = value.get("data")
    if isinstance(value, bool) or value is None:
        raise ValueError("missing deadline")
    return int(str(value).strip())


def check_session_deadline(session: WalletSession, now: datetime | None = None) -> int:
    now = now or utcnow()
    try:
        deadline = deadline_seconds(session.deadline)
    except ValueError as exc:
        raise ExpiredSessionError(
            f"Session for wallet {session.wallet_name!r} has no usable deadline"
        ) from exc
    if deadline <= int(now.timestamp()):
        raise ExpiredSessionError(
            f"Session for wallet {session.wallet_name!r} expired at {deadline} (unix seconds)"
        )
    return deadline


@dataclass
class DispatchResult:
    wallet_address: str
    chain_id: int
    dry_run: bool
    transactions: Sequence[Transaction] = field(default_factory=tuple)
    tx_hash: Optional[str] = None
    fee_option: Optional[FeeOption] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "walletAddress": self.wallet_address,
            "chainId": self.chain_id,
            "dryRun": self.dry_run,
            "transactions": [tx.to_dict() for tx in self.transactions],
        }
        if not self.dry_run:
            data["txHash"] = self.tx_hash
            data["feeOption"] = self.fee_option.to_dict() if self.fee_option else None
        return data


class TransactionDispatcher:
    """Execute transaction batches with a wallet's delegated session."""

    def __init__(
        self,
        config: AgentConfig,
        sessions: WalletSessionStore,
        wallet_client_factory: WalletClientFactory | None,
        balances: HeldTokenSource | None = None,
        *,
        http_session: requests.Session | None = None,
    ) -> None:
        self.config = config
        self.sessions = sessions
        self.wallet_client_factory = wallet_client_factory
        self.balances = balances
        self.http_session = http_session or requests.Session()

    def execute(
        self,
        wallet_name: str,
        chain_id: int | None,
        transactions: Sequence[Transaction],
        broadcast: bool = False,
        fee_preference: FeePreference | None = None,
        now: datetime | None = None,
    ) -> DispatchResult:
        session = self.sessions.load(wallet_name)
        check_session_deadline(session, now)

        chain_id = session.chain_id if chain_id is None else chain_id
        if chain_id != session.chain_id:
            raise UsageError(
                f"Wallet {wallet_name!r} is linked on chainId={session.chain_id}, not {chain_id}"
            )
        if not transactions:
            raise UsageError("No transactions to dispatch")

        if not broadcast:
            logger.info(
                "Dry run; not broadcasting",
                extra={"wallet": wallet_name, "chain_id": chain_id, "tx_count": len(transactions)},
            )
            return DispatchResult(session.wallet_address, chain_id, True, tuple(transactions))

        if self.wallet_client_factory is None:
            raise UsageError(
                "Broadcasting requires a wallet client",
                hint="Run without --broadcast for a dry run, or embed polygon-agent with a wallet client factory.",
            )
        client = self.wallet_client_factory(session, self.config, self.http_session)
        client.initialize()
        client.connect(
            chain_id,
            session.explicit.permission_config,
            {
                "includeImplicitSession": True,
                "walletAddress": session.wallet_address,
                "explicitSession": session.explicit.to_wire(),
                "implicitSession": session.implicit.to_wire(),
                "projectAccessKey": session.access_key or self.config.access_key,
            },
        )
        reported = client.get_wallet_address()
        if not reported:
            raise ValidationError("Wallet client did not report a wallet address after connect")
        if reported.lower() != session.wallet_address.lower():
            raise ValidationError(
                f"Wallet client reported {reported}, but session {wallet_name!r} is {session.wallet_address}"
            )

        fee_option = resolve_fee_option(
            client,
            chain_id,
            transactions,
            fee_preference or FeePreference(),
            wallet_address=session.wallet_address,
            balances=self.balances,
            workaround_enabled=self.config.fee_options_workaround,
        )
        tx_hash = client.send_transaction(chain_id, transactions, fee_option)
        logger.info("Broadcast transaction", extra={"wallet": wallet_name, "tx_hash": tx_hash})
        return DispatchResult(
            session.wallet_address,
            chain_id,
            False,
            tuple(transactions),
            tx_hash=tx_hash,
            fee_option=fee_option,
        )
