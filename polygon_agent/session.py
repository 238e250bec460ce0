"""Wallet sessions and their ingestion from a delivered envelope.

A :class:`WalletSession` is the durable record every later command reads.  It is
created only by :func:`ingest_session`, replaced wholesale when the same wallet
name is linked again, and deleted only on explicit removal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional

from .envelope import (
    ExplicitSessionMaterial,
    ImplicitSessionMaterial,
    open_envelope,
    validate_envelope,
)
from .errors import ExpiredRequestError, StoreError, UsageError, WalletNotFoundError
from .handshake import (
    SessionRequest,
    find_request_by_wallet_name,
    load_request,
    mark_consumed,
)
from .networks import resolve_network
from .storage import KIND_WALLETS, CredentialStore, isoformat, parse_timestamp, utcnow, validate_name

logger = logging.getLogger(__name__)


@dataclass
class WalletSession:
    """Delegated session material for one named wallet."""

    wallet_name: str
    wallet_address: str
    chain_id: int
    chain_name: str
    explicit: ExplicitSessionMaterial
    implicit: ImplicitSessionMaterial
    created_at: datetime
    access_key: Optional[str] = None

    @property
    def deadline(self) -> Any:
        return self.explicit.permission_config.get("deadline")

    def summary(self) -> dict[str, Any]:
        return {
            "walletName": self.wallet_name,
            "walletAddress": self.wallet_address,
            "chainId": self.chain_id,
            "chain": self.chain_name,
        }

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            **self.summary(),
            "explicitSession": self.explicit.to_wire(),
            "implicit": self.implicit.to_wire(),
            "createdAt": isoformat(self.created_at),
        }
        if self.access_key:
            record["projectAccessKey"] = self.access_key
        return record

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "WalletSession":
        try:
            return cls(
                wallet_name=str(record["walletName"]),
                wallet_address=str(record["walletAddress"]),
                chain_id=int(record["chainId"]),
                chain_name=str(record["chain"]),
                explicit=ExplicitSessionMaterial.from_wire(record["explicitSession"]),
                implicit=ImplicitSessionMaterial.from_wire(record["implicit"]),
                created_at=parse_timestamp(record["createdAt"]),
                access_key=record.get("projectAccessKey"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise StoreError(f"Malformed wallet session record: {exc}") from exc


class WalletSessionStore:
    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    def save(self, session: WalletSession) -> None:
        self.store.save(KIND_WALLETS, session.wallet_name, session.to_record())

    def load(self, wallet_name: str) -> WalletSession:
        record = self.store.load(KIND_WALLETS, validate_name(wallet_name, label="wallet name"))
        if record is None:
            raise WalletNotFoundError(f"Wallet not found: {wallet_name}")
        return WalletSession.from_record(record)

    def list(self) -> list[str]:
        return self.store.list(KIND_WALLETS)

    def remove(self, wallet_name: str) -> bool:
        return self.store.delete(KIND_WALLETS, validate_name(wallet_name, label="wallet name"))


def _resolve_request(
    store: CredentialStore,
    wallet_name: str | None,
    request_id: str | None,
    now: datetime,
) -> SessionRequest:
    if request_id:
        request = load_request(store, request_id)
        if wallet_name and request.wallet_name != wallet_name:
            raise UsageError(
                f"Request rid={request_id} belongs to wallet {request.wallet_name!r}, not {wallet_name!r}"
            )
        return request
    if not wallet_name:
        raise UsageError("Provide a wallet name or a request id to ingest a session")
    return load_request(store, find_request_by_wallet_name(store, wallet_name, now=now))


def ingest_session(
    store: CredentialStore,
    ciphertext: str,
    wallet_name: str | None = None,
    request_id: str | None = None,
    now: datetime | None = None,
) -> WalletSession:
    """Decrypt, validate and persist a delivered session envelope.

    The request is checked for reuse and expiry before any decryption is
    attempted.  Nothing is written unless every check passes.  The request is
    marked consumed before the session is saved, so a failed write can leave a
    used request behind but never a session whose request is still pending.
    """

    now = now or utcnow()
    request = _resolve_request(store, wallet_name, request_id, now)

    if request.is_consumed:
        raise ExpiredRequestError(
            f"Request rid={request.request_id} was already used at {isoformat(request.consumed_at)}"
        )
    if request.is_expired(now):
        raise ExpiredRequestError(
            f"Request rid={request.request_id} is expired (expiresAt={isoformat(request.expires_at)})"
        )

    envelope = open_envelope(request, ciphertext)
    validate_envelope(envelope, request, now=now)

    network = resolve_network(request.chain)
    session = WalletSession(
        wallet_name=request.wallet_name,
        wallet_address=envelope.wallet_address,
        chain_id=envelope.chain_id,
        chain_name=network.name,
        explicit=envelope.explicit,
        implicit=envelope.implicit,
        created_at=now,
        access_key=request.access_key,
    )
    mark_consumed(store, request, now=now)
    WalletSessionStore(store).save(session)
    logger.info(
        "Ingested wallet session",
        extra={"wallet": session.wallet_name, "chain_id": session.chain_id, "rid": request.request_id},
    )
    return session
