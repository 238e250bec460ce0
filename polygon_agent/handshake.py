"""Session request registry for the wallet-linking handshake.

Each request owns a fresh X25519 key pair used exactly once: the public half
travels in the approval URL, the approval surface seals the session envelope to
it, and the private half never leaves the encrypted credential store.
"""

from __future__ import annotations

import base64
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional
from urllib.parse import urlencode

from nacl.public import PrivateKey

from .config import AgentConfig
from .errors import AmbiguousRequestError, RequestNotFoundError, StoreError
from .networks import normalize_chain
from .storage import (
    KIND_REQUESTS,
    CredentialStore,
    isoformat,
    parse_timestamp,
    utcnow,
    validate_name,
)

logger = logging.getLogger(__name__)

REQUEST_TTL = timedelta(hours=2)


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(text: str) -> bytes:
    text = text.strip()
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


@dataclass
class SessionRequest:
    """A pending handshake request and its one-time key pair."""

    request_id: str
    wallet_name: str
    chain: str
    created_at: datetime
    expires_at: datetime
    public_key: str
    private_key: str
    access_key: Optional[str] = None
    consumed_at: Optional[datetime] = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    @property
    def is_consumed(self) -> bool:
        return self.consumed_at is not None

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "rid": self.request_id,
            "walletName": self.wallet_name,
            "chain": self.chain,
            "createdAt": isoformat(self.created_at),
            "expiresAt": isoformat(self.expires_at),
            "publicKeyB64u": self.public_key,
            "privateKeyB64u": self.private_key,
        }
        if self.access_key:
            record["projectAccessKey"] = self.access_key
        if self.consumed_at is not None:
            record["consumedAt"] = isoformat(self.consumed_at)
        return record

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "SessionRequest":
        try:
            consumed = record.get("consumedAt")
            return cls(
                request_id=str(record["rid"]),
                wallet_name=str(record["walletName"]),
                chain=str(record["chain"]),
                created_at=parse_timestamp(record["createdAt"]),
                expires_at=parse_timestamp(record["expiresAt"]),
                public_key=str(record["publicKeyB64u"]),
                private_key=str(record["privateKeyB64u"]),
                access_key=record.get("projectAccessKey"),
                consumed_at=parse_timestamp(consumed) if consumed else None,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise StoreError(f"Malformed session request record: {exc}") from exc

    def public_view(self) -> dict[str, Any]:
        """Fields safe to print; the private key is never included."""

        return {
            "rid": self.request_id,
            "walletName": self.wallet_name,
            "chain": self.chain,
            "createdAt": isoformat(self.created_at),
            "expiresAt": isoformat(self.expires_at),
            "publicKey": self.public_key,
        }


def create_request(
    store: CredentialStore,
    wallet_name: str,
    chain: str | None,
    access_key: str | None = None,
    now: datetime | None = None,
) -> SessionRequest:
    """Create and persist a new pending request with a fresh key pair."""

    validate_name(wallet_name, label="wallet name")
    created_at = now or utcnow()
    private_key = PrivateKey.generate()
    request = SessionRequest(
        request_id=secrets.token_hex(16),
        wallet_name=wallet_name,
        chain=normalize_chain(chain),
        created_at=created_at,
        expires_at=created_at + REQUEST_TTL,
        public_key=b64url_encode(bytes(private_key.public_key)),
        private_key=b64url_encode(bytes(private_key)),
        access_key=access_key,
    )
    store.save(KIND_REQUESTS, request.request_id, request.to_record(), expires_at=request.expires_at)
    logger.info(
        "Created session request",
        extra={"rid": request.request_id, "wallet": wallet_name, "chain": request.chain},
    )
    return request


def load_request(store: CredentialStore, request_id: str) -> SessionRequest:
    record = store.load(KIND_REQUESTS, validate_name(request_id, label="request id"))
    if record is None:
        raise RequestNotFoundError(f"Request not found: {request_id}")
    return SessionRequest.from_record(record)


def find_request_by_wallet_name(
    store: CredentialStore, wallet_name: str, now: datetime | None = None
) -> str:
    """Return the id of the request to ingest for ``wallet_name``.

    A single pending match wins; more than one pending match is an
    :class:`AmbiguousRequestError` rather than a silent pick.  Without a
    pending match the newest expired or consumed request is returned so the
    caller reports why it cannot be used.  Unreadable records are skipped.
    """

    now = now or utcnow()
    known = store.list(KIND_REQUESTS)
    pending: list[str] = []
    inactive: list[SessionRequest] = []
    for request_id in known:
        try:
            request = load_request(store, request_id)
        except StoreError as exc:
            logger.debug("Skipping unreadable request %s: %s", request_id, exc)
            continue
        if request.wallet_name != wallet_name:
            continue
        if request.is_consumed or request.is_expired(now):
            inactive.append(request)
            continue
        pending.append(request_id)

    if len(pending) > 1:
        raise AmbiguousRequestError(
            f"{len(pending)} pending requests for wallet {wallet_name!r}: {', '.join(pending)}"
        )
    if pending:
        return pending[0]
    if inactive:
        newest = max(inactive, key=lambda request: request.created_at)
        logger.debug("No pending request for %s; falling back to %s", wallet_name, newest.request_id)
        return newest.request_id
    available = ", ".join(known) if known else "none"
    raise RequestNotFoundError(
        f"No pending request for wallet {wallet_name!r} (available: {available})"
    )


def mark_consumed(
    store: CredentialStore, request: SessionRequest, now: datetime | None = None
) -> SessionRequest:
    request.consumed_at = now or utcnow()
    store.save(KIND_REQUESTS, request.request_id, request.to_record(), expires_at=request.expires_at)
    logger.info("Marked request consumed", extra={"rid": request.request_id})
    return request


def build_approval_url(
    config: AgentConfig,
    request: SessionRequest,
    permission_params: Mapping[str, str],
    callback_url: str | None = None,
) -> str:
    """Return the connector URL the user opens to approve ``request``."""

    connector = config.require("connector_url")
    query: dict[str, str] = {
        "rid": request.request_id,
        "wallet": request.wallet_name,
        "pub": request.public_key,
        "chain": request.chain,
    }
    if request.access_key:
        query["accessKey"] = request.access_key
    if config.dapp_origin:
        query["origin"] = config.dapp_origin
    if callback_url:
        query["callbackUrl"] = callback_url
    for key, value in permission_params.items():
        query.setdefault(key, value)
    return f"{connector}/link?{urlencode(query)}"
