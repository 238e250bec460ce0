"""Session envelope codec.

The approval surface seals a JSON envelope to the request's public key with an
anonymous-sender sealed box.  This module opens it with the stored key pair and
checks the result against the request before anything is persisted.
"""

from __future__ import annotations

import binascii
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional

from nacl.exceptions import CryptoError
from nacl.public import PrivateKey, PublicKey, SealedBox

from .errors import DecryptionError, ExpiredRequestError, ValidationError
from .handshake import SessionRequest, b64url_decode, b64url_encode
from .networks import coerce_chain_id, is_address, resolve_network
from .storage import isoformat, utcnow

logger = logging.getLogger(__name__)

DECRYPT_FAILURE_MESSAGE = "failed to decrypt: ciphertext does not match this request"


@dataclass
class ExplicitSessionMaterial:
    signing_key: str
    session_address: Optional[str] = None
    permission_config: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {"pk": self.signing_key, "config": self.permission_config}
        if self.session_address:
            data["sessionAddress"] = self.session_address
        return data

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "ExplicitSessionMaterial":
        config = data.get("config")
        return cls(
            signing_key=data.get("pk") or "",
            session_address=data.get("sessionAddress"),
            permission_config=dict(config) if isinstance(config, Mapping) else {},
        )


@dataclass
class ImplicitSessionMaterial:
    signing_key: str
    attestation: Any
    identity_signature: Any
    login_metadata: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "pk": self.signing_key,
            "attestation": self.attestation,
            "identitySignature": self.identity_signature,
        }
        data.update({k: v for k, v in self.login_metadata.items() if v is not None})
        return data

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "ImplicitSessionMaterial":
        return cls(
            signing_key=data.get("pk") or "",
            attestation=data.get("attestation"),
            identity_signature=data.get("identitySignature"),
            login_metadata={
                key: data.get(key) for key in ("guard", "loginMethod", "userEmail")
            },
        )


@dataclass
class SessionEnvelope:
    """Decrypted payload produced by the approval surface."""

    request_id: Optional[str]
    wallet_name: Optional[str]
    wallet_address: Any
    chain_id: Any
    explicit: Optional[ExplicitSessionMaterial]
    implicit: Optional[ImplicitSessionMaterial]

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "walletAddress": self.wallet_address,
            "chainId": self.chain_id,
        }
        if self.request_id:
            data["rid"] = self.request_id
        if self.wallet_name:
            data["walletName"] = self.wallet_name
        if self.explicit is not None:
            data["explicitSession"] = self.explicit.to_wire()
        if self.implicit is not None:
            data["implicit"] = self.implicit.to_wire()
        return data

    @classmethod
    def from_wire(cls, data: Any) -> "SessionEnvelope":
        if not isinstance(data, Mapping):
            raise ValidationError("Session envelope must be a JSON object")
        explicit = data.get("explicitSession")
        implicit = data.get("implicit")
        return cls(
            request_id=data.get("rid") or data.get("requestId"),
            wallet_name=data.get("walletName"),
            wallet_address=data.get("walletAddress"),
            chain_id=data.get("chainId"),
            explicit=ExplicitSessionMaterial.from_wire(explicit) if isinstance(explicit, Mapping) else None,
            implicit=ImplicitSessionMaterial.from_wire(implicit) if isinstance(implicit, Mapping) else None,
        )


def seal_envelope(public_key: str, payload: Mapping[str, Any]) -> str:
    """Seal ``payload`` to a base64url public key, as the approval surface does."""

    box = SealedBox(PublicKey(b64url_decode(public_key)))
    return b64url_encode(box.encrypt(json.dumps(payload).encode("utf-8")))


def open_envelope(request: SessionRequest, ciphertext: str) -> SessionEnvelope:
    """Decrypt ``ciphertext`` with ``request``'s key pair."""

    try:
        sealed = b64url_decode(ciphertext)
        box = SealedBox(PrivateKey(b64url_decode(request.private_key)))
        plaintext = box.decrypt(sealed)
    except (CryptoError, binascii.Error, ValueError, TypeError) as exc:
        logger.debug("Envelope decryption failed", extra={"rid": request.request_id})
        raise DecryptionError(DECRYPT_FAILURE_MESSAGE) from exc

    try:
        data = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise ValidationError("Decrypted envelope is not valid JSON") from exc
    return SessionEnvelope.from_wire(data)


def validate_envelope(
    envelope: SessionEnvelope, request: SessionRequest, now: datetime | None = None
) -> None:
    """Check ``envelope`` against ``request``; raise on the first violation."""

    now = now or utcnow()
    if request.is_expired(now):
        raise ExpiredRequestError(
            f"Request rid={request.request_id} is expired (expiresAt={isoformat(request.expires_at)})"
        )

    if not envelope.wallet_address:
        raise ValidationError("Missing walletAddress in envelope")
    if not is_address(envelope.wallet_address):
        raise ValidationError(f"Malformed walletAddress in envelope: {envelope.wallet_address!r}")

    chain_id = envelope.chain_id
    if chain_id is None or chain_id == "":
        raise ValidationError("Missing chainId in envelope")
    chain_id = coerce_chain_id(chain_id)

    expected = resolve_network(request.chain)
    if chain_id != expected.chain_id:
        raise ValidationError(
            f"Chain mismatch: request chain={request.chain} (chainId={expected.chain_id}) "
            f"but envelope chainId={chain_id}"
        )

    if envelope.explicit is None or not envelope.explicit.signing_key:
        raise ValidationError("Missing explicitSession.pk in envelope")

    implicit = envelope.implicit
    if implicit is None or not implicit.signing_key:
        raise ValidationError("Missing implicit.pk in envelope")
    if not implicit.attestation:
        raise ValidationError("Missing implicit.attestation in envelope")
    if not implicit.identity_signature:
        raise ValidationError("Missing implicit.identitySignature in envelope")

    if envelope.request_id and envelope.request_id != request.request_id:
        raise ValidationError(
            f"Envelope rid={envelope.request_id} does not match request rid={request.request_id}"
        )
