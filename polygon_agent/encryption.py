"""At-rest encryption helpers for stored credentials.

Documents are sealed with AES-256-GCM.  The key is normally the random key kept
in the store's key file; when an operator configures a passphrase instead, a
per-document key is derived with scrypt and its salt travels with the document.
"""

from __future__ import annotations

import base64
import json
import logging
import os
from dataclasses import asdict, dataclass
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

logger = logging.getLogger(__name__)

KEY_SIZE = 32
_AESGCM_NONCE_SIZE = 12
_SCRYPT_SALT_SIZE = 16
_SCRYPT_N = 2**14
_SCRYPT_R = 8
_SCRYPT_P = 1

KDF_NONE = "none"
KDF_SCRYPT = "scrypt"


class DocumentDecryptionError(ValueError):
    """Raised when a stored document cannot be authenticated."""


@dataclass
class EncryptedPayload:
    """Representation of serialized encrypted payload data."""

    algorithm: str
    kdf: str
    salt: str | None
    nonce: str
    ciphertext: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EncryptedPayload":
        try:
            return cls(
                algorithm=str(data["algorithm"]),
                kdf=str(data["kdf"]),
                salt=data.get("salt"),
                nonce=str(data["nonce"]),
                ciphertext=str(data["ciphertext"]),
            )
        except (KeyError, TypeError) as exc:
            raise DocumentDecryptionError("Encrypted payload is malformed") from exc


def generate_key() -> bytes:
    """Return fresh random key material for the store key file."""

    return AESGCM.generate_key(bit_length=KEY_SIZE * 8)


def derive_key_from_passphrase(passphrase: str, salt: bytes | None = None) -> tuple[bytes, bytes]:
    """Derive a symmetric key using scrypt."""

    if salt is None:
        salt = os.urandom(_SCRYPT_SALT_SIZE)
    kdf = Scrypt(salt=salt, length=KEY_SIZE, n=_SCRYPT_N, r=_SCRYPT_R, p=_SCRYPT_P)
    key = kdf.derive(passphrase.encode("utf-8"))
    logger.debug("Derived document key using scrypt")
    return key, salt


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"))


def encrypt_document(
    payload: dict[str, Any],
    *,
    key: bytes | None = None,
    passphrase: str | None = None,
    associated_data: bytes | None = None,
) -> EncryptedPayload:
    """Encrypt ``payload`` with a raw key or a passphrase (exactly one)."""

    if (key is None) == (passphrase is None):
        raise ValueError("Provide exactly one of key or passphrase")

    salt: bytes | None = None
    if passphrase is not None:
        key, salt = derive_key_from_passphrase(passphrase)
    plaintext = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    nonce = os.urandom(_AESGCM_NONCE_SIZE)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, associated_data)
    return EncryptedPayload(
        algorithm="aes-256-gcm",
        kdf=KDF_SCRYPT if salt is not None else KDF_NONE,
        salt=_b64(salt) if salt is not None else None,
        nonce=_b64(nonce),
        ciphertext=_b64(ciphertext),
    )


def decrypt_document(
    encrypted: EncryptedPayload,
    *,
    key: bytes | None = None,
    passphrase: str | None = None,
    associated_data: bytes | None = None,
) -> dict[str, Any]:
    """Decrypt an :class:`EncryptedPayload` produced by :func:`encrypt_document`."""

    if encrypted.kdf == KDF_SCRYPT:
        if passphrase is None or not encrypted.salt:
            raise DocumentDecryptionError(
                "Document was sealed with a passphrase; configure the store passphrase to read it"
            )
        key, _ = derive_key_from_passphrase(passphrase, salt=_unb64(encrypted.salt))
    elif key is None:
        raise DocumentDecryptionError("Document was sealed with the store key file; no key available")

    try:
        plaintext = AESGCM(key).decrypt(
            _unb64(encrypted.nonce), _unb64(encrypted.ciphertext), associated_data
        )
    except (InvalidTag, ValueError) as exc:
        raise DocumentDecryptionError("Failed to decrypt document; wrong key or tampered data") from exc
    return json.loads(plaintext.decode("utf-8"))
