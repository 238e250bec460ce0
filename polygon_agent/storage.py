"""Encrypted, file-backed credential store.

Layout under the store root::

    <root>/.encryption-key          32 random bytes, mode 0600
    <root>/<kind>/<name>.json       one encrypted document per record

Every write replaces the whole document through a temp file and an atomic
rename, so an interrupted process leaves either the old or the new record.
"""

from __future__ import annotations

import json
import logging
import os
import re
import stat
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .encryption import (
    DocumentDecryptionError,
    EncryptedPayload,
    decrypt_document,
    encrypt_document,
    generate_key,
)
from .errors import StoreError, UsageError

logger = logging.getLogger(__name__)

KEY_FILE_NAME = ".encryption-key"
DOCUMENT_VERSION = 1
SECURE_FILE_MODE = 0o600
SECURE_DIR_MODE = 0o700

KIND_WALLETS = "wallets"
KIND_REQUESTS = "requests"
KIND_BUILDER = "builder"
KNOWN_KINDS = frozenset({KIND_WALLETS, KIND_REQUESTS, KIND_BUILDER})

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def validate_name(name: str, *, label: str = "name") -> str:
    if not isinstance(name, str) or not _NAME_PATTERN.match(name):
        raise UsageError(
            f"Invalid {label} {name!r}: use letters, digits, '.', '_' or '-' (max 128 chars)"
        )
    return name


def _is_secure(path: Path, expected_mode: int) -> bool:
    if os.name == "nt":  # pragma: no cover - NTFS uses ACLs
        return True
    return stat.S_IMODE(path.stat().st_mode) == expected_mode


class CredentialStore:
    """Append/read encrypted JSON documents under a fixed root directory."""

    def __init__(self, root: str | Path, *, passphrase: str | None = None) -> None:
        self.root = Path(root).expanduser()
        self._passphrase = passphrase
        self._key: bytes | None = None

    @property
    def key_path(self) -> Path:
        return self.root / KEY_FILE_NAME

    def _ensure_root(self) -> None:
        try:
            self.root.mkdir(mode=SECURE_DIR_MODE, parents=True, exist_ok=True)
            if os.name != "nt":
                os.chmod(self.root, SECURE_DIR_MODE)
        except OSError as exc:
            raise StoreError(f"Cannot create store directory {self.root}: {exc}") from exc

    def _kind_dir(self, kind: str) -> Path:
        if kind not in KNOWN_KINDS:
            raise StoreError(f"Unknown record kind: {kind}")
        return self.root / kind

    def _document_path(self, kind: str, name: str) -> Path:
        return self._kind_dir(kind) / f"{validate_name(name)}.json"

    def _load_key(self, *, create: bool) -> bytes | None:
        if self._key is not None:
            return self._key
        path = self.key_path
        if path.exists():
            if not _is_secure(path, SECURE_FILE_MODE):
                raise StoreError(
                    f"Unsafe permissions on {path}; expected owner-only (0600)",
                    hint=f"Run: chmod 600 {path}",
                )
            key = path.read_bytes()
            if len(key) < 32:
                raise StoreError(f"Key file {path} is truncated")
            self._key = key[:32]
            return self._key
        if not create:
            return None

        self._ensure_root()
        key = generate_key()
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, SECURE_FILE_MODE)
        except FileExistsError:
            # Another process created it first; use theirs.
            return self._load_key(create=False)
        except OSError as exc:
            raise StoreError(f"Cannot create key file {path}: {exc}") from exc
        with os.fdopen(fd, "wb") as handle:
            handle.write(key)
        logger.info("Created store encryption key at %s", path)
        self._key = key
        return key

    @staticmethod
    def _associated_data(kind: str, name: str) -> bytes:
        return f"polygon-agent|{kind}|{name}".encode("utf-8")

    def save(
        self,
        kind: str,
        name: str,
        record: dict[str, Any],
        *,
        expires_at: datetime | None = None,
    ) -> Path:
        """Encrypt ``record`` and atomically replace ``<kind>/<name>.json``."""

        path = self._document_path(kind, name)
        if self._passphrase:
            encrypted = encrypt_document(
                record, passphrase=self._passphrase, associated_data=self._associated_data(kind, name)
            )
        else:
            encrypted = encrypt_document(
                record,
                key=self._load_key(create=True),
                associated_data=self._associated_data(kind, name),
            )

        document: dict[str, Any] = {
            "version": DOCUMENT_VERSION,
            "kind": kind,
            "name": name,
            "updatedAt": isoformat(utcnow()),
            "encrypted": encrypted.to_dict(),
        }
        if expires_at is not None:
            document["expiresAt"] = isoformat(expires_at)

        self._ensure_root()
        try:
            path.parent.mkdir(mode=SECURE_DIR_MODE, parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{name}.", suffix=".tmp", dir=path.parent)
        except OSError as exc:
            raise StoreError(f"Cannot write {path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            if os.name != "nt":
                os.chmod(tmp_path, SECURE_FILE_MODE)
            os.replace(tmp_path, path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise StoreError(f"Cannot write {path}: {exc}") from exc
        logger.debug("Saved %s record %s", kind, name)
        return path

    def read_document(self, kind: str, name: str) -> dict[str, Any] | None:
        """Return the raw (still encrypted) document, or ``None`` when absent."""

        path = self._document_path(kind, name)
        if not path.exists():
            return None
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise StoreError(f"Corrupt record {path}: {exc}") from exc
        if not isinstance(document, dict) or document.get("version") != DOCUMENT_VERSION:
            raise StoreError(f"Unsupported record format in {path}")
        return document

    def load(self, kind: str, name: str) -> dict[str, Any] | None:
        """Decrypt and return the record, or ``None`` when it does not exist."""

        document = self.read_document(kind, name)
        if document is None:
            return None
        try:
            encrypted = EncryptedPayload.from_dict(document.get("encrypted") or {})
            return decrypt_document(
                encrypted,
                key=self._load_key(create=False),
                passphrase=self._passphrase,
                associated_data=self._associated_data(kind, name),
            )
        except DocumentDecryptionError as exc:
            raise StoreError(f"Cannot decrypt {kind}/{name}: {exc}") from exc

    def list(self, kind: str) -> list[str]:
        directory = self._kind_dir(kind)
        if not directory.exists():
            return []
        return sorted(
            path.stem
            for path in directory.glob("*.json")
            if _NAME_PATTERN.match(path.stem)
        )

    def delete(self, kind: str, name: str) -> bool:
        path = self._document_path(kind, name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StoreError(f"Cannot delete {path}: {exc}") from exc
        logger.info("Deleted %s record %s", kind, name)
        return True


__all__ = [
    "CredentialStore",
    "KIND_BUILDER",
    "KIND_REQUESTS",
    "KIND_WALLETS",
    "isoformat",
    "parse_timestamp",
    "utcnow",
    "validate_name",
]
