"""Builder identity: a local EOA registered with the builder API.

``setup_builder`` generates a fresh key, proves ownership of it with a signed
ETHAuth proof, exchanges the proof for a JWT, creates a project and fetches the
project's default access key.  Everything is stored encrypted under the
``builder`` kind; ``wallet create`` falls back to the stored access key.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional

import requests
from eth_account import Account
from eth_account.messages import encode_typed_data
from requests import RequestException, Response

from .config import DEFAULT_BUILDER_API_URL
from .errors import StoreError, TransportError, UsageError
from .handshake import b64url_encode
from .storage import KIND_BUILDER, CredentialStore, isoformat, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

BUILDER_RECORD = "default"

ETHAUTH_PREFIX = "eth"
ETHAUTH_APP = "sequence-builder"
ETHAUTH_VERSION = "1"
ETHAUTH_TTL = 3600

# Field order is part of the EIP-712 type hash.
_CLAIM_FIELDS = (
    ("app", "string"),
    ("iat", "int64"),
    ("exp", "int64"),
    ("n", "uint64"),
    ("typ", "string"),
    ("ogn", "string"),
    ("v", "string"),
)


def _hex(value: bytes) -> str:
    text = value.hex()
    return text if text.startswith("0x") else "0x" + text


def ethauth_typed_data(claims: Mapping[str, Any]) -> dict[str, Any]:
    """EIP-712 payload for ``claims``; absent or empty claims are left out."""

    fields = [(name, kind) for name, kind in _CLAIM_FIELDS if claims.get(name)]
    return {
        "types": {
            "EIP712Domain": [
                {"name": "name", "type": "string"},
                {"name": "version", "type": "string"},
            ],
            "Claims": [{"name": name, "type": kind} for name, kind in fields],
        },
        "primaryType": "Claims",
        "domain": {"name": "ETHAuth", "version": ETHAUTH_VERSION},
        "message": {name: claims[name] for name, _ in fields},
    }


def generate_ethauth_proof(
    private_key: str, now: datetime | None = None, ttl: int = ETHAUTH_TTL
) -> str:
    """Return ``eth.<address>.<claims>.<signature>`` signed by ``private_key``."""

    if not private_key.startswith("0x"):
        private_key = "0x" + private_key
    account = Account.from_key(private_key)

    issued = int((now or utcnow()).timestamp())
    claims = {"app": ETHAUTH_APP, "iat": issued, "exp": issued + ttl, "v": ETHAUTH_VERSION}
    signed = account.sign_message(encode_typed_data(full_message=ethauth_typed_data(claims)))

    encoded_claims = b64url_encode(json.dumps(claims, separators=(",", ":")).encode("utf-8"))
    return ".".join(
        (ETHAUTH_PREFIX, account.address.lower(), encoded_claims, _hex(signed.signature))
    )


@dataclass
class BuilderIdentity:
    """Stored builder credentials.

    A record written by ``builder save`` carries only the access key; one
    written by :func:`setup_builder` also holds the EOA and project.
    """

    access_key: str
    private_key: Optional[str] = field(default=None, repr=False)
    eoa_address: Optional[str] = None
    project_id: Any = None
    project_name: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {"accessKey": self.access_key}
        if self.private_key:
            record["privateKey"] = self.private_key
        record.update(self.public_view())
        if self.created_at is not None:
            record["createdAt"] = isoformat(self.created_at)
        return record

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "BuilderIdentity":
        try:
            created = record.get("createdAt") or record.get("savedAt")
            return cls(
                access_key=str(record["accessKey"]),
                private_key=record.get("privateKey"),
                eoa_address=record.get("eoaAddress"),
                project_id=record.get("projectId"),
                project_name=record.get("projectName"),
                created_at=parse_timestamp(created) if created else None,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise StoreError(f"Malformed builder record: {exc}") from exc

    def public_view(self) -> dict[str, Any]:
        view: dict[str, Any] = {"accessKey": self.access_key}
        if self.eoa_address:
            view["eoaAddress"] = self.eoa_address
        if self.project_id is not None:
            view["projectId"] = self.project_id
        if self.project_name:
            view["projectName"] = self.project_name
        return view


def load_builder(store: CredentialStore) -> BuilderIdentity | None:
    record = store.load(KIND_BUILDER, BUILDER_RECORD)
    return BuilderIdentity.from_record(record) if record is not None else None


def save_builder(store: CredentialStore, identity: BuilderIdentity) -> None:
    store.save(KIND_BUILDER, BUILDER_RECORD, identity.to_record())


class BuilderClient:
    """Client for the builder API's JSON RPC endpoints."""

    def __init__(
        self,
        api_url: str = DEFAULT_BUILDER_API_URL,
        *,
        session: requests.Session | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self._session = session or requests.Session()
        self._timeout = timeout

    def _post(self, method: str, payload: dict[str, Any], jwt: str | None = None) -> dict[str, Any]:
        url = f"{self.api_url}/rpc/{method}"
        headers = {"content-type": "application/json"}
        if jwt:
            headers["Authorization"] = f"Bearer {jwt}"
        try:
            response = self._session.post(
                url, data=json.dumps(payload), headers=headers, timeout=self._timeout
            )
        except RequestException as exc:
            logger.error("Request to %s failed: %s", url, exc)
            raise TransportError(f"{method} failed: {exc}") from exc
        self._raise_for_status(response, method)
        try:
            data = response.json()
        except ValueError as exc:
            logger.debug("Malformed JSON from %s: %s", url, response.text, exc_info=True)
            raise TransportError(f"{method} returned malformed JSON") from exc
        if not isinstance(data, dict):
            raise TransportError(f"{method} returned an invalid response")
        return data

    def _raise_for_status(self, response: Response, method: str) -> None:
        if response.ok:
            return
        logger.error("HTTP error %s from %s", response.status_code, response.url)
        logger.debug("Error body: %s", response.text)
        raise TransportError(f"{method} failed: {response.status_code} {response.text[:200]}")

    def get_auth_token(self, proof: str) -> str:
        data = self._post("Builder/GetAuthToken", {"ethauthProof": proof})
        token = (data.get("auth") or {}).get("jwtToken")
        if not data.get("ok") or not token:
            raise TransportError("GetAuthToken returned an invalid response")
        return token

    def create_project(self, name: str, jwt: str) -> dict[str, Any]:
        project = self._post("Builder/CreateProject", {"name": name}, jwt).get("project")
        if not isinstance(project, dict) or project.get("id") is None:
            raise TransportError("CreateProject returned an invalid response")
        return project

    def get_default_access_key(self, project_id: Any, jwt: str) -> str:
        data = self._post("QuotaControl/GetDefaultAccessKey", {"projectID": project_id}, jwt)
        access_key = (data.get("accessKey") or {}).get("accessKey")
        if not access_key:
            raise TransportError("GetDefaultAccessKey returned an invalid response")
        return access_key


def setup_builder(
    store: CredentialStore,
    client: BuilderClient,
    name: str,
    *,
    force: bool = False,
    now: datetime | None = None,
) -> tuple[BuilderIdentity, bool]:
    """Create and store a builder identity; returns ``(identity, created)``.

    An existing identity is returned untouched unless ``force`` is set.
    """

    if not name or not name.strip():
        raise UsageError("Missing project name", hint="Pass --name <project>.")
    existing = load_builder(store)
    if existing is not None and not force:
        logger.info("Builder identity already configured")
        return existing, False

    now = now or utcnow()
    account = Account.create()
    private_key = _hex(account.key)
    jwt = client.get_auth_token(generate_ethauth_proof(private_key, now=now))
    project = client.create_project(name.strip(), jwt)
    access_key = client.get_default_access_key(project["id"], jwt)

    identity = BuilderIdentity(
        access_key=access_key,
        private_key=private_key,
        eoa_address=account.address,
        project_id=project["id"],
        project_name=project.get("name") or name.strip(),
        created_at=now,
    )
    save_builder(store, identity)
    logger.info(
        "Configured builder identity",
        extra={"eoa": identity.eoa_address, "project_id": identity.project_id},
    )
    return identity, True
