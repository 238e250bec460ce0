"""Delegated session wallets for command-line agents."""

from .callback import CallbackPayload, CallbackServer, read_ciphertext_argument
from .config import AgentConfig, ConfigurationError, load_config
from .dispatcher import DispatchResult, TransactionDispatcher
from .envelope import SessionEnvelope, open_envelope, seal_envelope, validate_envelope
from .errors import (
    AgentError,
    AmbiguousRequestError,
    DecryptionError,
    ExpiredRequestError,
    ExpiredSessionError,
    FeeResolutionError,
    RequestNotFoundError,
    StoreError,
    TransportError,
    UnknownTokenError,
    UsageError,
    ValidationError,
    WalletNotFoundError,
)
from .fees import FeePreference, resolve_fee_option
from .handshake import (
    SessionRequest,
    build_approval_url,
    create_request,
    find_request_by_wallet_name,
    load_request,
)
from .permissions import PermissionFlags, build_permission_params, expand_permission_rules
from .session import WalletSession, WalletSessionStore, ingest_session
from .storage import CredentialStore
from .wallet_client import FeeOption, FeeToken, FeeTokens, Transaction, WalletClient

__all__ = [
    "AgentConfig",
    "AgentError",
    "AmbiguousRequestError",
    "CallbackPayload",
    "CallbackServer",
    "ConfigurationError",
    "CredentialStore",
    "DecryptionError",
    "DispatchResult",
    "ExpiredRequestError",
    "ExpiredSessionError",
    "FeeOption",
    "FeePreference",
    "FeeResolutionError",
    "FeeToken",
    "FeeTokens",
    "PermissionFlags",
    "RequestNotFoundError",
    "SessionEnvelope",
    "SessionRequest",
    "StoreError",
    "Transaction",
    "TransactionDispatcher",
    "TransportError",
    "UnknownTokenError",
    "UsageError",
    "ValidationError",
    "WalletClient",
    "WalletNotFoundError",
    "WalletSession",
    "WalletSessionStore",
    "build_approval_url",
    "build_permission_params",
    "create_request",
    "expand_permission_rules",
    "find_request_by_wallet_name",
    "ingest_session",
    "load_config",
    "load_request",
    "open_envelope",
    "read_ciphertext_argument",
    "resolve_fee_option",
    "seal_envelope",
    "validate_envelope",
]
