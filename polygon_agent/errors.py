"""Error taxonomy shared by every polygon-agent command.

Each error carries a short machine-parsable ``code`` and, where one exists, a
``hint`` describing the next step an operator should take.  The CLI renders
both verbatim; library callers can branch on the class or on ``code``.
"""

from __future__ import annotations


class AgentError(RuntimeError):
    """Base class for all surfaced polygon-agent failures."""

    code = "error"
    default_hint: str | None = None
    retryable = False

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint if hint is not None else self.default_hint

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"ok": False, "code": self.code, "error": self.message}
        if self.hint:
            payload["hint"] = self.hint
        if self.retryable:
            payload["retryable"] = True
        return payload


class UsageError(AgentError):
    """Missing or conflicting flags; raised before any network call."""

    code = "usage_error"
    default_hint = "Check the command flags with --help."


class StoreError(AgentError):
    """The encrypted credential store could not be read or written."""

    code = "store_error"


class WalletNotFoundError(AgentError):
    code = "wallet_not_found"
    default_hint = "Run 'polygon-agent wallet list' or link the wallet with 'wallet create'."


class RequestNotFoundError(AgentError):
    code = "request_not_found"
    default_hint = "Re-run 'polygon-agent wallet create' to start a new request."


class AmbiguousRequestError(AgentError):
    """Several pending requests match a wallet name and no request id was given."""

    code = "ambiguous_request"
    default_hint = "Pass --rid to choose the request explicitly."


class ExpiredRequestError(AgentError):
    code = "expired_request"
    default_hint = "Re-run 'polygon-agent wallet create' to start a new request."


class ExpiredSessionError(AgentError):
    code = "expired_session"
    default_hint = "Re-link the wallet with 'polygon-agent wallet create'."


class DecryptionError(AgentError):
    """Ciphertext could not be opened with the request's key pair."""

    code = "decryption_failed"
    default_hint = "Make sure the ciphertext belongs to this request, or create a new request."


class ValidationError(AgentError):
    """The decrypted envelope is malformed or inconsistent with its request."""

    code = "validation_failed"
    default_hint = "Approve the request again, or create a new one with 'wallet create'."


class TransportError(AgentError):
    """Delivery or network failure; re-running the command may succeed."""

    code = "transport_error"
    default_hint = "Re-run the command."
    retryable = True


class FeeResolutionError(AgentError):
    code = "fee_resolution_failed"
    default_hint = "Fund the wallet with the chain's native token or USDC, then retry."


class UnknownTokenError(AgentError):
    code = "unknown_token"
    default_hint = "Use --token <address> --decimals <n> or set POLYGON_AGENT_TOKEN_MAP_JSON."


__all__ = [
    "AgentError",
    "AmbiguousRequestError",
    "DecryptionError",
    "ExpiredRequestError",
    "ExpiredSessionError",
    "FeeResolutionError",
    "RequestNotFoundError",
    "StoreError",
    "TransportError",
    "UnknownTokenError",
    "UsageError",
    "ValidationError",
    "WalletNotFoundError",
]
