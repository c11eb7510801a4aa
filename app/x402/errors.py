# app/x402/errors.py
"""
Error taxonomy for the x402 payment protocol.

Three families of errors exist:
- Protocol denials: expected outcomes (bad proof, replay, wrong network...).
  Surfaced as 4xx with a machine-readable code. Never retried automatically.
- Infrastructure faults: chain RPC or storage unreachable. Surfaced as 5xx.
  Retried with bounded backoff only at idempotent call sites.
- Agent errors: raised client-side by the agent SDK (policy rejections,
  protocol violations, transport failures).
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Machine-readable error codes shared by all x402 components."""
    # Protocol denials
    PAYMENT_REQUIRED = "PAYMENT_REQUIRED"
    PAYMENT_VERIFICATION_FAILED = "PAYMENT_VERIFICATION_FAILED"
    REPLAY_DETECTED = "REPLAY_DETECTED"
    TX_REUSED = "TX_REUSED"
    MERCHANT_NOT_FOUND = "MERCHANT_NOT_FOUND"
    MERCHANT_SUSPENDED = "MERCHANT_SUSPENDED"
    ROUTE_NOT_REGISTERED = "ROUTE_NOT_REGISTERED"
    ROUTE_DISABLED = "ROUTE_DISABLED"
    WRONG_NETWORK = "WRONG_NETWORK"
    AWAITING_CONFIRMATIONS = "AWAITING_CONFIRMATIONS"
    TX_NOT_FOUND_OR_FAILED = "TX_NOT_FOUND_OR_FAILED"
    VALIDATION_FAILED = "VALIDATION_FAILED"

    # Infrastructure faults
    FACILITATOR_FAULT = "FACILITATOR_FAULT"
    PAYMENT_GATEWAY_ERROR = "PAYMENT_GATEWAY_ERROR"

    # Agent side
    POLICY_REJECTED = "POLICY_REJECTED"
    PROTOCOL_ERROR = "PROTOCOL_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    HTTP_ERROR = "HTTP_ERROR"


class X402Error(Exception):
    """Base error carrying an x402 error code and HTTP status."""

    status_code: int = 500

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.code.value, "message": self.message}
        body.update(self.details)
        return body


class ProtocolDenial(X402Error):
    """An expected, final (or retry-later) refusal to grant access."""
    status_code = 402


class InfrastructureFault(X402Error):
    """An unexpected failure of a dependency (RPC, storage, peer service)."""
    status_code = 500


class ConfigurationError(ValueError):
    """Raised at construction time when required configuration is missing."""


class ChallengeParseError(ValueError):
    """A 402 challenge could not be parsed; every required field must be present."""


class UnsupportedCurrencyError(ChallengeParseError):
    """A well-formed challenge asks for an asset this system cannot pay in."""

    def __init__(self, currency: Any):
        self.currency = currency
        super().__init__(f"Unsupported currency: {currency}")


class DuplicateKeyError(Exception):
    """A uniqueness constraint was violated at the storage layer."""


class ChainRpcError(Exception):
    """The chain RPC provider returned an error or could not be reached."""


class PriceLookupError(X402Error):
    """The pricing source refused or failed to quote a route."""


class FacilitatorUnavailable(Exception):
    """The facilitator could not be reached after bounded retries."""


class AgentError(Exception):
    """
    Error surfaced by the agent SDK.

    Attributes:
        code: ErrorCode for the failure family
        reason: Human readable reason (policy reason, denial reason...)
        status: HTTP status of the offending response, if any
        details: Response body or extra context
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.PROTOCOL_ERROR,
        reason: Optional[str] = None,
        status: Optional[int] = None,
        details: Any = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.reason = reason or message
        self.status = status
        self.details = details
