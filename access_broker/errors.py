# access_broker/errors.py
"""
Error taxonomy shared by the engine, the ledger gateway and the HTTP layer.

Each kind carries a stable error code and a distinct HTTP status so clients can
tell "try again" (SubmissionFailed, Timeout) from "stale request"
(InvalidState, Conflict) from "not authorized" (Forbidden).
"""

from typing import Any, Dict, Optional

E_INVALID_ARGUMENT = "E_INVALID_ARGUMENT"
E_NOT_FOUND = "E_NOT_FOUND"
E_FORBIDDEN = "E_FORBIDDEN"
E_CONFLICT = "E_CONFLICT"
E_INVALID_STATE = "E_INVALID_STATE"
E_PAYMENT_NOT_VERIFIED = "E_PAYMENT_NOT_VERIFIED"
E_SUBMISSION_FAILED = "E_SUBMISSION_FAILED"
E_TIMEOUT = "E_TIMEOUT"
E_INTERNAL = "E_INTERNAL"
E_UNAUTHENTICATED = "E_UNAUTHENTICATED"


class BrokerError(Exception):
    error_code = E_INTERNAL
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_response(self, request_id: Optional[str] = None) -> Dict[str, Any]:
        return {
            "request_id": request_id,
            "status": "error",
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgument(BrokerError):
    error_code = E_INVALID_ARGUMENT
    http_status = 400


class NotFound(BrokerError):
    error_code = E_NOT_FOUND
    http_status = 404


class Forbidden(BrokerError):
    error_code = E_FORBIDDEN
    http_status = 403


class Conflict(BrokerError):
    error_code = E_CONFLICT
    http_status = 409


class InvalidState(BrokerError):
    error_code = E_INVALID_STATE
    http_status = 412


class PaymentNotVerified(BrokerError):
    """The ledger transaction does not satisfy the payment conditions."""

    error_code = E_PAYMENT_NOT_VERIFIED
    http_status = 402

    def __init__(self, reason: str, message: str, details: Optional[Dict[str, Any]] = None):
        merged = {"reason": reason}
        merged.update(details or {})
        super().__init__(message, merged)
        self.reason = reason


class SubmissionFailed(BrokerError):
    """Ledger or network fault. `retryable` is False for a definitive rejection."""

    error_code = E_SUBMISSION_FAILED
    http_status = 503

    def __init__(self, message: str, retryable: bool = True, details: Optional[Dict[str, Any]] = None):
        merged = {"retryable": retryable}
        merged.update(details or {})
        super().__init__(message, merged)
        self.retryable = retryable


class Timeout(BrokerError):
    error_code = E_TIMEOUT
    http_status = 504


class Unauthenticated(BrokerError):
    """Owner-only action without a caller identity."""

    error_code = E_UNAUTHENTICATED
    http_status = 401
