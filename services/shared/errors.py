"""Domain error taxonomy shared by all services.

Exception Hierarchy:
    PlatformError (base)
    ├── ValidationError - malformed or incomplete input, raised before any state change
    │   └── MissingReferenceError - payment confirmation without a transaction reference
    ├── NotFoundError - unknown invoice id (or one owned by another account)
    ├── InvalidTransitionError - state machine violation
    │   └── AlreadyPaidError - invoice is settled, nothing left to verify
    ├── UnknownCurrencyError - no rate cached for a currency code
    │   └── UnsupportedCurrencyError - no ledger verifier for a currency code
    └── ExternalServiceError - oracle or explorer unreachable / malformed response

A negative on-chain verification is not an exception: it is returned as a
``VerificationFailure`` value (see services.verification.base).
"""

from typing import Any


class PlatformError(Exception):
    """Base exception for all platform errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable code for client-side handling
        details: Additional error context
    """

    default_error_code: str = "PLATFORM_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        result: dict[str, Any] = {"error": self.message, "error_code": self.error_code}
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(PlatformError):
    default_error_code = "ValidationError"


class MissingReferenceError(ValidationError):
    default_error_code = "MissingReference"


class NotFoundError(PlatformError):
    default_error_code = "NotFound"


class InvalidTransitionError(PlatformError):
    default_error_code = "InvalidTransition"


class AlreadyPaidError(InvalidTransitionError):
    default_error_code = "AlreadyPaid"


class UnknownCurrencyError(PlatformError):
    default_error_code = "UnknownCurrency"


class UnsupportedCurrencyError(UnknownCurrencyError):
    default_error_code = "UnsupportedCurrency"


class ExternalServiceError(PlatformError):
    """Oracle or explorer failure. Always recoverable, never fatal to the process."""

    default_error_code = "ExternalServiceError"
