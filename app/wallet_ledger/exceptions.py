"""Exceptions raised by the payment and wallet ledger services."""


class LedgerError(Exception):
    """Base exception for payment and wallet errors."""

    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.__class__.__doc__ or ""


class ValidationError(LedgerError):
    """Raised when input validation fails."""

    status_code = 400


class UnsupportedStatusError(ValidationError):
    """Raised when a webhook reports a status outside the known set."""


class AuthenticationError(LedgerError):
    """Raised when a webhook signature is missing or does not match."""

    status_code = 401


class PermissionDeniedError(LedgerError):
    """Raised when the caller lacks the role required for an operation."""

    status_code = 403


class NotFoundError(LedgerError):
    """Raised when a payment, wallet or ledger entry cannot be found."""

    status_code = 404


class NotRefundableError(LedgerError):
    """Raised when a refund is attempted on an ineligible payment."""

    status_code = 409


class InsufficientFundsError(LedgerError):
    """Raised when a debit or refund would underflow the wallet."""

    status_code = 422


class RateLimitError(LedgerError):
    """Raised when a webhook source exceeds its request budget."""

    status_code = 429


class ProviderError(LedgerError):
    """Raised when the payment provider is unreachable or fails."""

    status_code = 502

    def __init__(self, message: str = "", *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out
        if timed_out:
            self.status_code = 504


class InternalError(LedgerError):
    """Raised for unexpected failures that need manual remediation."""

    status_code = 500


class ConfigurationError(LedgerError):
    """Raised at startup when the runtime configuration is unsafe."""


__all__ = [
    "LedgerError",
    "ValidationError",
    "UnsupportedStatusError",
    "AuthenticationError",
    "PermissionDeniedError",
    "NotFoundError",
    "NotRefundableError",
    "InsufficientFundsError",
    "RateLimitError",
    "ProviderError",
    "InternalError",
    "ConfigurationError",
]
