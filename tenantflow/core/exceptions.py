"""Custom exception types for domain and API layers."""
from __future__ import annotations


class AppError(Exception):
    """Base app exception."""


class ValidationError(AppError):
    """Validation failure for user input or generated artifacts."""


class UnboundCredentialError(ValidationError):
    """A cloned node needs a credential the user does not have."""

    def __init__(self, message: str, service: str | None = None):
        super().__init__(message)
        self.service = service


class IntegrationError(AppError):
    """External integration call failure."""

    retryable = False

    def __init__(self, message: str, status_code: int | None = None, detail: object = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail


class TransientRemoteError(IntegrationError):
    """Network failure, timeout, rate limit or 5xx from a remote API."""

    retryable = True

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        detail: object = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, status_code=status_code, detail=detail)
        self.retry_after = retry_after


class RemoteValidationError(IntegrationError):
    """Remote API rejected the request payload."""


class RemoteNotFoundError(IntegrationError):
    """Remote resource does not exist."""


class RemoteAuthError(IntegrationError):
    """Remote API rejected our API key or token."""


class CredentialError(AppError):
    """Token refresh failed or a required credential is missing."""

    def __init__(self, message: str, service: str | None = None):
        super().__init__(message)
        self.service = service


class LedgerError(AppError):
    """Local provisioning ledger failure."""


class LedgerWriteError(LedgerError):
    """A ledger row could not be written."""


class LedgerUnavailableError(LedgerError):
    """The ledger store cannot be read at all."""


class InvalidTransitionError(LedgerError):
    """A ledger status change would move a row backwards."""
