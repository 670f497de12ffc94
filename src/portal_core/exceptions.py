"""
Exception classes for the portal core.

All exceptions inherit from PortalError and provide structured error
information with codes, messages, optional details and the HTTP status the
web layer answers with.
"""

from typing import Optional


class PortalError(Exception):
    """Base exception for all portal core errors."""

    http_status = 500

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"

    def to_dict(self, include_details: bool = True) -> dict:
        """Convert exception to dictionary for serialization."""
        body = {
            "code": self.code,
            "message": self.message,
        }
        if include_details and self.details:
            body["details"] = self.details
        return body


class AuthenticationError(PortalError):
    """Raised when a session token or webhook secret is missing or invalid."""

    http_status = 401


class ValidationError(PortalError):
    """Raised when request input is malformed."""

    http_status = 400


class NotFoundError(PortalError):
    """Raised when a click or partner is unknown, or a click is outside the attribution window."""

    http_status = 404


class ForbiddenError(PortalError):
    """Raised when a partner is inactive or the reporting domain is not whitelisted."""

    http_status = 403


class ConflictError(PortalError):
    """Raised when a conversion for the click has already been recorded."""

    http_status = 409


class QuotaExceededError(PortalError):
    """Raised when a partner exceeds its hourly event quota."""

    http_status = 429

    def __init__(
        self,
        code: str,
        message: str,
        headers: Optional[dict] = None,
        details: Optional[dict] = None,
    ) -> None:
        super().__init__(code, message, details)
        self.headers = headers or {}


class UpstreamError(PortalError):
    """Raised when a third-party API answers with a non-2xx status or fails."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        details: Optional[dict] = None,
    ) -> None:
        super().__init__(code, message, details)
        self.status_code = status_code
        self.retry_after = retry_after


class ConfigurationError(PortalError):
    """Raised when required configuration is missing or invalid."""

    pass


class StoreError(PortalError):
    """Raised when the key-value store cannot be reached or rejects a command."""

    pass
