from __future__ import annotations


class CaiError(Exception):
    """Base exception for the cai-client package."""


class CaiConnectionError(CaiError):
    """Raised when dialing, writing to or reading from the service fails."""


class CaiTimeoutError(CaiError):
    """Raised when no terminal reply arrives within the caller's deadline."""


class CaiValidationError(CaiError, ValueError):
    """Raised when caller-supplied arguments are rejected before any I/O."""


class CaiEncodingError(CaiError):
    """Raised when an outgoing envelope cannot be serialized."""


class CaiDecodingError(CaiError):
    """Raised when incoming data does not match the expected shape."""


class CaiNotAppliedError(CaiError):
    """Raised when the service acknowledged an operation that did not take effect."""


class CaiServerError(CaiError):
    """Raised when the service answers with an explicit error."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        command: str | None = None,
    ) -> None:
        """Create a server error.

        Args:
            message: Error text as reported by the service.
            status: HTTP status code for REST failures.
            command: Frame command tag for duplex failures.
        """
        super().__init__(message)
        self.message = message
        self.status = status
        self.command = command


class CaiAuthenticationError(CaiServerError):
    """Raised when the service rejects the configured credentials."""
