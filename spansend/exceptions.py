"""
Custom exceptions for spansend.

All exceptions inherit from SpanSendError so callers can catch any
transport-specific error with a single handler. Most of them never reach the
code calling ``send``: in-flight failures are delivered through the returned
Call, and invalid configuration disables the sender instead of raising.
"""

from typing import Optional


class SpanSendError(Exception):
    """
    Base exception for all spansend errors.

    Carries an optional ``details`` dict that is rendered after the message.
    """

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ConfigurationError(SpanSendError):
    """
    Raised when configuration input cannot be loaded.

    This includes:
    - Unreadable or missing configuration files
    - Invalid YAML
    - Files that do not contain a mapping

    Note:
        An empty or unparsable collector URL is NOT a configuration error.
        It produces a disabled sender (``is_available() == False``).
    """

    pass


class TLSMaterialError(ConfigurationError):
    """
    Raised when TLS PEM material cannot be parsed.

    Examples:
        - CA certificate is not valid PEM
        - Client key is not a PKCS#8 ``PRIVATE KEY`` block
        - Client key does not match the client certificate

    Raised while a managed client is being built, so it fails the init or
    renewal that triggered the build.
    """

    pass


class TransportError(SpanSendError):
    """
    Raised for failures of an in-flight request.

    This includes:
    - Connection, timeout and TLS handshake failures
    - Non-2xx responses from the collector
    - Submissions rejected by a stopped dispatcher

    Only ever delivered through a Call's failure channel.
    """

    pass


class DispatcherShutdownError(TransportError):
    """Raised when work is submitted to a dispatcher that has been shut down."""

    pass


class CallCancelledError(SpanSendError):
    """Raised by ``Call.result()`` when the call was cancelled."""

    pass
