"""Error taxonomy shared by the relay components.

Every error exposes a stable ``code`` used in audit records and API bodies and
an HTTP ``status`` used by the API layer when the error reaches the boundary.
"""

from __future__ import annotations

from typing import Any, Optional


class RelayError(Exception):
    """Base class for every error raised by the relay."""

    code = "relay_error"
    status = 500

    def __init__(self, message: str | None = None, *, details: Any = None):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": False, "error": str(self), "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body


# Boundary errors ---------------------------------------------------------------
class ValidationError(RelayError):
    """Malformed request."""

    code = "validation_error"
    status = 400


class SenderDomainMismatch(ValidationError):
    """Sender address does not belong to the authenticated domain."""

    code = "sender_domain_mismatch"


class InvalidMessage(ValidationError):
    """Message cannot be built from the submitted fields."""

    code = "invalid_message"


class NotFoundError(RelayError):
    """Requested record does not exist."""

    code = "not_found"
    status = 404


class DomainNotFound(NotFoundError):
    """Domain does not exist."""

    code = "domain_not_found"


class ConflictError(RelayError):
    """Record already exists."""

    code = "conflict"
    status = 409


class RateLimited(RelayError):
    """Too many sends in the current window."""

    code = "rate_limited"
    status = 429

    def __init__(self, retry_after: int, message: str | None = None):
        super().__init__(message or f"Rate limit exceeded, retry in {retry_after}s")
        self.retry_after = retry_after


class AuthError(RelayError):
    """Authentication failed."""

    code = "auth_error"
    status = 401


class InvalidCredential(AuthError):
    """Invalid API key."""

    code = "invalid_credential"


class CredentialExpired(AuthError):
    """API key has expired."""

    code = "credential_expired"


class DomainInactive(AuthError):
    """Domain is not active."""

    code = "domain_inactive"
    status = 403


# Configuration and stored-secret errors ------------------------------------------
class ConfigurationError(RelayError):
    """Invalid or missing configuration."""

    code = "configuration_error"
    status = 500


class FormatError(ConfigurationError):
    """Encrypted blob is malformed."""

    code = "secret_format_error"


class IntegrityError(ConfigurationError):
    """Encrypted blob failed authentication (tampered data or wrong key)."""

    code = "secret_integrity_error"


class KeyDecryptionError(ConfigurationError):
    """Failed to decrypt DKIM key."""

    code = "key_decryption_error"


class SigningError(RelayError):
    """DKIM signing failed."""

    code = "signing_error"


# Delivery errors -----------------------------------------------------------------
class TransportError(RelayError):
    """Raised by transports when the relay refuses or cannot take a message.

    ``reply_code`` carries the protocol status (SMTP reply code, HTTP status) when the
    transport knows it; ``transient`` lets a transport force the classification.
    """

    code = "transport_error"
    status = 502

    def __init__(self, message: str, *, code: Optional[int] = None, transient: Optional[bool] = None):
        super().__init__(message)
        self.reply_code = code
        self.transient = transient


class TransientDeliveryError(TransportError):
    """Delivery failed for a reason expected to clear with time."""

    code = "transient_delivery_error"

    def __init__(self, message: str, *, code: Optional[int] = None):
        super().__init__(message, code=code, transient=True)


class PermanentDeliveryError(TransportError):
    """Delivery failed and retrying unchanged will not help."""

    code = "permanent_delivery_error"

    def __init__(self, message: str, *, code: Optional[int] = None):
        super().__init__(message, code=code, transient=False)


class RetriesExhausted(TransportError):
    """Transient failures went on past the retry ceiling."""

    code = "retries_exhausted"

    def __init__(self, message: str, *, code: Optional[int] = None):
        super().__init__(message, code=code, transient=False)


# Terminal send outcomes reported to API callers, keyed by ``code``
SEND_FAILURES = (
    SenderDomainMismatch,
    InvalidMessage,
    DomainNotFound,
    DomainInactive,
    KeyDecryptionError,
    SigningError,
    PermanentDeliveryError,
    RetriesExhausted,
)
