"""Error taxonomy for the Relaygate gateway."""
from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base exception for Relaygate."""

    def __init__(
        self,
        message: str,
        error_code: str = "GATEWAY_ERROR",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(GatewayError):
    """Configuration-related errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="CONFIGURATION_ERROR",
            status_code=500,
            details=details,
        )


class SessionNotFound(GatewayError):
    """No session record or provider session exists for the id."""

    def __init__(self, session_id: str, details: Optional[Dict[str, Any]] = None):
        error_details = details or {}
        error_details["session_id"] = session_id
        super().__init__(
            message=f"Session not found: {session_id}",
            error_code="SESSION_NOT_FOUND",
            status_code=404,
            details=error_details,
        )


class SessionAlreadyExists(GatewayError):
    """The user already owns an active session."""

    def __init__(
        self,
        message: str = "An active WhatsApp session already exists",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            error_code="SESSION_ALREADY_EXISTS",
            status_code=409,
            details=details,
        )


class SessionExpired(GatewayError):
    """The session or its QR code is no longer valid."""

    def __init__(
        self, message: str = "Session expired", details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            error_code="SESSION_EXPIRED",
            status_code=410,
            details=details,
        )


class InvalidState(GatewayError):
    """Operation is not valid for the session's current status."""

    def __init__(
        self,
        message: str,
        current: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if current:
            error_details["current_status"] = current
        super().__init__(
            message=message,
            error_code="INVALID_STATE",
            status_code=400,
            details=error_details,
        )


class ProviderUnavailable(GatewayError):
    """The relay backend could not be reached."""

    def __init__(
        self,
        message: str = "Relay provider is unavailable",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            error_code="PROVIDER_UNAVAILABLE",
            status_code=503,
            details=details,
        )


class ConnectionError(GatewayError):
    """Transport-level failure talking to the relay backend."""

    def __init__(
        self,
        message: str,
        status_code: int = 502,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            error_code="CONNECTION_ERROR",
            status_code=status_code,
            details=details,
        )


class SessionError(GatewayError):
    """The relay reported a problem with the session itself."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="SESSION_ERROR",
            status_code=503,
            details=details,
        )


class ProviderError(GatewayError):
    """Non-transport error response returned by the relay backend."""

    def __init__(
        self,
        message: str,
        error_code: str = "PROVIDER_ERROR",
        status_code: int = 502,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details,
        )


class ValidationError(GatewayError):
    """Input validation errors."""

    def __init__(
        self, message: str, field: str = None, details: Optional[Dict[str, Any]] = None
    ):
        error_details = details or {}
        if field:
            error_details["field"] = field

        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            status_code=422,
            details=error_details,
        )


class RateLimitExceeded(GatewayError):
    """Rate limiting errors."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            error_code="RATE_LIMIT_EXCEEDED",
            status_code=429,
            details=details,
        )


class Unauthorized(GatewayError):
    """Signature or ownership mismatch."""

    def __init__(
        self, message: str = "Unauthorized", details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            error_code="UNAUTHORIZED",
            status_code=401,
            details=details,
        )


class MediaError(GatewayError):
    """Media upload or media message failure."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="MEDIA_ERROR",
            status_code=400,
            details=details,
        )


class ExternalServiceError(GatewayError):
    """External service errors (completion backend, etc.)."""

    def __init__(
        self, service: str, message: str, details: Optional[Dict[str, Any]] = None
    ):
        error_details = details or {}
        error_details["service"] = service

        super().__init__(
            message=f"{service}: {message}",
            error_code="EXTERNAL_SERVICE_ERROR",
            status_code=502,
            details=error_details,
        )
