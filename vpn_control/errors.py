"""
Error taxonomy for the control plane.

Every error carries the HTTP status it maps to and a message that is safe to
return to the caller. Internal detail (SQL text, transport errors, upstream
bodies) goes to the log, never into ``message``.
"""
from typing import Optional


class ControlPlaneError(Exception):
    """Base class for errors surfaced to API callers."""
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ControlPlaneError):
    status_code = 400
    default_message = "Invalid request"


class Unauthorized(ControlPlaneError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(ControlPlaneError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(ControlPlaneError):
    status_code = 404
    default_message = "Not found"


class Conflict(ControlPlaneError):
    status_code = 409
    default_message = "Resource already exists"


class RateLimited(ControlPlaneError):
    status_code = 429
    default_message = "Rate limit exceeded"


class UpstreamError(ControlPlaneError):
    """End-node or delivery channel unreachable or answered non-200."""
    status_code = 502
    default_message = "Upstream service unavailable"

    def __init__(self, message: Optional[str] = None, upstream_status: Optional[int] = None):
        super().__init__(message)
        self.upstream_status = upstream_status


class DeliveryError(UpstreamError):
    default_message = "Failed to send OTP"


class NoChallenge(ControlPlaneError):
    status_code = 400
    default_message = "No OTP found for this phone number"


class TokenError(Unauthorized):
    default_message = "Invalid token"


class MalformedToken(TokenError):
    default_message = "Malformed token"


class SignatureMismatch(TokenError):
    default_message = "Token signature mismatch"


class Expired(TokenError):
    default_message = "Token has expired"


class TooEarly(TokenError):
    default_message = "Token is not close to expiration yet"


class ConfigError(Exception):
    """Fatal misconfiguration. The process must not serve traffic."""
    pass
