"""
Authentication exception hierarchy.

Each exception carries the message logged server-side, optional details,
an HTTP status code and a public message that is safe to return to the
caller. Security-relevant failures share deliberately generic public
messages; only input validation failures are specific.
"""

from typing import Any


class AuthException(Exception):
    """Base exception for all account-security errors."""

    status_code: int = 400
    default_public_message: str = "Request failed"

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
        public_message: str | None = None,
    ) -> None:
        super().__init__(message or self.default_public_message)
        self.details = details or {}
        self.public_message = public_message or self.default_public_message


class ValidationError(AuthException):
    """Malformed input. Field-level detail is safe to expose."""

    status_code = 400
    default_public_message = "Validation failed"

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message, details={"field": field} if field else None, public_message=message)
        self.field = field


class WeakPasswordError(ValidationError):
    """Password does not satisfy the password policy."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("Password too weak", field="password")
        self.errors = errors
        self.details["errors"] = errors


class InvalidCredentialError(AuthException):
    """Wrong username, wrong password or locked account; never distinguished."""

    status_code = 401
    default_public_message = "Invalid username or password"


class TokenError(AuthException):
    """Token not found, expired, of the wrong type or already used."""

    status_code = 400
    default_public_message = "Invalid or expired token"


class InvalidCodeError(TokenError):
    """Second-factor code not found, expired or already used."""

    default_public_message = "Invalid or expired code"


class DuplicateUserError(AuthException):
    """Registration conflict on username or email."""

    status_code = 409

    def __init__(self, field: str) -> None:
        label = "Username" if field == "username" else "Email"
        message = f"{label} is already taken"
        super().__init__(message, details={"field": field}, public_message=message)
        self.field = field


class EmailInUseError(AuthException):
    """Requested email already belongs to a different user."""

    status_code = 409
    default_public_message = "Email already in use"


class NotFoundError(AuthException):
    """No user matched the lookup."""

    status_code = 404
    default_public_message = "User not found"


class NotAuthenticatedError(AuthException):
    """No valid session accompanies the request."""

    status_code = 401
    default_public_message = "Not authenticated"


class StoreOrDeliveryFailure(AuthException):
    """Infrastructure failure. Logged in full, reported generically."""

    status_code = 500
    default_public_message = "Internal server error"


class DeliveryError(StoreOrDeliveryFailure):
    """Notifier could not deliver a message."""

    def __init__(self, recipient: str | None = None, reason: str | None = None) -> None:
        message = "Email delivery failed"
        if reason:
            message += f": {reason}"
        super().__init__(message, details={"recipient": recipient, "reason": reason})
        self.recipient = recipient
        self.reason = reason


class ConfigurationError(StoreOrDeliveryFailure):
    """Required configuration is missing."""
