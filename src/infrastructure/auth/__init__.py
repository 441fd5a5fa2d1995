"""
Account-security core for the storefront backend.

This package provides password login with an optional emailed second
factor, single-use recovery tokens, failed-login lockout and single-session
management behind the AuthCoordinator.
"""

from .exceptions import (
    AuthException,
    DeliveryError,
    DuplicateUserError,
    EmailInUseError,
    InvalidCodeError,
    InvalidCredentialError,
    NotAuthenticatedError,
    NotFoundError,
    StoreOrDeliveryFailure,
    TokenError,
    ValidationError,
    WeakPasswordError,
)
from .models import Base, SecurityToken, User, UserSession
from .types import (
    AccountStatus,
    CallerContext,
    LoginOutcome,
    RequestContext,
    Role,
    SessionCheck,
    TokenType,
    UserSummary,
)

__all__ = [
    # Exceptions
    "AuthException",
    "ValidationError",
    "WeakPasswordError",
    "InvalidCredentialError",
    "TokenError",
    "InvalidCodeError",
    "DuplicateUserError",
    "EmailInUseError",
    "NotFoundError",
    "NotAuthenticatedError",
    "StoreOrDeliveryFailure",
    "DeliveryError",
    # Models
    "Base",
    "User",
    "SecurityToken",
    "UserSession",
    # Types
    "Role",
    "AccountStatus",
    "TokenType",
    "RequestContext",
    "CallerContext",
    "LoginOutcome",
    "SessionCheck",
    "UserSummary",
]

__version__ = "1.0.0"
