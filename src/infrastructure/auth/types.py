"""
Shared authentication types.

Closed enumerations for roles, account states and token types, plus the
value objects passed between the coordinator, its collaborators and the
HTTP adapter.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import User


class Role(Enum):
    """User role enumeration"""

    USER = "user"
    ADMINISTRATOR = "administrator"


class AccountStatus(Enum):
    """Account status enumeration"""

    ACTIVE = "active"
    LOCKED = "locked"


class TokenType(Enum):
    """Security token type enumeration"""

    VERIFY_EMAIL = "verify-email"
    RESET = "reset"
    CHANGE_EMAIL = "change-email"
    UNLOCK = "unlock"
    TWO_FA_SETUP = "2fa-setup"
    TWO_FA_LOGIN = "2fa-login"


DEFAULT_TOKEN_TTLS: dict[TokenType, timedelta] = {
    TokenType.VERIFY_EMAIL: timedelta(hours=24),
    TokenType.UNLOCK: timedelta(hours=24),
    TokenType.RESET: timedelta(hours=1),
    TokenType.CHANGE_EMAIL: timedelta(hours=1),
    TokenType.TWO_FA_SETUP: timedelta(minutes=15),
    TokenType.TWO_FA_LOGIN: timedelta(minutes=15),
}

# Codes emailed as a second factor are short numeric strings, not opaque tokens
NUMERIC_CODE_TYPES = frozenset({TokenType.TWO_FA_SETUP, TokenType.TWO_FA_LOGIN})


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching the stored columns."""
    return datetime.now(UTC).replace(tzinfo=None)


@dataclass(frozen=True)
class RequestContext:
    """Where a request came from; recorded on tokens and sessions."""

    ip_address: str | None = None
    user_agent: str | None = None

    @property
    def issuing_ip(self) -> str:
        return self.ip_address or "system"

    @property
    def issuing_user_agent(self) -> str:
        return self.user_agent or "system"


SYSTEM_CONTEXT = RequestContext()


@dataclass
class CallerContext:
    """
    Authenticated caller, resolved from a validated session.

    Passed explicitly to every coordinator operation that requires an
    authenticated user.
    """

    user: User
    session_token: str
    request: RequestContext = field(default_factory=RequestContext)

    @property
    def user_id(self) -> int:
        return int(self.user.id)


@dataclass
class LoginOutcome:
    """Result of a login step."""

    authenticated: bool
    requires_2fa: bool = False
    user_id: int | None = None
    session_token: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.requires_2fa:
            return {
                "message": "2FA code sent to your email",
                "requires2FA": True,
                "userId": self.user_id,
            }
        return {"message": "Login successful", "authenticated": self.authenticated}


@dataclass
class UserSummary:
    """Public view of a user returned by session checks."""

    user_id: int
    username: str
    email: str
    email_verified: bool
    two_factor_enabled: bool
    role: str
    created_at: str | None

    @classmethod
    def from_user(cls, user: User) -> UserSummary:
        return cls(
            user_id=int(user.id),
            username=str(user.username),
            email=str(user.email or ""),
            email_verified=bool(user.email_verified),
            two_factor_enabled=bool(user.is_2fa_enabled),
            role=user.role.value,
            created_at=user.created_at.isoformat() if user.created_at else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "username": self.username,
            "email": self.email,
            "emailVerified": self.email_verified,
            "twoFactorEnabled": self.two_factor_enabled,
            "role": self.role,
            "createdAt": self.created_at,
        }


@dataclass
class SessionCheck:
    """Result of checking the caller's session."""

    authenticated: bool
    user: UserSummary | None = None

    def to_dict(self) -> dict[str, Any]:
        if not self.authenticated or self.user is None:
            return {"authenticated": False}
        return {"authenticated": True, "user": self.user.to_dict()}
