"""
Database models for account security.

This module defines SQLAlchemy models for users, single-use security tokens
and sessions used by the storefront authentication core.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

from .types import AccountStatus, Role, TokenType, utcnow


def _enum_values(enum_cls: type) -> list[str]:
    return [member.value for member in enum_cls]  # type: ignore[attr-defined]


Base = declarative_base()


class User(Base):  # type: ignore[valid-type, misc]
    """User model with identity and security state."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=False)
    username = Column(String(30), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)

    role = Column(
        Enum(Role, name="user_role", values_callable=_enum_values),
        nullable=False,
        default=Role.USER,
    )
    account_status = Column(
        Enum(AccountStatus, name="account_status", values_callable=_enum_values),
        nullable=False,
        default=AccountStatus.ACTIVE,
    )

    # Email verification and second factor
    email_verified = Column(Boolean, nullable=False, default=False)
    is_2fa_enabled = Column(Boolean, nullable=False, default=False)
    last_2fa_verified_at = Column(DateTime)

    # Security counters
    failed_login_count = Column(Integer, nullable=False, default=0)
    login_count = Column(Integer, nullable=False, default=0)
    last_login_at = Column(DateTime)
    last_password_change = Column(DateTime)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    tokens = relationship("SecurityToken", back_populates="user")
    session = relationship("UserSession", back_populates="user", uselist=False)

    def is_locked(self) -> bool:
        """Check if account is currently locked."""
        return self.account_status == AccountStatus.LOCKED

    def requires_second_factor(self) -> bool:
        """Administrators and opted-in users must pass a second factor."""
        return self.role == Role.ADMINISTRATOR or bool(self.is_2fa_enabled)


class SecurityToken(Base):  # type: ignore[valid-type, misc]
    """Single-use, typed, expiring token shared by every recovery flow."""

    __tablename__ = "security_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token = Column(String(128), nullable=False)
    token_type = Column(
        Enum(TokenType, name="token_type", values_callable=_enum_values), nullable=False
    )

    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    used = Column(Boolean, nullable=False, default=False)

    # Issuing request
    ip_address = Column(String(45))
    user_agent = Column(Text)

    # Relationships
    user = relationship("User", back_populates="tokens")

    __table_args__ = (
        Index("idx_token_value", "token"),
        Index("idx_token_user_type", "user_id", "token_type", "used"),
    )


class UserSession(Base):  # type: ignore[valid-type, misc]
    """The single current session of a user."""

    __tablename__ = "user_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    session_token = Column(String(128), unique=True, nullable=False, index=True)

    login_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)

    # Device info
    ip_address = Column(String(45))
    user_agent = Column(Text)

    # Status
    is_active = Column(Boolean, nullable=False, default=True)

    # Relationships
    user = relationship("User", back_populates="session")

    __table_args__ = (Index("idx_session_expiry", "expires_at", "is_active"),)
