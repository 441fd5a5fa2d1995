"""
Account security service components.

Each component owns one concern of the authentication core; the
AuthCoordinator composes them into the boundary operations.
"""

from .auth_coordinator import AuthCoordinator
from .credential_store import CredentialStore
from .lockout_policy import LockoutPolicy
from .password_service import PasswordService
from .session_manager import SessionManager
from .token_ledger import TokenLedger
from .two_factor import TwoFactorChallenge

__all__ = [
    "AuthCoordinator",
    "CredentialStore",
    "LockoutPolicy",
    "PasswordService",
    "SessionManager",
    "TokenLedger",
    "TwoFactorChallenge",
]
