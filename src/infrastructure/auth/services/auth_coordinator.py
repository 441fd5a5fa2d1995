"""
Account security coordinator.

Provides a single entry point for login, registration, account recovery
and second-factor management by orchestrating the credential store, token
ledger, lockout policy, session manager and two-factor challenge.

Every operation runs as one unit of work on the request's database
session: a failure rolls the transaction back, database errors are logged
in full and surfaced as StoreOrDeliveryFailure.
"""

import logging
import re
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from src.infrastructure.config import AuthConfig, LinkConfig, get_auth_config, get_link_config

from ..background import BackgroundTaskQueue
from ..exceptions import (
    AuthException,
    EmailInUseError,
    InvalidCredentialError,
    NotAuthenticatedError,
    NotFoundError,
    StoreOrDeliveryFailure,
    TokenError,
    ValidationError,
)
from ..notifier import Notifier
from ..types import (
    SYSTEM_CONTEXT,
    CallerContext,
    LoginOutcome,
    RequestContext,
    SessionCheck,
    TokenType,
    UserSummary,
    utcnow,
)
from .credential_store import CredentialStore
from .lockout_policy import LockoutPolicy
from .password_service import PasswordService
from .session_manager import SessionManager
from .token_ledger import TokenLedger
from .two_factor import TwoFactorChallenge

logger = logging.getLogger(__name__)

USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{3,30}$")


def _validate_username(username: str | None) -> str:
    """Validate username format."""
    username = (username or "").strip()
    if not USERNAME_PATTERN.match(username):
        raise ValidationError(
            "Username must be 3-30 characters, alphanumeric with _ or -", field="username"
        )
    return username


def _normalize_email(email: str | None, message: str = "Valid email required") -> str:
    """Validate and normalize email address."""
    email = (email or "").strip()
    if not email:
        raise ValidationError(message, field="email")
    try:
        return validate_email(email, check_deliverability=False).normalized
    except EmailNotValidError as e:
        raise ValidationError(f"Invalid email: {e!s}", field="email")


def _require(value: Any, message: str, field: str) -> None:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(message, field=field)


class AuthCoordinator:
    """
    Account security orchestrator.

    One instance serves one request: it is bound to that request's database
    session. The notifier and background queue are shared application-wide.
    """

    def __init__(
        self,
        db_session: Session,
        notifier: Notifier,
        background: BackgroundTaskQueue | None = None,
        auth_config: AuthConfig | None = None,
        link_config: LinkConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the coordinator with its collaborators.

        Args:
            db_session: Database session for this request
            notifier: Email delivery
            background: Queue for best-effort deliveries
            auth_config: Account security settings
            link_config: Base URIs for emailed links
            clock: Source of the current naive UTC time
        """
        self.db = db_session
        self.notifier = notifier
        self.background = background or BackgroundTaskQueue()
        self.config = auth_config or get_auth_config()
        self.links = link_config or get_link_config()

        self.password_service = PasswordService(self.config.bcrypt_rounds)
        self.credentials = CredentialStore(db_session, self.password_service, clock)
        self.tokens = TokenLedger(db_session, clock)
        self.sessions = SessionManager(db_session, self.config.session_ttl, clock)
        self.lockout = LockoutPolicy(
            db_session,
            self.credentials,
            self.tokens,
            notifier,
            self.links,
            max_failed_logins=self.config.max_failed_logins,
            link_ttl=self.config.lockout_link_ttl,
        )
        self.two_factor = TwoFactorChallenge(
            db_session,
            self.credentials,
            self.tokens,
            self.sessions,
            notifier,
            token_ttls=self.config.token_ttls,
        )

    @contextmanager
    def _unit_of_work(self, operation: str) -> Iterator[None]:
        try:
            yield
        except AuthException:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception(f"Database error during {operation}: {e}")
            raise StoreOrDeliveryFailure(f"Database error during {operation}") from e

    # Login
    async def login(
        self, username: str, password: str, context: RequestContext = SYSTEM_CONTEXT
    ) -> LoginOutcome:
        """
        Authenticate with username and password.

        Returns:
            An authenticated outcome carrying the session token, or a pending
            outcome when a second factor code was sent

        Raises:
            ValidationError: If either field is missing
            InvalidCredentialError: For unknown users, wrong passwords and
                locked accounts alike
        """
        _require(username, "Username is required", "username")
        _require(password, "Password is required", "password")
        username = username.strip()

        with self._unit_of_work("login"):
            try:
                user = self.credentials.verify(username, password)
            except InvalidCredentialError as e:
                logger.info(f"Login failed: {e}", extra={"operation_type": "authentication"})
                await self.lockout.on_failure(username, context)
                self._log_audit_event(
                    "login_failed", context=context, success=False, username=username
                )
                raise

            outcome = await self.two_factor.begin(user, context)

        self._log_audit_event(
            "login_2fa_pending" if outcome.requires_2fa else "login_success",
            user_id=outcome.user_id,
            context=context,
        )
        return outcome

    async def submit_login_code(
        self, user_id: int | None, code: str, context: RequestContext = SYSTEM_CONTEXT
    ) -> LoginOutcome:
        """
        Complete a login with the emailed code.

        Raises:
            ValidationError: If the code or user id is missing
            InvalidCodeError: If the code is wrong, expired or already used
        """
        _require(code, "Code and user ID required", "code")
        _require(user_id, "Code and user ID required", "userId")
        try:
            user_id = int(user_id)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            raise ValidationError("Code and user ID required", field="userId")

        with self._unit_of_work("submit_login_code"):
            try:
                outcome = await self.two_factor.submit_code(user_id, code.strip(), context)
            except TokenError:
                self._log_audit_event(
                    "login_2fa_failed", user_id=user_id, context=context, success=False
                )
                raise

        self._log_audit_event("login_success", user_id=user_id, context=context, second_factor=True)
        return outcome

    # Registration and email verification
    async def register(
        self,
        username: str,
        email: str,
        password: str,
        context: RequestContext = SYSTEM_CONTEXT,
    ) -> dict[str, Any]:
        """
        Create an account and send the verification email in the background.

        Raises:
            ValidationError: For malformed input or a weak password
            DuplicateUserError: If the username or email is taken
        """
        username = _validate_username(username)
        email = _normalize_email(email)
        self.password_service.enforce_policy(password)

        with self._unit_of_work("register"):
            password_hash = self.password_service.hash_password(password)
            user = self.credentials.register(username, email, password_hash)
            user_id = int(user.id)
            record = self.tokens.create(
                user_id,
                TokenType.VERIFY_EMAIL,
                self.config.ttl_for(TokenType.VERIFY_EMAIL),
                context,
            )
            link = self.links.verify_email_link(str(record.token))
            self.db.commit()

        notifier = self.notifier
        self.background.submit(
            f"verification-email:{user_id}",
            lambda: notifier.send_verification(email, username, link),
        )

        self._log_audit_event("user_registered", user_id=user_id, context=context)
        return {
            "message": "Registration successful! You can now log in.",
            "userId": user_id,
            "pendingVerification": True,
        }

    async def send_verification_link(
        self, username: str, context: RequestContext = SYSTEM_CONTEXT
    ) -> dict[str, Any]:
        """Send a fresh verification link unless the email is already verified."""
        _require(username, "Username is required", "username")

        with self._unit_of_work("send_verification_link"):
            user = self.credentials.get_by_username(username.strip())
            if user is None:
                raise NotFoundError(f"No user named {username!r}")
            if user.email_verified:
                return {"message": "Email already verified", "alreadyVerified": True}

            record = self.tokens.create(
                int(user.id),
                TokenType.VERIFY_EMAIL,
                self.config.ttl_for(TokenType.VERIFY_EMAIL),
                context,
            )
            link = self.links.verify_email_link(str(record.token))
            email, name = str(user.email), str(user.username)
            self.db.commit()

            await self.notifier.send_verification(email, name, link)

        return {"message": "Verification email sent!", "sent": True}

    async def verify_email(self, token: str) -> dict[str, Any]:
        """
        Redeem an email verification token.

        An account that is already verified still consumes the token and
        reports success.
        """
        with self._unit_of_work("verify_email"):
            record = self.tokens.redeem(token, TokenType.VERIFY_EMAIL)
            user_id = int(record.user_id)
            changed = self.credentials.mark_email_verified(user_id)
            self.db.commit()

        self._log_audit_event("email_verified", user_id=user_id)
        if not changed:
            return {"message": "Email already verified", "verified": True}
        return {"message": "Email verified! You can now log in.", "verified": True}

    # Password reset
    async def send_reset_link(
        self, email: str, context: RequestContext = SYSTEM_CONTEXT
    ) -> dict[str, Any]:
        """
        Email a password reset link.

        Raises:
            ValidationError: If the email is missing or malformed
            NotFoundError: If no account uses the email
            DeliveryError: If the email could not be sent
        """
        email = _normalize_email(email, message="Email is required")

        with self._unit_of_work("send_reset_link"):
            user = self.credentials.get_by_email(email)
            if user is None:
                raise NotFoundError("No user with that email")

            user_id = int(user.id)
            record = self.tokens.create(
                user_id, TokenType.RESET, self.config.ttl_for(TokenType.RESET), context
            )
            link = self.links.reset_link(str(record.token))
            name = str(user.username)
            self.db.commit()

            await self.notifier.send_password_reset(email, name, link)

        self._log_audit_event("password_reset_requested", user_id=user_id, context=context)
        return {"message": "Password reset link sent to your email!", "sent": True}

    async def check_reset_token(self, token: str) -> dict[str, Any]:
        """Report whether a reset token can still be redeemed."""
        with self._unit_of_work("check_reset_token"):
            try:
                self.tokens.validate(token, TokenType.RESET)
            except TokenError:
                return {"valid": False}
        return {"valid": True}

    async def reset_password(self, token: str, new_password: str) -> dict[str, Any]:
        """
        Set a new password with a reset token.

        A successful reset also unlocks the account and clears the failure
        counter. A weak password leaves the token unused.

        Raises:
            TokenError: If the token is not redeemable
            WeakPasswordError: If the password fails the policy
        """
        with self._unit_of_work("reset_password"):
            record = self.tokens.validate(token, TokenType.RESET)
            self.password_service.enforce_policy(new_password)
            password_hash = self.password_service.hash_password(new_password)

            if not self.tokens.mark_used(record, commit=False):
                raise TokenError(f"Reset token {record.id} was claimed by a concurrent request")
            user_id = int(record.user_id)
            self.credentials.update_password(user_id, password_hash)
            self.db.commit()

        self._log_audit_event("password_reset", user_id=user_id)
        return {"message": "Password reset successful"}

    # Email change
    async def send_change_email_link(self, caller: CallerContext) -> dict[str, Any]:
        """Email a change-email link to the caller's current address."""
        user = caller.user
        if not user.email:
            raise ValidationError("No email address associated with your account", field="email")

        with self._unit_of_work("send_change_email_link"):
            record = self.tokens.create(
                caller.user_id,
                TokenType.CHANGE_EMAIL,
                self.config.ttl_for(TokenType.CHANGE_EMAIL),
                caller.request,
            )
            link = self.links.change_email_link(str(record.token))
            email, name = str(user.email), str(user.username)
            self.db.commit()

            await self.notifier.send_email_change_link(email, name, link)

        return {"message": "Change email link sent to your current email!", "sent": True}

    async def check_change_email_token(self, token: str) -> dict[str, Any]:
        """
        Check a change-email token without consuming it.

        Raises:
            TokenError: If the token is not redeemable
        """
        with self._unit_of_work("check_change_email_token"):
            self.tokens.validate(token, TokenType.CHANGE_EMAIL)
        return {"message": "Token valid", "valid": True}

    async def change_email(self, token: str, new_email: str) -> dict[str, Any]:
        """
        Replace the account email with a change-email token.

        Raises:
            ValidationError: If the new email is malformed
            TokenError: If the token is not redeemable
            EmailInUseError: If another account uses the new email
        """
        new_email = _normalize_email(new_email)

        with self._unit_of_work("change_email"):
            record = self.tokens.redeem(token, TokenType.CHANGE_EMAIL)
            user_id = int(record.user_id)
            try:
                self.credentials.change_email(user_id, new_email)
                self.db.commit()
            except IntegrityError as e:
                self.db.rollback()
                raise EmailInUseError(f"Email taken concurrently: {e}") from e

        self._log_audit_event("email_changed", user_id=user_id)
        return {"message": "Email changed successfully"}

    # Unlock
    async def unlock_account(self, token: str) -> dict[str, Any]:
        """Reactivate a locked account with an unlock token."""
        with self._unit_of_work("unlock_account"):
            record = self.tokens.redeem(token, TokenType.UNLOCK)
            user_id = int(record.user_id)
            self.credentials.unlock(user_id)
            self.db.commit()

        self._log_audit_event("account_unlocked", user_id=user_id)
        return {"message": "Account unlocked successfully"}

    # Second factor management
    async def enable_2fa(self, caller: CallerContext) -> dict[str, Any]:
        """Send a setup code to the caller."""
        with self._unit_of_work("enable_2fa"):
            await self.two_factor.request_setup_code(caller.user, caller.request)
        return {"message": "2FA code sent"}

    async def confirm_2fa(self, caller: CallerContext, code: str) -> dict[str, Any]:
        """Turn the second factor on with a setup code."""
        _require(code, "Code required", "code")
        with self._unit_of_work("confirm_2fa"):
            await self.two_factor.confirm_setup(caller.user_id, code.strip())

        self._log_audit_event("2fa_enabled", user_id=caller.user_id, context=caller.request)
        return {"message": "2FA enabled successfully!", "enabled": True}

    async def disable_2fa(self, caller: CallerContext, code: str) -> dict[str, Any]:
        """Turn the second factor off with a setup or login code."""
        _require(code, "Code required", "code")
        with self._unit_of_work("disable_2fa"):
            await self.two_factor.disable(caller.user_id, code.strip())

        self._log_audit_event("2fa_disabled", user_id=caller.user_id, context=caller.request)
        return {"message": "2FA disabled successfully!", "disabled": True}

    # Sessions
    async def logout(self, caller: CallerContext) -> dict[str, Any]:
        """Revoke the caller's session and any other session of the user."""
        with self._unit_of_work("logout"):
            await self.sessions.destroy(caller.session_token, commit=False)
            await self.sessions.destroy_all(caller.user_id, commit=False)
            self.db.commit()

        self._log_audit_event("logout", user_id=caller.user_id, context=caller.request)
        return {"message": "Logged out successfully"}

    async def check_session(self, session_token: str | None) -> SessionCheck:
        """Describe the session's user, sliding its expiry when valid."""
        with self._unit_of_work("check_session"):
            user = await self.sessions.validate(session_token)
        if user is None:
            return SessionCheck(authenticated=False)
        return SessionCheck(authenticated=True, user=UserSummary.from_user(user))

    async def resolve_caller(
        self, session_token: str | None, context: RequestContext = SYSTEM_CONTEXT
    ) -> CallerContext:
        """
        Build the authenticated caller for a session token.

        Raises:
            NotAuthenticatedError: If the session is missing, inactive or expired
        """
        with self._unit_of_work("resolve_caller"):
            user = await self.sessions.validate(session_token)
        if user is None:
            raise NotAuthenticatedError("No valid session")
        return CallerContext(user=user, session_token=str(session_token), request=context)

    def _log_audit_event(
        self,
        event_type: str,
        user_id: int | None = None,
        context: RequestContext | None = None,
        success: bool = True,
        **event_data: Any,
    ) -> None:
        """Log audit event."""
        logger.info(
            f"Auth event: {event_type}",
            extra={
                "operation_type": "security_event",
                "event_type": event_type,
                "user_id": user_id,
                "ip_address": context.ip_address if context else None,
                "success": success,
                **event_data,
            },
        )
