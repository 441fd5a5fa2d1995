"""
Credential store.

Owns user identity records and password verification. Counter and status
changes are issued as single SQL statements so concurrent requests for the
same user never lose an update.
"""

import logging
import secrets
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..exceptions import DuplicateUserError, EmailInUseError, InvalidCredentialError
from ..models import User
from ..types import AccountStatus, Role, utcnow
from .password_service import PasswordService

logger = logging.getLogger(__name__)

USER_ID_MIN = 100000
USER_ID_MAX = 999999


class CredentialStore:
    """User identity records and password verification."""

    def __init__(
        self,
        db_session: Session,
        password_service: PasswordService,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db_session
        self.password_service = password_service
        self.clock = clock

    # Lookups
    def get_by_id(self, user_id: int) -> User | None:
        return self.db.get(User, user_id, populate_existing=True)

    def get_by_username(self, username: str) -> User | None:
        return self.db.execute(
            select(User).where(User.username == username)
        ).scalar_one_or_none()

    def get_by_email(self, email: str) -> User | None:
        return self.db.execute(select(User).where(User.email == email)).scalar_one_or_none()

    def verify(self, username: str, password: str) -> User:
        """
        Verify a username/password pair.

        Unknown users, wrong passwords and locked accounts all raise the same
        InvalidCredentialError. The password hash is checked in every case so
        the three outcomes take comparable time.

        Raises:
            InvalidCredentialError: If the credentials do not authenticate
        """
        user = self.get_by_username(username)

        if user is None:
            self.password_service.dummy_verify(password)
            raise InvalidCredentialError(f"Unknown username {username!r}")

        password_ok = self.password_service.verify_password(password, str(user.password_hash))

        if user.is_locked():
            raise InvalidCredentialError(f"Login attempt on locked account {user.id}")

        if not password_ok:
            raise InvalidCredentialError(f"Wrong password for user {user.id}")

        if self.password_service.needs_rehash(str(user.password_hash)):
            user.password_hash = self.password_service.hash_password(password)  # type: ignore[assignment]
            logger.info(f"Password hash upgraded for user {user.id}")

        return user

    def record_success(self, user_id: int) -> bool:
        """
        Reset the failure counter and count the login.

        Only an active account is updated, so a lock taken by a concurrent
        request after the password check is never undone here.

        Returns:
            False if the account is missing or no longer active
        """
        now = self.clock()
        result = self.db.execute(
            update(User)
            .where(User.id == user_id, User.account_status == AccountStatus.ACTIVE)
            .values(
                failed_login_count=0,
                login_count=User.login_count + 1,
                last_login_at=now,
                updated_at=now,
            )
        )
        return result.rowcount == 1

    def register(self, username: str, email: str, password_hash: str) -> User:
        """
        Create a new user.

        Raises:
            DuplicateUserError: If the username or email already exists; the
                username is checked first
        """
        self._check_user_exists(username, email)

        for _ in range(3):
            user = User(
                id=self._new_user_id(),
                username=username,
                email=email,
                password_hash=password_hash,
                role=Role.USER,
                account_status=AccountStatus.ACTIVE,
                email_verified=False,
                is_2fa_enabled=False,
                failed_login_count=0,
                login_count=0,
                created_at=self.clock(),
            )
            self.db.add(user)
            try:
                self.db.flush()
                return user
            except IntegrityError:
                self.db.rollback()
                # A concurrent registration may have taken the name or address
                self._check_user_exists(username, email)
                logger.warning("User id collision during registration, retrying")

        raise RuntimeError("Could not allocate a user id")

    def _check_user_exists(self, username: str, email: str) -> None:
        if self.get_by_username(username) is not None:
            raise DuplicateUserError("username")
        if self.get_by_email(email) is not None:
            raise DuplicateUserError("email")

    def _new_user_id(self) -> int:
        while True:
            candidate = USER_ID_MIN + secrets.randbelow(USER_ID_MAX - USER_ID_MIN + 1)
            if self.db.get(User, candidate) is None:
                return candidate

    # Mutations used by the recovery flows
    def mark_email_verified(self, user_id: int) -> bool:
        """Set emailVerified; returns False when it was already set."""
        result = self.db.execute(
            update(User)
            .where(User.id == user_id, User.email_verified.is_(False))
            .values(email_verified=True, updated_at=self.clock())
        )
        return result.rowcount == 1

    def update_password(self, user_id: int, password_hash: str) -> None:
        """Store a new hash; a password reset also unlocks the account."""
        now = self.clock()
        self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                password_hash=password_hash,
                last_password_change=now,
                account_status=AccountStatus.ACTIVE,
                failed_login_count=0,
                updated_at=now,
            )
        )

    def change_email(self, user_id: int, new_email: str) -> None:
        """
        Replace the email address and require it to be verified again.

        Raises:
            EmailInUseError: If the address belongs to a different user
        """
        existing = self.db.execute(
            select(User.id).where(User.email == new_email, User.id != user_id)
        ).first()
        if existing is not None:
            raise EmailInUseError(f"Email already registered to user {existing[0]}")

        self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(email=new_email, email_verified=False, updated_at=self.clock())
        )

    def unlock(self, user_id: int) -> None:
        """Reactivate a locked account and clear its failure counter."""
        self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                account_status=AccountStatus.ACTIVE,
                failed_login_count=0,
                updated_at=self.clock(),
            )
        )

    def set_two_factor(self, user_id: int, enabled: bool) -> None:
        now = self.clock()
        values: dict = {"is_2fa_enabled": enabled, "updated_at": now}
        if enabled:
            values["last_2fa_verified_at"] = now
        self.db.execute(update(User).where(User.id == user_id).values(**values))

    # Failure counter primitives
    def increment_failed_logins(self, user_id: int) -> int:
        """Atomically add one failed attempt and return the new count."""
        self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(failed_login_count=User.failed_login_count + 1)
        )
        return int(
            self.db.execute(
                select(User.failed_login_count).where(User.id == user_id)
            ).scalar_one()
        )

    def lock_if_threshold_reached(self, user_id: int, threshold: int) -> bool:
        """
        Move an active account to locked once the counter reaches threshold.

        Returns True only for the single caller whose update performed the
        transition.
        """
        result = self.db.execute(
            update(User)
            .where(
                User.id == user_id,
                User.account_status == AccountStatus.ACTIVE,
                User.failed_login_count >= threshold,
            )
            .values(account_status=AccountStatus.LOCKED, updated_at=self.clock())
        )
        return result.rowcount == 1
