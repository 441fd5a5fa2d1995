"""
Two-factor challenge.

Second factor is a four digit code sent by email. Administrators and users
who opted in must present a code after their password before a session is
issued. Codes also drive the setup and disable flows for opted-in users.
"""

import logging
from datetime import timedelta

from sqlalchemy.orm import Session

from ..exceptions import InvalidCodeError, InvalidCredentialError, ValidationError
from ..models import User
from ..notifier import Notifier
from ..types import (
    DEFAULT_TOKEN_TTLS,
    SYSTEM_CONTEXT,
    LoginOutcome,
    RequestContext,
    TokenType,
)
from .credential_store import CredentialStore
from .session_manager import SessionManager
from .token_ledger import TokenLedger

logger = logging.getLogger(__name__)


class TwoFactorChallenge:
    """Decides between immediate session issuance and a pending code."""

    def __init__(
        self,
        db_session: Session,
        credential_store: CredentialStore,
        token_ledger: TokenLedger,
        session_manager: SessionManager,
        notifier: Notifier,
        token_ttls: dict[TokenType, timedelta] | None = None,
    ):
        self.db = db_session
        self.credentials = credential_store
        self.tokens = token_ledger
        self.sessions = session_manager
        self.notifier = notifier
        self.token_ttls = token_ttls or DEFAULT_TOKEN_TTLS

    async def begin(self, user: User, context: RequestContext = SYSTEM_CONTEXT) -> LoginOutcome:
        """
        Continue a login whose password was verified.

        Users who need a second factor are sent a login code and no session
        is issued yet. Everyone else is authenticated straight away.
        """
        user_id = int(user.id)

        if not user.requires_second_factor():
            if not self.credentials.record_success(user_id):
                raise InvalidCredentialError(f"Account {user_id} locked during login")
            session_token = await self.sessions.create(user_id, context)
            return LoginOutcome(authenticated=True, user_id=user_id, session_token=session_token)

        record = self.tokens.create(
            user_id, TokenType.TWO_FA_LOGIN, self.token_ttls[TokenType.TWO_FA_LOGIN], context
        )
        code = str(record.token)
        email, name = str(user.email), str(user.username)
        self.db.commit()

        logger.info(
            f"Login code issued for user {user_id}",
            extra={"operation_type": "authentication", "user_id": user_id},
        )
        await self.notifier.send_two_factor_code(email, name, code)
        return LoginOutcome(authenticated=False, requires_2fa=True, user_id=user_id)

    async def submit_code(
        self, user_id: int, code: str, context: RequestContext = SYSTEM_CONTEXT
    ) -> LoginOutcome:
        """
        Redeem a login code and issue the session.

        All earlier sessions of the user are deactivated first. The account
        must still be active when the counter is reset; the code claim,
        counter reset and new session commit together.

        Raises:
            InvalidCodeError: If the code is wrong, expired or already used,
                or the account is missing or locked
        """
        if not self.credentials.record_success(user_id):
            raise InvalidCodeError(f"Login code submitted for unavailable account {user_id}")

        self.tokens.redeem(code, TokenType.TWO_FA_LOGIN, user_id=user_id)
        await self.sessions.destroy_all(user_id, commit=False)
        session_token = await self.sessions.create(user_id, context, commit=False)
        self.db.commit()

        return LoginOutcome(authenticated=True, user_id=user_id, session_token=session_token)

    async def request_setup_code(
        self, user: User, context: RequestContext = SYSTEM_CONTEXT
    ) -> None:
        """
        Send a setup code to an authenticated user.

        Raises:
            ValidationError: If the user's email is not verified
        """
        if not user.email_verified:
            raise ValidationError("Verify email first", field="email")

        user_id = int(user.id)
        record = self.tokens.create(
            user_id, TokenType.TWO_FA_SETUP, self.token_ttls[TokenType.TWO_FA_SETUP], context
        )
        code = str(record.token)
        email, name = str(user.email), str(user.username)
        self.db.commit()

        logger.info(
            f"2FA setup code issued for user {user_id}",
            extra={"operation_type": "security_event", "user_id": user_id},
        )
        await self.notifier.send_two_factor_code(email, name, code)

    async def confirm_setup(self, user_id: int, code: str) -> None:
        """Redeem a setup code and turn the second factor on."""
        self.tokens.redeem(code, TokenType.TWO_FA_SETUP, user_id=user_id)
        self.credentials.set_two_factor(user_id, True)
        self.db.commit()

    async def disable(self, user_id: int, code: str) -> None:
        """Redeem a setup or login code and turn the second factor off."""
        self.tokens.redeem(code, (TokenType.TWO_FA_SETUP, TokenType.TWO_FA_LOGIN), user_id=user_id)
        self.credentials.set_two_factor(user_id, False)
        self.db.commit()
