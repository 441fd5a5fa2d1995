"""
Failed-login lockout policy.

Counts consecutive failed logins per user and locks the account once the
threshold is reached. The caller whose conditional update performs the
Active -> Locked transition mints the unlock and reset links and sends the
lockout notice, so the notice goes out exactly once per lockout.
"""

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from ..exceptions import StoreOrDeliveryFailure
from ..notifier import Notifier
from ..types import SYSTEM_CONTEXT, RequestContext, TokenType
from .credential_store import CredentialStore
from .token_ledger import TokenLedger

if TYPE_CHECKING:
    from src.infrastructure.config import LinkConfig

logger = logging.getLogger(__name__)


class LockoutPolicy:
    """Failed-attempt counter and lockout escalation."""

    def __init__(
        self,
        db_session: Session,
        credential_store: CredentialStore,
        token_ledger: TokenLedger,
        notifier: Notifier,
        link_builder: "LinkConfig",
        max_failed_logins: int = 5,
        link_ttl: timedelta = timedelta(hours=24),
    ):
        self.db = db_session
        self.credentials = credential_store
        self.tokens = token_ledger
        self.notifier = notifier
        self.links = link_builder
        self.max_failed_logins = max_failed_logins
        self.link_ttl = link_ttl

    async def on_failure(self, username: str, context: RequestContext = SYSTEM_CONTEXT) -> bool:
        """
        Record a failed login for username.

        Unknown usernames are ignored. Attempts against an already locked
        account still count but never lock or notify again.

        Returns:
            True if this attempt locked the account
        """
        user = self.credentials.get_by_username(username)
        if user is None:
            return False

        user_id = int(user.id)
        count = self.credentials.increment_failed_logins(user_id)
        locked_now = self.credentials.lock_if_threshold_reached(user_id, self.max_failed_logins)

        if not locked_now:
            self.db.commit()
            logger.info(
                f"Failed login {count}/{self.max_failed_logins} for user {user_id}",
                extra={"operation_type": "security_event", "user_id": user_id},
            )
            return False

        unlock = self.tokens.create(user_id, TokenType.UNLOCK, self.link_ttl, context)
        reset = self.tokens.create(user_id, TokenType.RESET, self.link_ttl, context)
        unlock_link = self.links.unlock_link(unlock.token)
        reset_link = self.links.reset_link(reset.token)
        email, name = str(user.email), str(user.username)
        self.db.commit()

        logger.warning(
            f"Account {user_id} locked after {count} failed logins",
            extra={"operation_type": "security_event", "user_id": user_id},
        )

        try:
            await self.notifier.send_account_locked_notice(email, name, unlock_link, reset_link)
        except StoreOrDeliveryFailure as e:
            # The lock stands; the user can still request a reset link
            logger.error(f"Lockout notice for user {user_id} not delivered: {e}")
        return True

