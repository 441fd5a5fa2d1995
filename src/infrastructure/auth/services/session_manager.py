"""
Session management service.

Handles session creation, validation with sliding expiry and revocation.
Each user has at most one session row; creating a session replaces the
previous one in a single upsert keyed on the user id.
"""

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.orm import Session

from ..models import User, UserSession
from ..types import SYSTEM_CONTEXT, RequestContext, utcnow

logger = logging.getLogger(__name__)

SESSION_TOKEN_BYTES = 48


class SessionManager:
    """Session management service."""

    def __init__(
        self,
        db_session: Session,
        session_ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db_session
        self.session_ttl = session_ttl
        self.clock = clock

    async def create(
        self, user_id: int, context: RequestContext = SYSTEM_CONTEXT, commit: bool = True
    ) -> str:
        """
        Issue a new session for a user, superseding any existing one.

        Returns:
            The opaque session token
        """
        token = secrets.token_hex(SESSION_TOKEN_BYTES)
        now = self.clock()
        values = {
            "user_id": user_id,
            "session_token": token,
            "login_at": now,
            "expires_at": now + self.session_ttl,
            "ip_address": context.issuing_ip,
            "user_agent": context.issuing_user_agent,
            "is_active": True,
        }
        self._upsert(values)
        if commit:
            self.db.commit()

        logger.info(f"Session created for user {user_id} from {context.issuing_ip}")
        return token

    def _upsert(self, values: dict) -> None:
        changes = {k: v for k, v in values.items() if k != "user_id"}
        dialect = self.db.get_bind().dialect.name

        if dialect in ("sqlite", "postgresql"):
            insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
            stmt = insert(UserSession).values(**values)
            self.db.execute(stmt.on_conflict_do_update(index_elements=["user_id"], set_=changes))
        elif dialect in ("mysql", "mariadb"):
            stmt = mysql.insert(UserSession).values(**values)
            self.db.execute(stmt.on_duplicate_key_update(**changes))
        else:
            result = self.db.execute(
                update(UserSession)
                .where(UserSession.user_id == values["user_id"])
                .values(**changes)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                self.db.add(UserSession(**values))
                self.db.flush()

    async def validate(self, session_token: str | None) -> User | None:
        """
        Resolve a session token to its user.

        A successful validation slides the expiry to now + session TTL.

        Returns:
            The user, or None if the session is unknown, inactive or expired
        """
        if not session_token:
            return None

        now = self.clock()
        result = self.db.execute(
            update(UserSession)
            .where(
                UserSession.session_token == session_token,
                UserSession.is_active.is_(True),
                UserSession.expires_at > now,
            )
            .values(expires_at=now + self.session_ttl)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        self.db.commit()

        return self.db.execute(
            select(User)
            .join(UserSession, UserSession.user_id == User.id)
            .where(UserSession.session_token == session_token)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    async def destroy(self, session_token: str | None, commit: bool = True) -> bool:
        """Deactivate one session. The row is kept."""
        if not session_token:
            return False
        result = self.db.execute(
            update(UserSession)
            .where(UserSession.session_token == session_token, UserSession.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        if commit:
            self.db.commit()
        return result.rowcount == 1

    async def destroy_all(self, user_id: int, commit: bool = True) -> int:
        """Deactivate every session of a user."""
        result = self.db.execute(
            update(UserSession)
            .where(UserSession.user_id == user_id, UserSession.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        if commit:
            self.db.commit()
        count = result.rowcount or 0
        if count:
            logger.info(f"Deactivated {count} session(s) for user {user_id}")
        return count
