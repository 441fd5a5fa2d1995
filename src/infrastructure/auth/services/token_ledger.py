"""
Token ledger.

Issues, looks up and redeems the single-use security tokens behind every
recovery flow: email verification, password reset, email change, account
unlock and the emailed second-factor codes.

A token is consumed with a conditional update that only matches an unused
row, so when several requests redeem the same token concurrently exactly
one of them succeeds.
"""

import logging
import secrets
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..exceptions import InvalidCodeError, StoreOrDeliveryFailure, TokenError
from ..models import SecurityToken
from ..types import NUMERIC_CODE_TYPES, SYSTEM_CONTEXT, RequestContext, TokenType, utcnow

logger = logging.getLogger(__name__)

TOKEN_BYTES = 48
CODE_MIN = 1000
CODE_SPAN = 9000
MAX_CODE_ATTEMPTS = 50


class TokenLedger:
    """Single-use, typed, expiring tokens."""

    def __init__(self, db_session: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db_session
        self.clock = clock

    @staticmethod
    def generate_token() -> str:
        """96 hex characters from a cryptographically secure source."""
        return secrets.token_hex(TOKEN_BYTES)

    @staticmethod
    def generate_code() -> str:
        """Four decimal digits in 1000..9999."""
        return str(CODE_MIN + secrets.randbelow(CODE_SPAN))

    def create(
        self,
        user_id: int,
        token_type: TokenType,
        ttl: timedelta,
        context: RequestContext = SYSTEM_CONTEXT,
    ) -> SecurityToken:
        """
        Issue a token of the given type for a user.

        Link tokens are long hex strings. Second-factor types get a numeric
        code that does not collide with another outstanding code of the same
        user and type.
        """
        if token_type in NUMERIC_CODE_TYPES:
            value = self._unique_code(user_id, token_type)
        else:
            value = self.generate_token()

        now = self.clock()
        record = SecurityToken(
            user_id=user_id,
            token=value,
            token_type=token_type,
            created_at=now,
            expires_at=now + ttl,
            used=False,
            ip_address=context.issuing_ip,
            user_agent=context.issuing_user_agent,
        )
        self.db.add(record)
        self.db.flush()

        logger.debug(f"Issued {token_type.value} token {record.id} for user {user_id}")
        return record

    def _unique_code(self, user_id: int, token_type: TokenType) -> str:
        outstanding = set(
            self.db.execute(
                select(SecurityToken.token).where(
                    SecurityToken.user_id == user_id,
                    SecurityToken.token_type == token_type,
                    SecurityToken.used.is_(False),
                    SecurityToken.expires_at > self.clock(),
                )
            ).scalars()
        )
        for _ in range(MAX_CODE_ATTEMPTS):
            code = self.generate_code()
            if code not in outstanding:
                return code
        raise StoreOrDeliveryFailure(
            f"No free {token_type.value} code for user {user_id} after "
            f"{MAX_CODE_ATTEMPTS} attempts ({len(outstanding)} outstanding)"
        )

    def validate(
        self,
        value: str,
        token_types: TokenType | Iterable[TokenType],
        user_id: int | None = None,
    ) -> SecurityToken:
        """
        Find a redeemable token without consuming it.

        Args:
            value: Token string or numeric code
            token_types: Accepted type or types
            user_id: Scope the lookup to one user; required for numeric codes

        Raises:
            TokenError: If no unused, unexpired token of an accepted type
                matches. InvalidCodeError is raised for second-factor codes.
        """
        types = [token_types] if isinstance(token_types, TokenType) else list(token_types)
        code_lookup = all(t in NUMERIC_CODE_TYPES for t in types)
        error_cls = InvalidCodeError if code_lookup else TokenError

        if not value:
            raise error_cls("Empty token")
        if code_lookup and user_id is None:
            raise error_cls("Second-factor codes must be validated for a specific user")

        query = select(SecurityToken).where(
            SecurityToken.token == value,
            SecurityToken.token_type.in_(types),
            SecurityToken.used.is_(False),
            SecurityToken.expires_at > self.clock(),
        )
        if user_id is not None:
            query = query.where(SecurityToken.user_id == user_id)

        record = self.db.execute(
            query.order_by(SecurityToken.created_at.desc()).limit(1)
        ).scalar_one_or_none()

        if record is None:
            raise error_cls(f"No redeemable {'/'.join(t.value for t in types)} token")
        return record

    def mark_used(self, record: SecurityToken, commit: bool = True) -> bool:
        """
        Consume a token.

        Returns True only for the caller whose update flipped the token from
        unused to used; every other concurrent caller gets False.
        """
        result = self.db.execute(
            update(SecurityToken)
            .where(SecurityToken.id == record.id, SecurityToken.used.is_(False))
            .values(used=True)
            .execution_options(synchronize_session=False)
        )
        claimed = result.rowcount == 1
        if commit:
            self.db.commit()
        return claimed

    def redeem(
        self,
        value: str,
        token_types: TokenType | Iterable[TokenType],
        user_id: int | None = None,
    ) -> SecurityToken:
        """
        Validate and claim a token in the current transaction.

        The caller commits together with the account change the token
        authorizes, or rolls back to leave the token unused.

        Raises:
            TokenError: If the token is not redeemable or another request
                claimed it first
        """
        record = self.validate(value, token_types, user_id=user_id)
        if not self.mark_used(record, commit=False):
            error_cls = InvalidCodeError if record.token_type in NUMERIC_CODE_TYPES else TokenError
            raise error_cls(f"Token {record.id} was claimed by a concurrent request")
        return record

