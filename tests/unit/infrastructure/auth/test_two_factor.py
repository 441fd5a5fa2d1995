"""
Unit tests for the emailed second-factor challenge.
"""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from src.infrastructure.auth.exceptions import (
    InvalidCodeError,
    InvalidCredentialError,
    ValidationError,
)
from src.infrastructure.auth.models import SecurityToken, User, UserSession
from src.infrastructure.auth.notifier import SmtpNotifier
from src.infrastructure.auth.services.credential_store import CredentialStore
from src.infrastructure.auth.services.lockout_policy import LockoutPolicy
from src.infrastructure.auth.services.session_manager import SessionManager
from src.infrastructure.auth.services.token_ledger import TokenLedger
from src.infrastructure.auth.services.two_factor import TwoFactorChallenge
from src.infrastructure.auth.types import AccountStatus, Role, TokenType
from src.infrastructure.database.connection import ConnectionFactory


@pytest.fixture
def challenge(db_session, credential_store, token_ledger, session_manager, notifier):
    return TwoFactorChallenge(
        db_session, credential_store, token_ledger, session_manager, notifier
    )


def _sent_code(notifier):
    email, name, code = notifier.send_two_factor_code.await_args.args
    return code


@pytest.mark.asyncio
class TestBegin:
    """Test the branch taken after a verified password."""

    async def test_plain_user_is_authenticated(self, db_session, challenge, create_user, notifier):
        user = create_user(failed_login_count=2)

        outcome = await challenge.begin(user)

        assert outcome.authenticated is True
        assert outcome.session_token
        notifier.send_two_factor_code.assert_not_called()
        db_session.expire_all()
        assert db_session.get(User, user.id).failed_login_count == 0

    async def test_opted_in_user_gets_code(self, db_session, challenge, create_user, notifier):
        user = create_user(is_2fa_enabled=True)

        outcome = await challenge.begin(user)

        assert outcome.authenticated is False
        assert outcome.requires_2fa is True
        assert outcome.user_id == user.id
        assert outcome.session_token is None
        notifier.send_two_factor_code.assert_awaited_once()
        assert db_session.execute(select(UserSession)).first() is None

    async def test_administrator_always_gets_code(self, challenge, create_user, notifier):
        user = create_user(role=Role.ADMINISTRATOR, is_2fa_enabled=False)

        outcome = await challenge.begin(user)

        assert outcome.requires_2fa is True
        email, name, code = notifier.send_two_factor_code.await_args.args
        assert email == "alice@example.com"
        assert len(code) == 4


@pytest.mark.asyncio
class TestSubmitCode:
    async def test_valid_code_issues_session(self, challenge, create_user, notifier, session_manager):
        user = create_user(is_2fa_enabled=True)
        await challenge.begin(user)

        outcome = await challenge.submit_code(user.id, _sent_code(notifier))

        assert outcome.authenticated is True
        assert (await session_manager.validate(outcome.session_token)).id == user.id

    async def test_code_is_single_use(self, challenge, create_user, notifier):
        user = create_user(is_2fa_enabled=True)
        await challenge.begin(user)
        code = _sent_code(notifier)

        await challenge.submit_code(user.id, code)

        with pytest.raises(InvalidCodeError):
            await challenge.submit_code(user.id, code)

    async def test_expired_code(self, challenge, create_user, notifier, clock):
        user = create_user(is_2fa_enabled=True)
        await challenge.begin(user)

        clock.advance(minutes=16)

        with pytest.raises(InvalidCodeError):
            await challenge.submit_code(user.id, _sent_code(notifier))

    async def test_prior_session_is_deactivated(
        self, challenge, create_user, notifier, session_manager
    ):
        user = create_user(is_2fa_enabled=True)
        old_token = await session_manager.create(user.id)
        await challenge.begin(user)

        outcome = await challenge.submit_code(user.id, _sent_code(notifier))

        assert await session_manager.validate(old_token) is None
        assert await session_manager.validate(outcome.session_token) is not None

    async def test_locked_account_rejected(self, db_session, challenge, create_user, notifier):
        user = create_user(is_2fa_enabled=True)
        await challenge.begin(user)
        code = _sent_code(notifier)
        user.account_status = AccountStatus.LOCKED
        db_session.commit()

        with pytest.raises(InvalidCodeError):
            await challenge.submit_code(user.id, code)

    async def test_unknown_user(self, challenge):
        with pytest.raises(InvalidCodeError):
            await challenge.submit_code(999999, "1234")


@pytest.mark.asyncio
class TestSetupAndDisable:
    """Test opting in and out of the second factor."""

    async def test_setup_requires_verified_email(self, challenge, create_user, notifier):
        user = create_user(email_verified=False)

        with pytest.raises(ValidationError) as exc_info:
            await challenge.request_setup_code(user)

        assert exc_info.value.public_message == "Verify email first"
        notifier.send_two_factor_code.assert_not_called()

    async def test_confirm_setup_enables(self, db_session, challenge, create_user, notifier):
        user = create_user()
        await challenge.request_setup_code(user)

        await challenge.confirm_setup(user.id, _sent_code(notifier))

        db_session.expire_all()
        assert db_session.get(User, user.id).is_2fa_enabled is True

    async def test_login_code_cannot_confirm_setup(self, challenge, create_user, notifier):
        user = create_user(is_2fa_enabled=True)
        await challenge.begin(user)

        with pytest.raises(InvalidCodeError):
            await challenge.confirm_setup(user.id, _sent_code(notifier))

    @pytest.mark.parametrize("token_type", [TokenType.TWO_FA_SETUP, TokenType.TWO_FA_LOGIN])
    async def test_disable_accepts_either_code(
        self, db_session, challenge, create_user, token_ledger, token_type
    ):
        user = create_user(is_2fa_enabled=True)
        record = token_ledger.create(user.id, token_type, challenge.token_ttls[token_type])
        db_session.commit()

        await challenge.disable(user.id, str(record.token))

        db_session.expire_all()
        assert db_session.get(User, user.id).is_2fa_enabled is False
        assert db_session.get(SecurityToken, record.id).used is True

    async def test_disable_with_wrong_code(self, db_session, challenge, create_user):
        user = create_user(is_2fa_enabled=True)

        with pytest.raises(InvalidCodeError):
            await challenge.disable(user.id, "0000")

        db_session.rollback()
        assert db_session.get(User, user.id).is_2fa_enabled is True


@pytest.fixture
def racing_requests(file_engine, password_service, link_config, clock):
    """Two independent requests against one user sitting one failure below the lock."""
    factory = ConnectionFactory.create_session_factory(file_engine)
    with factory() as setup:
        setup.add(
            User(
                id=100001,
                username="alice",
                email="alice@example.com",
                password_hash=password_service.hash_password("Secret123"),
                failed_login_count=4,
                created_at=clock(),
            )
        )
        setup.commit()

    notifier = AsyncMock(spec=SmtpNotifier)
    login_db, attacker_db = factory(), factory()
    login_store = CredentialStore(login_db, password_service, clock)
    challenge = TwoFactorChallenge(
        login_db,
        login_store,
        TokenLedger(login_db, clock),
        SessionManager(login_db, clock=clock),
        notifier,
    )
    lockout = LockoutPolicy(
        attacker_db,
        CredentialStore(attacker_db, password_service, clock),
        TokenLedger(attacker_db, clock),
        notifier,
        link_config,
    )
    try:
        yield login_db, login_store, challenge, lockout, notifier
    finally:
        login_db.close()
        attacker_db.close()


def _state(engine):
    factory = ConnectionFactory.create_session_factory(engine)
    with factory() as db:
        status = db.execute(select(User.account_status).where(User.id == 100001)).scalar_one()
        active_sessions = db.execute(
            select(UserSession.id).where(UserSession.is_active.is_(True))
        ).all()
    return status, len(active_sessions)


@pytest.mark.asyncio
class TestLockedDuringLogin:
    """Test a lock taken after the password check is never undone by the login."""

    async def test_password_login_does_not_reactivate(self, racing_requests, file_engine):
        login_db, login_store, challenge, lockout, _ = racing_requests
        user = login_store.verify("alice", "Secret123")

        assert await lockout.on_failure("alice") is True

        with pytest.raises(InvalidCredentialError):
            await challenge.begin(user)
        login_db.rollback()

        assert _state(file_engine) == (AccountStatus.LOCKED, 0)

    async def test_login_code_does_not_reactivate(self, racing_requests, file_engine):
        login_db, login_store, challenge, lockout, notifier = racing_requests
        login_store.set_two_factor(100001, True)
        login_db.commit()
        user = login_store.verify("alice", "Secret123")
        await challenge.begin(user)
        code = _sent_code(notifier)

        assert await lockout.on_failure("alice") is True

        with pytest.raises(InvalidCodeError):
            await challenge.submit_code(100001, code)
        login_db.rollback()

        assert _state(file_engine) == (AccountStatus.LOCKED, 0)
