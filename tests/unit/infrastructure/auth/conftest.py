"""Shared fixtures for account-security unit tests."""

import itertools
from unittest.mock import AsyncMock

import pytest

from src.infrastructure.auth.models import User
from src.infrastructure.auth.notifier import SmtpNotifier
from src.infrastructure.auth.services.credential_store import CredentialStore
from src.infrastructure.auth.services.password_service import PasswordService
from src.infrastructure.auth.services.session_manager import SessionManager
from src.infrastructure.auth.services.token_ledger import TokenLedger
from src.infrastructure.auth.types import AccountStatus, Role
from src.infrastructure.config import DatabaseConfig
from src.infrastructure.database.connection import ConnectionFactory, init_db

TEST_PASSWORD = "Secret123"


@pytest.fixture
def engine():
    """In-memory SQLite engine with the auth schema."""
    engine = ConnectionFactory.create_engine(DatabaseConfig(url="sqlite:///:memory:"))
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_engine(tmp_path):
    """File-backed SQLite engine so independent sessions use separate connections."""
    engine = ConnectionFactory.create_engine(
        DatabaseConfig(url=f"sqlite:///{tmp_path / 'auth.db'}")
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return ConnectionFactory.create_session_factory(engine)


@pytest.fixture
def db_session(session_factory):
    """Create test database session."""
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def password_service():
    return PasswordService(rounds=4)


@pytest.fixture
def notifier():
    """Notifier whose sends all succeed."""
    return AsyncMock(spec=SmtpNotifier)


@pytest.fixture
def credential_store(db_session, password_service, clock):
    return CredentialStore(db_session, password_service, clock)


@pytest.fixture
def token_ledger(db_session, clock):
    return TokenLedger(db_session, clock)


@pytest.fixture
def session_manager(db_session, clock):
    return SessionManager(db_session, clock=clock)


@pytest.fixture
def create_user(db_session, password_service, clock):
    """Factory inserting a committed user."""
    ids = itertools.count(100001)

    def _create(
        username: str = "alice",
        email: str | None = None,
        password: str = TEST_PASSWORD,
        role: Role = Role.USER,
        is_2fa_enabled: bool = False,
        email_verified: bool = True,
        account_status: AccountStatus = AccountStatus.ACTIVE,
        failed_login_count: int = 0,
    ) -> User:
        user = User(
            id=next(ids),
            username=username,
            email=email or f"{username}@example.com",
            password_hash=password_service.hash_password(password),
            role=role,
            account_status=account_status,
            email_verified=email_verified,
            is_2fa_enabled=is_2fa_enabled,
            failed_login_count=failed_login_count,
            login_count=0,
            created_at=clock(),
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _create
