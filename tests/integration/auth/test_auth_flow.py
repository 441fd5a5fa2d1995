"""
Integration tests for complete authentication flows over HTTP.
"""

from unittest.mock import AsyncMock

import pytest
from fastapi import status
from fastapi.testclient import TestClient
from sqlalchemy import select

from src.infrastructure.auth.app import create_app
from src.infrastructure.auth.models import SecurityToken, User
from src.infrastructure.auth.notifier import SmtpNotifier
from src.infrastructure.auth.services.password_service import PasswordService
from src.infrastructure.auth.types import AccountStatus, Role, TokenType, utcnow
from src.infrastructure.config import (
    AuthConfig,
    Config,
    DatabaseConfig,
    EmailConfig,
    LinkConfig,
    LoggingConfig,
)
from src.infrastructure.database.connection import ConnectionFactory, init_db

PASSWORD = "Secret123"


@pytest.fixture(scope="function")
def app_config():
    return Config(
        database=DatabaseConfig(url="sqlite:///:memory:"),
        auth=AuthConfig(bcrypt_rounds=4, session_cookie_secure=False),
        email=EmailConfig(host=None, port=587, address=None, secret=None),
        links=LinkConfig(server_uri="http://testserver", client_uri="http://shop.test"),
        logging=LoggingConfig(level="INFO", format_type="text"),
    )


@pytest.fixture(scope="function")
def engine(app_config):
    engine = ConnectionFactory.create_engine(app_config.database)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def notifier():
    return AsyncMock(spec=SmtpNotifier)


@pytest.fixture(scope="function")
def client(app_config, engine, notifier):
    """Test client with the lifespan running."""
    app = create_app(config=app_config, engine=engine, notifier=notifier, configure_logging=False)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture(scope="function")
def session_factory(engine):
    return ConnectionFactory.create_session_factory(engine)


@pytest.fixture(scope="function")
def add_user(session_factory):
    """Insert a user directly into the database."""

    def _add(username="alice", role=Role.USER, is_2fa_enabled=False, email_verified=True):
        with session_factory() as db:
            user = User(
                id=100001 if username == "alice" else 100002,
                username=username,
                email=f"{username}@example.com",
                password_hash=PasswordService(rounds=4).hash_password(PASSWORD),
                role=role,
                account_status=AccountStatus.ACTIVE,
                email_verified=email_verified,
                is_2fa_enabled=is_2fa_enabled,
                failed_login_count=0,
                login_count=0,
                created_at=utcnow(),
            )
            db.add(user)
            db.commit()
            return int(user.id)

    return _add


def _latest_token(session_factory, token_type):
    with session_factory() as db:
        return db.execute(
            select(SecurityToken.token)
            .where(SecurityToken.token_type == token_type)
            .order_by(SecurityToken.id.desc())
        ).scalars().first()


def _login(client, username="alice", password=PASSWORD):
    return client.post("/api/auth/login", json={"username": username, "password": password})


class TestRegistrationFlow:
    """Test registration, verification and first login."""

    def test_register_verify_login_check(self, client, session_factory):
        response = client.post(
            "/api/auth/register",
            json={"username": "bob", "email": "bob@example.com", "password": PASSWORD},
        )
        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["pendingVerification"] is True

        token = _latest_token(session_factory, TokenType.VERIFY_EMAIL)
        response = client.get(f"/api/auth/verify-email/{token}")
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["verified"] is True

        response = _login(client, "bob")
        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"message": "Login successful", "authenticated": True}
        assert "sid" in response.cookies

        response = client.get("/api/auth/check")
        body = response.json()
        assert body["authenticated"] is True
        assert body["user"]["username"] == "bob"
        assert body["user"]["emailVerified"] is True

    def test_duplicate_username(self, client, add_user):
        add_user("alice")

        response = client.post(
            "/api/auth/register",
            json={"username": "alice", "email": "fresh@example.com", "password": PASSWORD},
        )

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["detail"] == {
            "message": "Username is already taken",
            "field": "username",
        }

    def test_weak_password_lists_rules(self, client):
        response = client.post(
            "/api/auth/register",
            json={"username": "bob", "email": "bob@example.com", "password": "weak"},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        detail = response.json()["detail"]
        assert detail["field"] == "password"
        assert detail["errors"]


class TestLoginFlow:
    def test_invalid_credentials_are_generic(self, client, add_user):
        add_user()

        wrong = _login(client, password="Wrong1234")
        unknown = _login(client, username="nobody")

        assert wrong.status_code == unknown.status_code == status.HTTP_401_UNAUTHORIZED
        assert wrong.json() == unknown.json()

    def test_missing_fields(self, client):
        response = client.post("/api/auth/login", json={"username": "alice"})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["detail"]["field"] == "password"

    def test_two_factor_login(self, client, add_user, notifier):
        user_id = add_user(is_2fa_enabled=True)

        response = _login(client)
        assert response.json() == {
            "message": "2FA code sent to your email",
            "requires2FA": True,
            "userId": user_id,
        }
        assert "sid" not in response.cookies

        code = notifier.send_two_factor_code.await_args.args[2]
        response = client.post("/api/auth/verify-login-2fa", json={"userId": user_id, "code": code})

        assert response.status_code == status.HTTP_200_OK
        assert client.get("/api/auth/check").json()["authenticated"] is True

    def test_wrong_login_code(self, client, add_user):
        user_id = add_user(role=Role.ADMINISTRATOR)
        _login(client)

        response = client.post(
            "/api/auth/verify-login-2fa", json={"userId": user_id, "code": "0000"}
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["detail"]["message"] == "Invalid or expired code"

    def test_lockout_and_unlock(self, client, add_user, notifier, session_factory):
        user_id = add_user()

        for _ in range(5):
            assert _login(client, password="Wrong1234").status_code == 401
        assert _login(client).status_code == 401
        notifier.send_account_locked_notice.assert_awaited_once()

        unlock_link = notifier.send_account_locked_notice.await_args.args[2]
        response = client.get(unlock_link.replace("http://testserver", ""))
        assert response.json() == {"message": "Account unlocked successfully"}

        assert _login(client).status_code == 200
        with session_factory() as db:
            assert db.get(User, user_id).failed_login_count == 0


class TestRecoveryFlow:
    def test_password_reset(self, client, add_user, notifier):
        add_user()

        response = client.post("/api/auth/send-reset-link", json={"email": "alice@example.com"})
        assert response.json()["sent"] is True
        token = notifier.send_password_reset.await_args.args[2].rsplit("/", 1)[-1]

        assert client.get(f"/api/auth/reset-password/{token}").json() == {"valid": True}
        response = client.post(f"/api/auth/reset-password/{token}", json={"password": "Brandnew9"})
        assert response.status_code == status.HTTP_200_OK
        assert client.get(f"/api/auth/reset-password/{token}").json() == {"valid": False}

        response = client.post(f"/api/auth/reset-password/{token}", json={"password": "Other999x"})
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["detail"]["message"] == "Invalid or expired token"

        assert _login(client, password="Brandnew9").status_code == 200

    def test_reset_unknown_email(self, client):
        response = client.post("/api/auth/send-reset-link", json={"email": "nobody@example.com"})

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_change_email(self, client, add_user, notifier):
        add_user()
        _login(client)

        response = client.post("/api/auth/send-change-email-link")
        assert response.status_code == status.HTTP_200_OK
        token = notifier.send_email_change_link.await_args.args[2].rsplit("/", 1)[-1]

        assert client.get(f"/api/auth/verify-email-token/{token}").json()["valid"] is True
        response = client.post(f"/api/auth/change-email/{token}", json={"email": "new@example.com"})
        assert response.json() == {"message": "Email changed successfully"}

        user = client.get("/api/auth/check").json()["user"]
        assert user["email"] == "new@example.com"
        assert user["emailVerified"] is False

    def test_delivery_failure_is_internal_error(self, client, add_user, notifier):
        from src.infrastructure.auth.exceptions import DeliveryError

        add_user()
        notifier.send_password_reset.side_effect = DeliveryError("alice@example.com", "down")

        response = client.post("/api/auth/send-reset-link", json={"email": "alice@example.com"})

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json()["detail"] == {"message": "Internal server error"}


class TestAuthenticatedRoutes:
    def test_requires_session(self, client):
        for path in (
            "/api/auth/send-change-email-link",
            "/api/auth/send-2fa-code",
            "/api/auth/logout",
        ):
            response = client.post(path)
            assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_enable_and_disable_2fa(self, client, add_user, notifier):
        add_user()
        _login(client)

        assert client.post("/api/auth/send-2fa-code").json() == {"message": "2FA code sent"}
        code = notifier.send_two_factor_code.await_args.args[2]
        assert client.post("/api/auth/verify-2fa-code", json={"code": code}).json()["enabled"]
        assert client.get("/api/auth/check").json()["user"]["twoFactorEnabled"] is True

        client.post("/api/auth/send-2fa-code")
        code = notifier.send_two_factor_code.await_args.args[2]
        response = client.post("/api/auth/disable-2fa-with-code", json={"code": code})
        assert response.json()["disabled"] is True

    def test_setup_requires_verified_email(self, client, add_user):
        add_user(email_verified=False)
        _login(client)

        response = client.post("/api/auth/send-2fa-code")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["detail"] == {"message": "Verify email first", "field": "email"}

    def test_logout(self, client, add_user):
        add_user()
        _login(client)

        response = client.post("/api/auth/logout")

        assert response.json() == {"message": "Logged out successfully"}
        assert client.get("/api/auth/check").json() == {"authenticated": False}


class TestApplication:
    def test_health(self, client):
        body = client.get("/api/health").json()

        assert body["status"] == "healthy"
        assert body["database"] is True
        assert "completed" in body["background"]

    def test_security_headers_and_request_id(self, client):
        response = client.get("/api/auth/check", headers={"X-Request-ID": "req_test"})

        assert response.headers["X-Request-ID"] == "req_test"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
