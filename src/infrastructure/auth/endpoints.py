"""
Authentication API endpoints for the storefront.

This module maps the account-security operations onto FastAPI routes.
The session token travels in an HTTP-only cookie; every authenticated
route resolves an explicit CallerContext from it before calling the
coordinator.
"""

import logging
from collections.abc import Generator
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel, ConfigDict, Field, SecretStr
from sqlalchemy.orm import Session

from src.infrastructure.database.connection import session_scope

from .exceptions import AuthException, DuplicateUserError, ValidationError, WeakPasswordError
from .services.auth_coordinator import AuthCoordinator
from .types import CallerContext, LoginOutcome, RequestContext

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/api/auth", tags=["Authentication"])


# Request models
class LoginRequest(BaseModel):
    """Login request."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str | None = None
    password: SecretStr | None = None


class LoginCodeRequest(BaseModel):
    """Second-factor login code submission."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    user_id: int | str | None = Field(None, alias="userId")
    code: str | None = None


class RegistrationRequest(BaseModel):
    """User registration request."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str | None = None
    email: str | None = None
    password: SecretStr | None = None


class UsernameRequest(BaseModel):
    """Request naming a user."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str | None = None


class EmailRequest(BaseModel):
    """Request carrying an email address."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str | None = None


class NewPasswordRequest(BaseModel):
    """Password reset confirmation."""

    password: SecretStr | None = None


class CodeRequest(BaseModel):
    """Second-factor code submission."""

    model_config = ConfigDict(str_strip_whitespace=True)

    code: str | None = None


# Dependency injection functions


def get_db(request: Request) -> Generator[Session, None, None]:
    """Get database session."""
    with session_scope(request.app.state.session_factory) as db:
        yield db


def get_coordinator(request: Request, db: Session = Depends(get_db)) -> AuthCoordinator:
    """Get a coordinator bound to this request's database session."""
    state = request.app.state
    return AuthCoordinator(
        db_session=db,
        notifier=state.notifier,
        background=state.background,
        auth_config=state.config.auth,
        link_config=state.config.links,
    )


def get_request_context(request: Request) -> RequestContext:
    """Get client address and user agent."""
    return RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )


def get_session_token(request: Request) -> str | None:
    """Get the session token from its cookie."""
    return request.cookies.get(request.app.state.config.auth.session_cookie_name)


async def get_caller(
    coordinator: AuthCoordinator = Depends(get_coordinator),
    context: RequestContext = Depends(get_request_context),
    session_token: str | None = Depends(get_session_token),
) -> CallerContext:
    """Resolve the authenticated caller or reject the request."""
    try:
        return await coordinator.resolve_caller(session_token, context)
    except AuthException as e:
        raise _http_error(e)


def _http_error(error: AuthException) -> HTTPException:
    """Translate an account-security error into its public HTTP form."""
    detail: dict[str, Any] = {"message": error.public_message}
    if isinstance(error, ValidationError | DuplicateUserError) and error.field:
        detail["field"] = error.field
    if isinstance(error, WeakPasswordError):
        detail["errors"] = error.errors
    if error.status_code >= 500:
        logger.error(f"Request failed: {error}", extra={"details": error.details})
    return HTTPException(status_code=error.status_code, detail=detail)


def _internal_error(operation: str, error: Exception) -> HTTPException:
    logger.error(f"{operation} failed: {error}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"message": "Internal server error"},
    )


def _set_session_cookie(request: Request, response: Response, outcome: LoginOutcome) -> None:
    if not outcome.session_token:
        return
    auth_config = request.app.state.config.auth
    response.set_cookie(
        key=auth_config.session_cookie_name,
        value=outcome.session_token,
        max_age=int(auth_config.session_ttl.total_seconds()),
        httponly=True,
        secure=auth_config.session_cookie_secure,
        samesite="none",
    )


def _secret(value: SecretStr | None) -> str:
    return value.get_secret_value() if value is not None else ""


# Login
@router.post("/login")
async def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    coordinator: AuthCoordinator = Depends(get_coordinator),
    context: RequestContext = Depends(get_request_context),
) -> dict[str, Any]:
    """
    Authenticate with username and password.

    Sets the session cookie, or reports that a second-factor code was sent.
    """
    try:
        outcome = await coordinator.login(payload.username or "", _secret(payload.password), context)
    except AuthException as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("Login", e)

    _set_session_cookie(request, response, outcome)
    return outcome.to_dict()


@router.post("/verify-login-2fa")
async def verify_login_code(
    payload: LoginCodeRequest,
    request: Request,
    response: Response,
    coordinator: AuthCoordinator = Depends(get_coordinator),
    context: RequestContext = Depends(get_request_context),
) -> dict[str, Any]:
    """Complete a login with the emailed code."""
    try:
        outcome = await coordinator.submit_login_code(payload.user_id, payload.code or "", context)
    except AuthException as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("Login code verification", e)

    _set_session_cookie(request, response, outcome)
    return outcome.to_dict()


# Registration and email verification
@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(
    payload: RegistrationRequest,
    coordinator: AuthCoordinator = Depends(get_coordinator),
    context: RequestContext = Depends(get_request_context),
) -> dict[str, Any]:
    """
    Register a new user account.

    Requires:
    - Unique username (3-30 characters, alphanumeric with _ or -)
    - Unique, valid email address
    - Password of 8+ characters with a lowercase letter, an uppercase letter and a digit
    """
    try:
        return await coordinator.register(
            payload.username or "", payload.email or "", _secret(payload.password), context
        )
    except AuthException as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("Registration", e)


@router.post("/send-verify-link")
async def send_verify_link(
    payload: UsernameRequest,
    coordinator: AuthCoordinator = Depends(get_coordinator),
    context: RequestContext = Depends(get_request_context),
) -> dict[str, Any]:
    try:
        return await coordinator.send_verification_link(payload.username or "", context)
    except AuthException as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("Verification link", e)


@router.get("/verify-email/{token}")
async def verify_email(
    token: str, coordinator: AuthCoordinator = Depends(get_coordinator)
) -> dict[str, Any]:
    try:
        return await coordinator.verify_email(token)
    except AuthException as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("Email verification", e)


# Password reset
@router.post("/send-reset-link")
async def send_reset_link(
    payload: EmailRequest,
    coordinator: AuthCoordinator = Depends(get_coordinator),
    context: RequestContext = Depends(get_request_context),
) -> dict[str, Any]:
    try:
        return await coordinator.send_reset_link(payload.email or "", context)
    except AuthException as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("Reset link", e)


@router.get("/reset-password/{token}")
async def check_reset_token(
    token: str, coordinator: AuthCoordinator = Depends(get_coordinator)
) -> dict[str, Any]:
    try:
        return await coordinator.check_reset_token(token)
    except AuthException as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("Reset token check", e)


@router.post("/reset-password/{token}")
async def reset_password(
    token: str,
    payload: NewPasswordRequest,
    coordinator: AuthCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    try:
        return await coordinator.reset_password(token, _secret(payload.password))
    except AuthException as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("Password reset", e)


# Email change
@router.post("/send-change-email-link")
async def send_change_email_link(
    caller: CallerContext = Depends(get_caller),
    coordinator: AuthCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    try:
        return await coordinator.send_change_email_link(caller)
    except AuthException as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("Change email link", e)


@router.get("/verify-email-token/{token}")
async def check_change_email_token(
    token: str, coordinator: AuthCoordinator = Depends(get_coordinator)
) -> dict[str, Any]:
    try:
        return await coordinator.check_change_email_token(token)
    except AuthException as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("Change email token check", e)


@router.post("/change-email/{token}")
async def change_email(
    token: str,
    payload: EmailRequest,
    coordinator: AuthCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    try:
        return await coordinator.change_email(token, payload.email or "")
    except AuthException as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("Email change", e)


# Unlock
@router.get("/unlock-account/{token}")
async def unlock_account(
    token: str, coordinator: AuthCoordinator = Depends(get_coordinator)
) -> dict[str, Any]:
    try:
        return await coordinator.unlock_account(token)
    except AuthException as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("Account unlock", e)


# Second factor management
@router.post("/send-2fa-code")
async def send_2fa_code(
    caller: CallerContext = Depends(get_caller),
    coordinator: AuthCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    try:
        return await coordinator.enable_2fa(caller)
    except AuthException as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("2FA setup code", e)


@router.post("/verify-2fa-code")
async def verify_2fa_code(
    payload: CodeRequest,
    caller: CallerContext = Depends(get_caller),
    coordinator: AuthCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    try:
        return await coordinator.confirm_2fa(caller, payload.code or "")
    except AuthException as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("2FA confirmation", e)


@router.post("/disable-2fa-with-code")
async def disable_2fa(
    payload: CodeRequest,
    caller: CallerContext = Depends(get_caller),
    coordinator: AuthCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    try:
        return await coordinator.disable_2fa(caller, payload.code or "")
    except AuthException as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("2FA disable", e)


# Sessions
@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    caller: CallerContext = Depends(get_caller),
    coordinator: AuthCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    """Revoke the caller's sessions and clear the cookie."""
    try:
        result = await coordinator.logout(caller)
    except AuthException as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("Logout", e)

    auth_config = request.app.state.config.auth
    response.delete_cookie(
        key=auth_config.session_cookie_name,
        httponly=True,
        secure=auth_config.session_cookie_secure,
        samesite="none",
    )
    return result


@router.get("/check")
async def check_session(
    coordinator: AuthCoordinator = Depends(get_coordinator),
    session_token: str | None = Depends(get_session_token),
) -> dict[str, Any]:
    """Report whether the cookie carries a valid session."""
    try:
        result = await coordinator.check_session(session_token)
    except AuthException as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("Session check", e)
    return result.to_dict()
