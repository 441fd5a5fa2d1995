"""
Configuration Management - Loads settings from the environment
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta

from dotenv import load_dotenv

from src.infrastructure.auth.types import DEFAULT_TOKEN_TTLS, TokenType

logger = logging.getLogger(__name__)

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class DatabaseConfig:
    """Database configuration settings"""

    url: str
    pool_size: int = 10
    max_overflow: int = 0
    echo: bool = False

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Load database config from environment variables"""
        return cls(
            url=os.getenv("DATABASE_URL", "sqlite:///./storefront_auth.db"),
            pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "0")),
            echo=_env_bool("DB_ECHO", False),
        )

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


@dataclass
class AuthConfig:
    """Account security settings"""

    bcrypt_rounds: int = 14
    max_failed_logins: int = 5
    session_ttl: timedelta = timedelta(hours=24)
    session_cookie_name: str = "sid"
    session_cookie_secure: bool = True
    lockout_link_ttl: timedelta = timedelta(hours=24)
    token_ttls: dict[TokenType, timedelta] = field(
        default_factory=lambda: dict(DEFAULT_TOKEN_TTLS)
    )

    @classmethod
    def from_env(cls) -> "AuthConfig":
        """Load auth config from environment variables"""
        token_ttls = dict(DEFAULT_TOKEN_TTLS)
        overrides = {
            TokenType.VERIFY_EMAIL: "VERIFY_EMAIL_TTL_MINUTES",
            TokenType.UNLOCK: "UNLOCK_TTL_MINUTES",
            TokenType.RESET: "RESET_TTL_MINUTES",
            TokenType.CHANGE_EMAIL: "CHANGE_EMAIL_TTL_MINUTES",
            TokenType.TWO_FA_SETUP: "TWO_FA_SETUP_TTL_MINUTES",
            TokenType.TWO_FA_LOGIN: "TWO_FA_LOGIN_TTL_MINUTES",
        }
        for token_type, env_name in overrides.items():
            minutes = os.getenv(env_name)
            if minutes:
                token_ttls[token_type] = timedelta(minutes=int(minutes))

        return cls(
            bcrypt_rounds=int(os.getenv("BCRYPT_ROUNDS", "14")),
            max_failed_logins=int(os.getenv("MAX_FAILED_LOGINS", "5")),
            session_ttl=timedelta(hours=int(os.getenv("SESSION_TTL_HOURS", "24"))),
            session_cookie_name=os.getenv("SESSION_COOKIE_NAME", "sid"),
            session_cookie_secure=_env_bool("SESSION_COOKIE_SECURE", True),
            lockout_link_ttl=timedelta(hours=int(os.getenv("LOCKOUT_LINK_TTL_HOURS", "24"))),
            token_ttls=token_ttls,
        )

    def ttl_for(self, token_type: TokenType) -> timedelta:
        return self.token_ttls.get(token_type, DEFAULT_TOKEN_TTLS[token_type])


@dataclass
class EmailConfig:
    """Outbound email settings"""

    host: str | None
    port: int
    address: str | None
    secret: str | None
    sender_name: str = "Pizzeria"
    use_tls: bool = True
    timeout: float = 30.0

    @classmethod
    def from_env(cls) -> "EmailConfig":
        """Load email config from environment variables"""
        return cls(
            host=os.getenv("EMAIL_HOST"),
            port=int(os.getenv("EMAIL_PORT", "587")),
            address=os.getenv("EMAIL_ADDRESS"),
            secret=os.getenv("EMAIL_SECRET"),
            sender_name=os.getenv("EMAIL_SENDER_NAME", "Pizzeria"),
            use_tls=_env_bool("EMAIL_USE_TLS", True),
            timeout=float(os.getenv("EMAIL_TIMEOUT", "30")),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.address and self.secret)


@dataclass
class LinkConfig:
    """Base URIs used to build links embedded in emails"""

    server_uri: str
    client_uri: str

    @classmethod
    def from_env(cls) -> "LinkConfig":
        """Load link config from environment variables"""
        return cls(
            server_uri=os.getenv("SERVER_URI", "http://localhost:3001").rstrip("/"),
            client_uri=os.getenv("CLIENT_URI", "http://localhost:3000").rstrip("/"),
        )

    def verify_email_link(self, token: str) -> str:
        return f"{self.server_uri}/api/auth/verify-email/{token}"

    def unlock_link(self, token: str) -> str:
        return f"{self.server_uri}/api/auth/unlock-account/{token}"

    def reset_link(self, token: str) -> str:
        return f"{self.client_uri}/reset-password/{token}"

    def change_email_link(self, token: str) -> str:
        return f"{self.client_uri}/change-email/{token}"


@dataclass
class LoggingConfig:
    """Logging settings"""

    level: str = "INFO"
    format_type: str = "json"

    @classmethod
    def from_env(cls) -> "LoggingConfig":
        """Load logging config from environment variables"""
        return cls(
            level=os.getenv("LOG_LEVEL", "INFO"),
            format_type=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class Config:
    """Application configuration"""

    database: DatabaseConfig
    auth: AuthConfig
    email: EmailConfig
    links: LinkConfig
    logging: LoggingConfig

    @classmethod
    def from_env(cls) -> "Config":
        """Load all configuration from environment variables"""
        return cls(
            database=DatabaseConfig.from_env(),
            auth=AuthConfig.from_env(),
            email=EmailConfig.from_env(),
            links=LinkConfig.from_env(),
            logging=LoggingConfig.from_env(),
        )


# Global configuration instance (lazy-loaded)
_config: Config | None = None


def _get_config() -> Config:
    """Get or create global configuration instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next access re-reads the environment."""
    global _config
    _config = None


def get_config() -> Config:
    """Get the full application configuration"""
    return _get_config()


def get_auth_config() -> AuthConfig:
    """Get account security configuration"""
    return _get_config().auth


def get_link_config() -> LinkConfig:
    """Get link configuration"""
    return _get_config().links
