"""Global pytest configuration and fixtures."""

# Standard library imports
import sys
from datetime import datetime, timedelta
from pathlib import Path

# Load test environment variables
from dotenv import load_dotenv

test_env_path = Path(__file__).parent.parent / ".env.test"
if test_env_path.exists():
    load_dotenv(test_env_path, override=True)

# Third-party imports
import pytest

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

# Local imports
from src.infrastructure import config as config_module
from src.infrastructure.config import AuthConfig, LinkConfig


class MutableClock:
    """Deterministic clock for expiry tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> MutableClock:
    """Provides a controllable clock starting at a fixed instant."""
    return MutableClock()


@pytest.fixture
def auth_config() -> AuthConfig:
    """Account security settings with a cheap bcrypt cost."""
    return AuthConfig(bcrypt_rounds=4, session_cookie_secure=False)


@pytest.fixture
def link_config() -> LinkConfig:
    return LinkConfig(server_uri="http://api.test", client_uri="http://shop.test")


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset global configuration between tests."""
    config_module.reset_config()
    yield
    config_module.reset_config()


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests")
