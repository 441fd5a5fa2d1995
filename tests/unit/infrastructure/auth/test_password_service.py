"""
Unit tests for password hashing and the password policy.
"""

import pytest

from src.infrastructure.auth.exceptions import WeakPasswordError
from src.infrastructure.auth.services.password_service import (
    PasswordHasher,
    PasswordService,
    PasswordValidator,
)


class TestPasswordHasher:
    """Test bcrypt hashing."""

    @pytest.fixture
    def hasher(self):
        return PasswordHasher(rounds=4)

    def test_hash_and_verify(self, hasher):
        """Test a hash verifies only its own password."""
        password_hash = hasher.hash("Secret123")

        assert password_hash != "Secret123"
        assert password_hash.startswith("$2")
        assert hasher.verify("Secret123", password_hash)
        assert not hasher.verify("Secret124", password_hash)

    def test_salts_differ(self, hasher):
        assert hasher.hash("Secret123") != hasher.hash("Secret123")

    def test_verify_malformed_hash(self, hasher):
        """Test a corrupt stored hash never verifies."""
        assert not hasher.verify("Secret123", "not-a-bcrypt-hash")

    def test_dummy_verify_builds_hash_once(self, hasher):
        hasher.dummy_verify("whatever")
        first = hasher._dummy_hash
        hasher.dummy_verify("other")

        assert first is not None
        assert hasher._dummy_hash == first

    def test_needs_rehash(self):
        weak = PasswordHasher(rounds=4).hash("Secret123")

        assert PasswordHasher(rounds=5).needs_rehash(weak)
        assert not PasswordHasher(rounds=4).needs_rehash(weak)


class TestPasswordValidator:
    """Test password policy rules."""

    @pytest.mark.parametrize("password", ["Secret123", "aB3aB3aB", "Correct1Horse"])
    def test_valid_passwords(self, password):
        is_valid, errors = PasswordValidator.validate(password)

        assert is_valid
        assert errors == []

    @pytest.mark.parametrize(
        "password, expected",
        [
            ("Sh0rt", "at least 8"),
            ("alllowercase1", "uppercase"),
            ("ALLUPPERCASE1", "lowercase"),
            ("NoDigitsHere", "number"),
        ],
    )
    def test_invalid_passwords(self, password, expected):
        is_valid, errors = PasswordValidator.validate(password)

        assert not is_valid
        assert any(expected in error for error in errors)


class TestPasswordService:
    def test_enforce_policy_raises_weak_password(self):
        service = PasswordService(rounds=4)

        with pytest.raises(WeakPasswordError) as exc_info:
            service.enforce_policy("weak")

        assert exc_info.value.public_message == "Password too weak"
        assert exc_info.value.field == "password"
        assert exc_info.value.errors

    def test_enforce_policy_accepts_strong_password(self):
        PasswordService(rounds=4).enforce_policy("Secret123")
