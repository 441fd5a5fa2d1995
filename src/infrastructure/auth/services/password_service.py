"""
Customer password handling.

Wraps bcrypt for storing and checking storefront passwords and applies the
signup/reset password rules.
"""

import logging
import re

import bcrypt

from ..exceptions import WeakPasswordError

logger = logging.getLogger(__name__)

_BCRYPT_COST = re.compile(r"^\$2[abxy]?\$(\d{2})\$")


def _utf8(value: str) -> bytes:
    return value.encode("utf-8")


class PasswordHasher:
    """Salted bcrypt digests with a configurable work factor."""

    def __init__(self, rounds: int = 14) -> None:
        self.rounds = rounds
        # Built lazily; only used to burn time for unknown usernames
        self._dummy_hash: str | None = None

    def hash(self, password: str) -> str:
        digest = bcrypt.hashpw(_utf8(password), bcrypt.gensalt(rounds=self.rounds))
        return digest.decode("ascii")

    def verify(self, password: str, password_hash: str) -> bool:
        """Compare a plaintext password with a stored digest.

        A stored value bcrypt cannot parse counts as a mismatch.
        """
        try:
            matched = bcrypt.checkpw(_utf8(password), _utf8(password_hash))
        except ValueError as e:
            logger.error(f"Stored password digest is unreadable: {e}")
            return False
        return matched

    def dummy_verify(self, password: str) -> None:
        """Run one throwaway comparison so a missing account costs a full bcrypt check."""
        if not self._dummy_hash:
            self._dummy_hash = self.hash("no-such-customer")
        self.verify(password, self._dummy_hash)

    def cost_of(self, password_hash: str) -> int | None:
        match = _BCRYPT_COST.match(password_hash)
        return int(match.group(1)) if match else None

    def needs_rehash(self, password_hash: str) -> bool:
        cost = self.cost_of(password_hash)
        return cost is not None and cost < self.rounds


class PasswordValidator:
    """Signup and reset password rules."""

    MIN_LENGTH = 8
    MAX_LENGTH = 128

    # (pattern that must appear, message when it does not)
    CHARACTER_RULES: tuple[tuple[str, str], ...] = (
        (r"[a-z]", "Password must contain at least one lowercase letter"),
        (r"[A-Z]", "Password must contain at least one uppercase letter"),
        (r"[0-9]", "Password must contain at least one number"),
    )

    @classmethod
    def validate(cls, password: str) -> tuple[bool, list[str]]:
        """Return ``(ok, problems)`` for a candidate password."""
        problems: list[str] = []

        length = len(password)
        if length < cls.MIN_LENGTH:
            problems.append(f"Password must be at least {cls.MIN_LENGTH} characters long")
        elif length > cls.MAX_LENGTH:
            problems.append(f"Password must be at most {cls.MAX_LENGTH} characters long")

        problems.extend(
            message for pattern, message in cls.CHARACTER_RULES if re.search(pattern, password) is None
        )
        return not problems, problems


class PasswordService:
    """Facade used by the credential store and the coordinator."""

    def __init__(self, rounds: int = 14) -> None:
        self.hasher = PasswordHasher(rounds)
        self.validator = PasswordValidator()

    def hash_password(self, password: str) -> str:
        return self.hasher.hash(password)

    def verify_password(self, password: str, password_hash: str) -> bool:
        return self.hasher.verify(password, password_hash)

    def dummy_verify(self, password: str) -> None:
        self.hasher.dummy_verify(password)

    def validate_password(self, password: str) -> tuple[bool, list[str]]:
        return self.validator.validate(password)

    def enforce_policy(self, password: str) -> None:
        """Raise WeakPasswordError listing every rule the password breaks."""
        ok, problems = self.validate_password(password or "")
        if not ok:
            raise WeakPasswordError(problems)

    def needs_rehash(self, password_hash: str) -> bool:
        return self.hasher.needs_rehash(password_hash)
