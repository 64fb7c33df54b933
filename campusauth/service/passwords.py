from __future__ import annotations

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from campusauth.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """argon2id hashing with boolean verification."""

    def __init__(self) -> None:
        self._hasher = _Argon2Hasher(type=Type.ID)
        # Verified against when the username is unknown so both failure paths
        # cost one argon2 verification.
        self._dummy_hash = self._hasher.hash("campusauth-dummy-password")

    def hash(self, password: str) -> str:
        if not password:
            raise ValueError("password must not be empty")
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def verify_dummy(self, password: str) -> bool:
        self.verify(self._dummy_hash, password)
        return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True


def password_is_strong(password: str) -> bool:
    """At least 12 characters drawn from 3 or more character classes."""
    if len(password) < 12:
        return False
    classes = (
        any(c.isupper() for c in password),
        any(c.islower() for c in password),
        any(c.isdigit() for c in password),
        any(not c.isalnum() for c in password),
    )
    return sum(classes) >= 3
