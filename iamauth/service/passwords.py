"""Password verification using Argon2id.

Argon2 hashes are salted and deliberately slow, and ``argon2-cffi`` compares
the derived digest in constant time, so a mismatch in the first byte costs the
same as a mismatch in the last.
"""

from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from iamauth.logging import get_logger

logger = get_logger(__name__)


class PasswordVerifier:
    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Burned on unknown-account logins so both paths pay one verification
        self._dummy_hash = self._hasher.hash("iamauth-timing-equalizer")

    def hash(self, plain: str) -> str:
        return self._hasher.hash(plain)

    def verify(self, plain: str, hashed: str) -> bool:
        """Return True iff ``plain`` matches ``hashed``. Never raises, never logs ``plain``."""
        if not hashed:
            return False
        try:
            return self._hasher.verify(hashed, plain)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_hash_unusable", error_type=type(exc).__name__)
            return False

    def dummy_verify(self, plain: str) -> bool:
        self.verify(plain, self._dummy_hash)
        return False

    def needs_rehash(self, hashed: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(hashed)
        except InvalidHash:
            return True


__all__ = ["PasswordVerifier"]
