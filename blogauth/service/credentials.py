from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from blogauth.logging import get_logger

logger = get_logger(__name__)


class CredentialStore:
    """Hashes and verifies passwords with argon2id.

    ``verify`` never raises for a corrupt or foreign hash; it answers ``False``
    so callers cannot tell a damaged record from a wrong password.
    """

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 1) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, hashed: str) -> bool:
        if not hashed:
            return False
        try:
            return self._hasher.verify(hashed, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_hash_unverifiable", error_type=type(exc).__name__)
            return False

    def needs_rehash(self, hashed: str) -> bool:
        """True when ``hashed`` was produced with weaker cost parameters than configured."""
        try:
            return self._hasher.check_needs_rehash(hashed)
        except InvalidHash:
            return True
