from __future__ import annotations

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from tokenkeeper.config import Settings
from tokenkeeper.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """argon2id hashing for credentials at rest.

    ``verify`` never raises for a wrong password or an unreadable hash; it
    returns ``False`` so callers can treat both as a failed login.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Verified against for unknown accounts so every failed login costs one argon2 run
        self._dummy_hash = self._hasher.hash("tokenkeeper-dummy-credential")

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordHasher":
        return cls(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, password_hash: str) -> bool:
        if not isinstance(plaintext, str) or not isinstance(password_hash, str):
            return False
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def dummy_verify(self, plaintext: str) -> None:
        self.verify(plaintext if isinstance(plaintext, str) else "", self._dummy_hash)

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except (InvalidHashError, ValueError):
            return False
