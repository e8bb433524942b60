from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantauth.config import Settings
from tenantauth.logging import get_logger

logger = get_logger(__name__)


class SecretHasher:
    """argon2id hashing for passwords and refresh tokens."""

    algorithm = "argon2id"

    def __init__(self, time_cost: int = 3, memory_cost: int = 65536) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost, memory_cost=memory_cost, type=Type.ID
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecretHasher":
        return cls(
            time_cost=settings.password_hash_cost,
            memory_cost=settings.password_hash_memory_kib,
        )

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, digest: str, secret: str) -> bool:
        """Constant-time check of ``secret`` against ``digest``; never raises."""
        try:
            return self._hasher.verify(digest, secret)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("secret_hash_unverifiable", algorithm=self.algorithm)
            return False
