from __future__ import annotations

from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from sessionguard.logging import get_logger

logger = get_logger(__name__)


class PasswordVerifier(Protocol):
    def hash(self, password: str) -> str: ...

    def verify(self, password: str, password_hash: Optional[str]) -> bool: ...


class Argon2PasswordVerifier:
    """argon2id hashing with constant-time verification."""

    algorithm = "argon2id"

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Burned on unknown users so a miss costs the same as a wrong password
        self._dummy_hash = self._hasher.hash("sessionguard-timing-equalizer")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            self._burn(password)
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except InvalidHash:
            logger.warning("password_hash_invalid")
            return False
        except VerificationError:
            return False

    def _burn(self, password: str) -> None:
        try:
            self._hasher.verify(self._dummy_hash, password)
        except VerificationError:
            pass
