from __future__ import annotations

from typing import Protocol

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from ridepass.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


class PasswordHasher(Protocol):
    def hash(self, password: str) -> str: ...

    def verify(self, stored_hash: str, password: str) -> bool: ...


class Argon2PasswordHasher:
    """argon2id hashing; verification never raises on a bad hash."""

    def __init__(self) -> None:
        self._hasher = Argon2Hasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, stored_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True
