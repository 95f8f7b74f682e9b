from __future__ import annotations

import copy
import threading
import time
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from ridepass.logging import get_logger
from ridepass.storage.errors import ConstraintViolation
from ridepass.storage.models import (
    Identity,
    IdentityStatus,
    VerificationKind,
    VerificationRecord,
    utcnow,
)


class MemoryTransaction:
    """Unit of work over :class:`MemoryStore` state.

    Only valid inside ``MemoryStore.transaction()``, which holds the data lock
    and restores the snapshot if the block raises.
    """

    def __init__(self, store: "MemoryStore") -> None:
        self._store = store

    def query(self, sql: str, params: Any = ()) -> List[Dict[str, Any]]:
        raise NotImplementedError("raw SQL is only available on PostgresStore")

    def get_identity(
        self, identity_id: str, *, for_update: bool = False
    ) -> Optional[Identity]:
        identity = self._store.identities.get(identity_id)
        return replace(identity) if identity else None

    def get_identity_by_identifier(
        self, canonical_identifier: str, *, for_update: bool = False
    ) -> Optional[Identity]:
        identity_id = self._store.identifier_index.get(canonical_identifier)
        if identity_id is None:
            return None
        return self.get_identity(identity_id)

    def get_identity_by_email(
        self, email: str, *, for_update: bool = False
    ) -> Optional[Identity]:
        address = email.lower()
        for identity in self._store.identities.values():
            if identity.email and identity.email.lower() == address:
                return replace(identity)
        return None

    def insert_identity(self, identity: Identity) -> Identity:
        if identity.canonical_identifier in self._store.identifier_index:
            raise ConstraintViolation(
                "identifier already registered", {"field": "canonical_identifier"}
            )
        if identity.email and self.get_identity_by_email(identity.email):
            raise ConstraintViolation("email already registered", {"field": "email"})
        self._store.identities[identity.id] = replace(identity)
        self._store.identifier_index[identity.canonical_identifier] = identity.id
        return identity

    def insert_profile(self, identity: Identity) -> None:
        table = identity.role.profile_table
        if identity.id not in self._store.identities:
            raise ConstraintViolation("profile owner missing", {"table": table})
        rows = self._store.profiles.setdefault(table, {})
        if identity.id in rows:
            raise ConstraintViolation("profile already exists", {"table": table})
        rows[identity.id] = {
            "identity_id": identity.id,
            "first_name": identity.first_name,
            "last_name": identity.last_name,
            "created_at": utcnow(),
        }

    def _require(self, identity_id: str) -> Optional[Identity]:
        return self._store.identities.get(identity_id)

    def set_status(self, identity_id: str, status: IdentityStatus) -> None:
        identity = self._require(identity_id)
        if identity:
            identity.status = IdentityStatus(status)
            identity.updated_at = utcnow()

    def touch_last_login(self, identity_id: str) -> None:
        identity = self._require(identity_id)
        if identity:
            identity.last_login_at = utcnow()

    def update_password(self, identity_id: str, password_hash: str) -> None:
        identity = self._require(identity_id)
        if identity:
            identity.password_hash = password_hash
            identity.updated_at = utcnow()

    def bump_token_version(self, identity_id: str) -> int:
        identity = self._require(identity_id)
        if not identity:
            return 0
        identity.token_version += 1
        identity.updated_at = utcnow()
        return identity.token_version

    def record_verification(self, record: VerificationRecord) -> VerificationRecord:
        if record.identity_id not in self._store.identities:
            raise ConstraintViolation(
                "verification owner missing", {"identity_id": record.identity_id}
            )
        self._store.verifications = [
            existing
            for existing in self._store.verifications
            if existing.verified
            or existing.identity_id != record.identity_id
            or existing.kind != record.kind
        ]
        self._store.verifications.append(replace(record))
        return record

    def mark_verification_verified(
        self, identity_id: str, kind: VerificationKind
    ) -> int:
        updated = 0
        now = utcnow()
        for record in self._store.verifications:
            if (
                record.identity_id == identity_id
                and record.kind == VerificationKind(kind)
                and not record.verified
            ):
                record.verified = True
                record.verified_at = now
                updated += 1
        return updated


class MemoryStore:
    """In-process identity store with the same transaction contract as Postgres."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.identifier_index: Dict[str, str] = {}
        self.verifications: List[VerificationRecord] = []
        self.profiles: Dict[str, Dict[str, Dict[str, Any]]] = {}
        # RLock so store helpers can be called from inside a transaction block
        self._data_lock = threading.RLock()

    def _snapshot(self) -> Tuple[Any, ...]:
        return (
            copy.deepcopy(self.identities),
            dict(self.identifier_index),
            copy.deepcopy(self.verifications),
            copy.deepcopy(self.profiles),
        )

    def _restore(self, snapshot: Tuple[Any, ...]) -> None:
        (
            self.identities,
            self.identifier_index,
            self.verifications,
            self.profiles,
        ) = snapshot

    @contextmanager
    def transaction(self) -> Iterator[MemoryTransaction]:
        with self._data_lock:
            snapshot = self._snapshot()
            try:
                yield MemoryTransaction(self)
            except BaseException:
                self._restore(snapshot)
                raise

    def query(self, sql: str, params: Any = ()) -> List[Dict[str, Any]]:
        raise NotImplementedError("raw SQL is only available on PostgresStore")

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self.transaction() as tx:
            return tx.get_identity(identity_id)

    def get_identity_by_identifier(
        self, canonical_identifier: str
    ) -> Optional[Identity]:
        with self.transaction() as tx:
            return tx.get_identity_by_identifier(canonical_identifier)

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self.transaction() as tx:
            return tx.get_identity_by_email(email)

    def record_verification(self, record: VerificationRecord) -> VerificationRecord:
        with self.transaction() as tx:
            return tx.record_verification(record)

    def profile_for(self, identity: Identity) -> Optional[Dict[str, Any]]:
        with self._data_lock:
            row = self.profiles.get(identity.role.profile_table, {}).get(identity.id)
            return dict(row) if row else None

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None


class MemoryCache:
    """In-process stand-in for :class:`RedisCache` with TTL semantics.

    ``clock`` is injectable so tests can move time forward without sleeping.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._values.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            return None
        return entry

    def verify_connection(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._values[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def delete(self, key: str) -> int:
        with self._lock:
            if self._live(key) is None:
                return 0
            self._values.pop(key, None)
            return 1

    async def increment(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                self._values[key] = ("1", self._clock() + max(1, int(ttl_seconds)))
                return 1
            value, expires_at = entry
            new_value = int(value) + 1
            self._values[key] = (str(new_value), expires_at)
            return new_value

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            self._values[key] = (entry[0], self._clock() + max(1, int(ttl_seconds)))
            return True

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[0] != expected:
                return False
            self._values.pop(key, None)
            return True

    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.set(f"auth:refresh:revoked:{jti}", "1", ttl_seconds)

    async def claim_refresh_once(self, jti: str, ttl_seconds: int) -> bool:
        key = f"auth:refresh:revoked:{jti}"
        with self._lock:
            if self._live(key) is not None:
                return False
            self._values[key] = ("1", self._clock() + max(1, int(ttl_seconds)))
            return True

    def ttl(self, key: str) -> Optional[float]:
        """Seconds left on ``key``, or None when absent."""
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[1] is None:
                return None
            return entry[1] - self._clock()

    async def close(self) -> None:
        return None
