from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from typing import Optional, Protocol

from ridepass.config import Settings
from ridepass.logging import get_logger
from ridepass.service.delivery import DeliveryTransport, render_code_message
from ridepass.service.errors import CodeExpired, CodeInvalid, RateLimited
from ridepass.service.normalizer import mask_identifier
from ridepass.service.rate_limit import RateLimiter
from ridepass.storage.errors import StoreUnavailable
from ridepass.storage.models import Purpose, Role, VerificationKind, VerificationRecord

logger = get_logger(__name__)

CODE_MIN = 100000
CODE_MAX = 999999


class CodeStore(Protocol):
    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> int: ...

    async def increment(self, key: str, ttl_seconds: int) -> int: ...

    async def compare_and_delete(self, key: str, expected: str) -> bool: ...


class VerificationMirror(Protocol):
    def record_verification(self, record: VerificationRecord) -> VerificationRecord: ...


class CodeGenerator(Protocol):
    def generate(self) -> str: ...


class SecureCodeGenerator:
    """Uniform six-digit codes from the OS CSPRNG."""

    def generate(self) -> str:
        return str(CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1))


class FixedCodeGenerator:
    """Always returns the same code. For tests only; never wired by the runtime."""

    def __init__(self, code: str = "123456") -> None:
        self.code = code

    def generate(self) -> str:
        return self.code


def code_key(identifier: str, purpose: Purpose) -> str:
    return f"otc:{Purpose(purpose).value}:{identifier}"


def attempts_key(identifier: str, purpose: Purpose) -> str:
    return f"otc:attempts:{Purpose(purpose).value}:{identifier}"


def hash_code(identity_id: str, code: str) -> str:
    return hashlib.sha256(f"{identity_id}:{code}".encode()).hexdigest()


@dataclass(frozen=True)
class OTCPayload:
    code: str
    purpose: Purpose
    kind: VerificationKind
    role: Optional[Role] = None
    identity_id: Optional[str] = None
    issued_at: Optional[float] = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "code": self.code,
                "purpose": self.purpose.value,
                "kind": self.kind.value,
                "role": self.role.value if self.role else None,
                "identity_id": self.identity_id,
                "issued_at": self.issued_at,
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str) -> "OTCPayload":
        """Parse a cached entry; every tag must belong to its closed enum."""
        data = json.loads(raw)
        if not isinstance(data, dict) or not isinstance(data.get("code"), str):
            raise ValueError("code payload is not an object with a code")
        role = data.get("role")
        return cls(
            code=data["code"],
            purpose=Purpose(data.get("purpose")),
            kind=VerificationKind(data.get("kind")),
            role=Role(role) if role is not None else None,
            identity_id=data.get("identity_id"),
            issued_at=data.get("issued_at"),
        )


@dataclass(frozen=True)
class IssuedCode:
    purpose: Purpose
    expires_in: int
    delivered: bool


class OTCEngine:
    """Issues, checks and consumes one-time codes.

    One live code exists per (identifier, purpose); issuing again overwrites
    it. Consumption is a compare-and-delete on the exact cached value, so two
    concurrent submissions of the same code cannot both succeed.
    """

    def __init__(
        self,
        cache: CodeStore,
        *,
        settings: Settings,
        delivery: Optional[DeliveryTransport] = None,
        store: Optional[VerificationMirror] = None,
        limiter: Optional[RateLimiter] = None,
        code_generator: Optional[CodeGenerator] = None,
    ) -> None:
        self.cache = cache
        self.settings = settings
        self.delivery = delivery
        self.store = store
        self.limiter = limiter
        self.code_generator = code_generator or SecureCodeGenerator()

    def ttl_for(self, purpose: Purpose) -> int:
        if Purpose(purpose) is Purpose.RESET:
            return self.settings.reset_otc_ttl_seconds
        return self.settings.otc_ttl_seconds

    async def issue(
        self,
        identifier: str,
        purpose: Purpose,
        *,
        kind: VerificationKind,
        role: Optional[Role] = None,
        address: Optional[str] = None,
        identity_id: Optional[str] = None,
    ) -> IssuedCode:
        purpose = Purpose(purpose)
        ttl = self.ttl_for(purpose)
        code = self.code_generator.generate()
        payload = OTCPayload(
            code=code,
            purpose=purpose,
            kind=VerificationKind(kind),
            role=Role(role) if role is not None else None,
            identity_id=identity_id,
            issued_at=time.time(),
        )
        # The code must be stored before anything is sent; failure is fatal
        await self.cache.set(code_key(identifier, purpose), payload.to_json(), ttl)
        try:
            await self.cache.delete(attempts_key(identifier, purpose))
        except StoreUnavailable:
            logger.warning("otc_attempts_reset_failed", purpose=purpose.value)

        if identity_id and self.store is not None:
            self._mirror_record(identity_id, payload, ttl)

        delivered = await self._deliver(identifier, address, purpose, code, ttl)
        logger.info(
            "otc_issued",
            target=mask_identifier(identifier),
            purpose=purpose.value,
            delivered=delivered,
        )
        return IssuedCode(purpose=purpose, expires_in=ttl, delivered=delivered)

    def _mirror_record(self, identity_id: str, payload: OTCPayload, ttl: int) -> None:
        record = VerificationRecord.new(
            identity_id, payload.kind, hash_code(identity_id, payload.code), ttl
        )
        try:
            self.store.record_verification(record)
        except Exception as exc:
            # Audit trail only; the cached code stays authoritative
            logger.warning(
                "verification_record_mirror_failed",
                identity_id=identity_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def _deliver(
        self,
        identifier: str,
        address: Optional[str],
        purpose: Purpose,
        code: str,
        ttl: int,
    ) -> bool:
        if self.delivery is None or not address:
            logger.warning(
                "otc_delivery_skipped",
                target=mask_identifier(identifier),
                reason="no_transport" if self.delivery is None else "no_address",
            )
            return False
        subject, text_body, html_body = render_code_message(
            self.settings.app_name, purpose, code, ttl
        )
        try:
            # SMTP is blocking; keep it off the event loop
            return bool(
                await asyncio.to_thread(
                    self.delivery.send, address, subject, text_body, html_body
                )
            )
        except Exception as exc:
            logger.error(
                "otc_delivery_failed",
                target=mask_identifier(identifier),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

    async def verify(
        self,
        identifier: str,
        purpose: Purpose,
        code: str,
        *,
        consume: bool = True,
    ) -> OTCPayload:
        """Check ``code`` against the live entry and, by default, consume it.

        Raises CodeExpired when no code is live (or another request consumed
        it first), CodeInvalid on mismatch, RateLimited once too many wrong
        guesses were made, and StoreUnavailable if the cache cannot be read.
        """
        purpose = Purpose(purpose)
        key = code_key(identifier, purpose)
        raw = await self.cache.get(key)
        if raw is None:
            raise CodeExpired("verification code expired or not found")

        try:
            payload = OTCPayload.from_json(raw)
        except (ValueError, TypeError):
            logger.error("otc_payload_corrupt", purpose=purpose.value)
            raise CodeInvalid("verification code is invalid")
        if payload.purpose is not purpose:
            raise CodeInvalid("verification code is invalid")

        submitted = (code or "").strip()
        if not hmac.compare_digest(submitted.encode(), payload.code.encode()):
            await self._record_failure(identifier, purpose, key, raw)

        if not consume:
            return payload

        if not await self.cache.compare_and_delete(key, raw):
            # Lost the race to a concurrent submission of the same code
            raise CodeExpired("verification code already used")
        await self._clear_counters(identifier, purpose)
        logger.info(
            "otc_consumed", target=mask_identifier(identifier), purpose=purpose.value
        )
        return payload

    async def _record_failure(
        self, identifier: str, purpose: Purpose, key: str, raw: str
    ) -> None:
        limit = self.settings.otc_max_verify_attempts
        attempts = await self.cache.increment(
            attempts_key(identifier, purpose), self.ttl_for(purpose)
        )
        logger.warning(
            "otc_mismatch",
            target=mask_identifier(identifier),
            purpose=purpose.value,
            attempts=attempts,
        )
        if limit and attempts >= limit:
            await self.cache.compare_and_delete(key, raw)
            raise RateLimited(
                "too many incorrect codes; request a new one",
                detail={"attempts": attempts},
            )
        detail = {"attempts_remaining": limit - attempts} if limit else {}
        raise CodeInvalid("verification code is invalid", detail=detail)

    async def _clear_counters(self, identifier: str, purpose: Purpose) -> None:
        try:
            await self.cache.delete(attempts_key(identifier, purpose))
            if self.limiter is not None:
                await self.limiter.reset(identifier, purpose)
        except StoreUnavailable:
            logger.warning("otc_counter_cleanup_failed", purpose=purpose.value)

    async def invalidate(self, identifier: str, purpose: Purpose) -> None:
        await self.cache.delete(code_key(identifier, purpose))
