from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from ridepass.config import Settings
from ridepass.logging import get_logger
from ridepass.service.errors import TokenInvalid
from ridepass.storage.errors import StoreUnavailable
from ridepass.storage.models import Role

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class RevocationStore(Protocol):
    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> None: ...

    async def claim_refresh_once(self, jti: str, ttl_seconds: int) -> bool: ...


@dataclass(frozen=True)
class TokenClaims:
    """Identity-bearing part of a token; everything else is fixed per issuer."""

    subject: str
    role: Role
    version: int
    jti: Optional[str] = None
    issued_at: Optional[int] = None
    expires_at: Optional[int] = None

    def same_identity(self, other: "TokenClaims") -> bool:
        return (self.subject, self.role, self.version) == (
            other.subject,
            other.role,
            other.version,
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    token_type: str = "bearer"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class SessionIssuer:
    """Signs and verifies HS256 access/refresh tokens.

    Access and refresh tokens are signed with different secrets and carry a
    ``token_type`` claim, so neither can be replayed as the other.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        cache: Optional[RevocationStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self._clock = clock
        self._secrets = {
            ACCESS: settings.jwt_access_secret.encode(),
            REFRESH: settings.jwt_refresh_secret.encode(),
        }
        self._ttls = {
            ACCESS: settings.access_token_ttl_minutes * 60,
            REFRESH: settings.refresh_token_ttl_minutes * 60,
        }

    # -- signing -----------------------------------------------------------

    def _encode_jwt(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            self._secrets[token_type], signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{_encode_segment(signature)}"

    def _issue(self, claims: TokenClaims, token_type: str) -> str:
        now = int(self._clock())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": claims.subject,
            "role": Role(claims.role).value,
            "ver": int(claims.version),
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + self._ttls[token_type],
        }
        return self._encode_jwt(payload, token_type)

    def issue_access_token(self, claims: TokenClaims) -> str:
        return self._issue(claims, ACCESS)

    def issue_refresh_token(self, claims: TokenClaims) -> str:
        return self._issue(claims, REFRESH)

    def issue_pair(self, claims: TokenClaims) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access_token(claims),
            refresh_token=self.issue_refresh_token(claims),
            expires_in=self._ttls[ACCESS],
            refresh_expires_in=self._ttls[REFRESH],
        )

    # -- verification ------------------------------------------------------

    def _decode_jwt(self, token: str, token_type: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise TokenInvalid("token is malformed")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalid("token is malformed")

        # Pin the algorithm; never trust the header to choose it
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            raise TokenInvalid("token header is unreadable")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", token_type=token_type)
            raise TokenInvalid("unsupported token algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = _encode_segment(
            hmac.new(
                self._secrets[token_type], signing_input.encode(), hashlib.sha256
            ).digest()
        )
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalid("token signature mismatch")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise TokenInvalid("token payload is unreadable")
        if not isinstance(payload, dict):
            raise TokenInvalid("token payload is unreadable")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalid("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenInvalid("token audience mismatch")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid("token expiry missing")
        if exp_ts <= self._clock() - self.settings.jwt_leeway_seconds:
            raise TokenInvalid("token expired")
        if payload.get("token_type") != token_type:
            raise TokenInvalid("wrong token type")
        return payload

    def _claims_from_payload(self, payload: dict[str, Any]) -> TokenClaims:
        subject = payload.get("sub")
        version = payload.get("ver")
        if not isinstance(subject, str) or not subject:
            raise TokenInvalid("token subject missing")
        if not isinstance(version, int) or isinstance(version, bool):
            raise TokenInvalid("token version missing")
        try:
            role = Role(payload.get("role"))
        except ValueError:
            raise TokenInvalid("token role not recognised")
        return TokenClaims(
            subject=subject,
            role=role,
            version=version,
            jti=payload.get("jti"),
            issued_at=payload.get("iat"),
            expires_at=int(payload["exp"]),
        )

    def verify_access_token(self, token: str) -> TokenClaims:
        return self._claims_from_payload(self._decode_jwt(token, ACCESS))

    def verify_refresh_token(self, token: str) -> TokenClaims:
        return self._claims_from_payload(self._decode_jwt(token, REFRESH))

    # -- refresh lifecycle -------------------------------------------------

    def _remaining_ttl(self, claims: TokenClaims) -> int:
        if claims.expires_at is None:
            return 0
        return max(0, int(claims.expires_at - self._clock()))

    async def _claim(self, claims: TokenClaims) -> bool:
        if not claims.jti or self.cache is None:
            return True
        try:
            return await self.cache.claim_refresh_once(
                claims.jti, self._remaining_ttl(claims)
            )
        except StoreUnavailable:
            # Cannot prove the token is still unused
            logger.warning("refresh_revocation_check_failed")
            return False

    async def rotate(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a fresh pair with identical claims.

        The token's jti is claimed in one atomic step, so of any number of
        concurrent rotations of the same token exactly one succeeds.
        """
        claims = self.verify_refresh_token(refresh_token)
        if not await self._claim(claims):
            logger.warning("refresh_token_reused", sub=claims.subject)
            raise TokenInvalid("refresh token revoked")
        pair = self.issue_pair(claims)
        logger.info("tokens_rotated", sub=claims.subject, role=claims.role.value)
        return pair

    async def revoke_refresh(self, refresh_token: str) -> bool:
        """Denylist a refresh token for the rest of its lifetime.

        Returns False when the token is not a valid refresh token or the
        denylist cannot be written; logout stays advisory in both cases.
        """
        try:
            claims = self.verify_refresh_token(refresh_token)
        except TokenInvalid:
            return False
        if self.cache is None or not claims.jti:
            return False
        try:
            await self.cache.mark_refresh_revoked(claims.jti, self._remaining_ttl(claims))
        except StoreUnavailable:
            logger.warning("refresh_revoke_failed", sub=claims.subject)
            return False
        return True
