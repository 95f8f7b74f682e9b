"""Tests for access/refresh token signing, verification and rotation."""

import asyncio
import base64
import json

import pytest

from ridepass.config import Settings
from ridepass.service.errors import TokenInvalid
from ridepass.service.tokens import SessionIssuer, TokenClaims, TokenPair
from ridepass.storage.errors import StoreUnavailable
from ridepass.storage.memory import MemoryCache
from ridepass.storage.models import Role


def _settings(**overrides) -> Settings:
    values = {
        "jwt_access_secret": "access-secret",
        "jwt_refresh_secret": "refresh-secret",
        "access_token_ttl_minutes": 10,
        "refresh_token_ttl_minutes": 60,
    }
    values.update(overrides)
    return Settings(**values)


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


CLAIMS = TokenClaims(subject="user-1", role=Role.DRIVER, version=3)


@pytest.fixture
def issuer(clock):
    return SessionIssuer(_settings(), cache=MemoryCache(clock=clock), clock=clock)


class TestIssue:
    def test_pair_carries_claims(self, issuer, clock):
        pair = issuer.issue_pair(CLAIMS)
        assert pair.expires_in == 600
        assert pair.refresh_expires_in == 3600
        assert pair.token_type == "bearer"

        payload = _payload(pair.access_token)
        assert payload["sub"] == "user-1"
        assert payload["role"] == "driver"
        assert payload["ver"] == 3
        assert payload["token_type"] == "access"
        assert payload["iss"] == "ridepass-api"
        assert payload["aud"] == "ridepass-app"
        assert payload["exp"] - payload["iat"] == 600

    def test_verify_round_trip(self, issuer):
        pair = issuer.issue_pair(CLAIMS)
        access = issuer.verify_access_token(pair.access_token)
        refresh = issuer.verify_refresh_token(pair.refresh_token)
        assert access.same_identity(CLAIMS)
        assert refresh.same_identity(CLAIMS)
        assert access.jti != refresh.jti


class TestVerifyRejects:
    def test_access_and_refresh_are_not_interchangeable(self, issuer):
        pair = issuer.issue_pair(CLAIMS)
        with pytest.raises(TokenInvalid):
            issuer.verify_access_token(pair.refresh_token)
        with pytest.raises(TokenInvalid):
            issuer.verify_refresh_token(pair.access_token)

    def test_expired(self, issuer, clock):
        token = issuer.issue_access_token(CLAIMS)
        clock.advance(600 + 31)
        with pytest.raises(TokenInvalid):
            issuer.verify_access_token(token)

    def test_leeway_tolerates_small_skew(self, issuer, clock):
        token = issuer.issue_access_token(CLAIMS)
        clock.advance(600 + 10)
        assert issuer.verify_access_token(token).subject == "user-1"

    def test_tampered_payload(self, issuer):
        header, _, signature = issuer.issue_access_token(CLAIMS).split(".")
        forged = _b64({"sub": "user-1", "role": "super_admin", "ver": 3})
        with pytest.raises(TokenInvalid):
            issuer.verify_access_token(f"{header}.{forged}.{signature}")

    def test_other_issuer_secret(self, clock):
        other = SessionIssuer(
            _settings(jwt_access_secret="different", jwt_refresh_secret="also-different"),
            clock=clock,
        )
        token = other.issue_access_token(CLAIMS)
        issuer = SessionIssuer(_settings(), clock=clock)
        with pytest.raises(TokenInvalid):
            issuer.verify_access_token(token)

    def test_wrong_audience(self, clock):
        other = SessionIssuer(_settings(jwt_audience="someone-else"), clock=clock)
        token = other.issue_access_token(CLAIMS)
        with pytest.raises(TokenInvalid):
            SessionIssuer(_settings(), clock=clock).verify_access_token(token)

    def test_alg_none_rejected(self, issuer):
        _, payload, _ = issuer.issue_access_token(CLAIMS).split(".")
        header = _b64({"alg": "none", "typ": "JWT"})
        with pytest.raises(TokenInvalid):
            issuer.verify_access_token(f"{header}.{payload}.")

    @pytest.mark.parametrize("token", ["", "abc", "a.b", None, 12])
    def test_malformed(self, issuer, token):
        with pytest.raises(TokenInvalid):
            issuer.verify_access_token(token)

    def test_unknown_role_rejected(self, issuer, clock):
        payload = {
            "iss": "ridepass-api",
            "aud": "ridepass-app",
            "sub": "user-1",
            "role": "pilot",
            "ver": 1,
            "token_type": "access",
            "jti": "x",
            "iat": int(clock()),
            "exp": int(clock()) + 60,
        }
        token = issuer._encode_jwt(payload, "access")
        with pytest.raises(TokenInvalid):
            issuer.verify_access_token(token)


class TestRefreshLifecycle:
    async def test_rotate_issues_new_pair_with_same_claims(self, issuer):
        pair = issuer.issue_pair(CLAIMS)
        rotated = await issuer.rotate(pair.refresh_token)
        assert rotated.refresh_token != pair.refresh_token
        assert issuer.verify_access_token(rotated.access_token).same_identity(CLAIMS)

    async def test_refresh_token_is_single_use(self, issuer):
        pair = issuer.issue_pair(CLAIMS)
        await issuer.rotate(pair.refresh_token)
        with pytest.raises(TokenInvalid):
            await issuer.rotate(pair.refresh_token)

    async def test_rotate_rejects_access_token(self, issuer):
        pair = issuer.issue_pair(CLAIMS)
        with pytest.raises(TokenInvalid):
            await issuer.rotate(pair.access_token)

    async def test_revoked_refresh_cannot_rotate(self, issuer):
        pair = issuer.issue_pair(CLAIMS)
        assert await issuer.revoke_refresh(pair.refresh_token) is True
        with pytest.raises(TokenInvalid):
            await issuer.rotate(pair.refresh_token)

    async def test_revoke_ignores_garbage(self, issuer):
        assert await issuer.revoke_refresh("not-a-token") is False

    async def test_concurrent_rotation_succeeds_once(self, yielding_cache, clock):
        issuer = SessionIssuer(_settings(), cache=yielding_cache, clock=clock)
        pair = issuer.issue_pair(CLAIMS)
        results = await asyncio.gather(
            *(issuer.rotate(pair.refresh_token) for _ in range(3)),
            return_exceptions=True,
        )
        assert sum(1 for r in results if isinstance(r, TokenPair)) == 1
        assert sum(1 for r in results if isinstance(r, TokenInvalid)) == 2

    async def test_denylist_outage_fails_closed(self, clock):
        class DownCache(MemoryCache):
            async def claim_refresh_once(self, jti, ttl_seconds):
                raise StoreUnavailable("volatile store unavailable")

        issuer = SessionIssuer(_settings(), cache=DownCache(clock=clock), clock=clock)
        pair = issuer.issue_pair(CLAIMS)
        with pytest.raises(TokenInvalid):
            await issuer.rotate(pair.refresh_token)


class TestSettingsSecrets:
    def test_same_secret_for_both_kinds_rejected(self):
        with pytest.raises(ValueError):
            Settings(jwt_access_secret="same", jwt_refresh_secret="same")

    def test_missing_secrets_rejected_outside_test_mode(self):
        with pytest.raises(ValueError):
            Settings(test_mode=False)

    def test_test_mode_generates_distinct_secrets(self):
        settings = Settings(test_mode=True)
        assert settings.jwt_access_secret
        assert settings.jwt_access_secret != settings.jwt_refresh_secret
