"""Tests for one-time code issue, verification and consumption."""

import asyncio
import json

import pytest

from ridepass.config import Settings
from ridepass.service.errors import CodeExpired, CodeInvalid, RateLimited
from ridepass.service.otc import (
    FixedCodeGenerator,
    OTCEngine,
    OTCPayload,
    SecureCodeGenerator,
    attempts_key,
    code_key,
    hash_code,
)
from ridepass.service.rate_limit import RateLimiter, rate_key
from ridepass.storage.errors import StoreUnavailable
from ridepass.storage.memory import MemoryCache, MemoryStore
from ridepass.storage.models import (
    Identity,
    Purpose,
    Role,
    VerificationKind,
)

PHONE = "+251911223344"


def _settings(**overrides) -> Settings:
    values = {
        "jwt_access_secret": "access-secret",
        "jwt_refresh_secret": "refresh-secret",
    }
    values.update(overrides)
    return Settings(**values)


class RecordingTransport:
    def __init__(self, accept: bool = True):
        self.accept = accept
        self.sent = []

    def send(self, destination, subject, body_text, body_html=None):
        self.sent.append((destination, subject, body_text))
        return self.accept


class SequenceGenerator:
    def __init__(self, *codes):
        self.codes = list(codes)

    def generate(self):
        return self.codes.pop(0)


class FailingCache(MemoryCache):
    async def get(self, key):
        raise StoreUnavailable("volatile store unavailable")


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def engine(cache, transport):
    return OTCEngine(
        cache,
        settings=_settings(),
        delivery=transport,
        limiter=RateLimiter(cache),
        code_generator=FixedCodeGenerator("123456"),
    )


class TestCodeGenerators:
    def test_secure_codes_are_six_digits(self):
        generator = SecureCodeGenerator()
        for _ in range(200):
            code = generator.generate()
            assert len(code) == 6
            assert code.isdigit()
            assert 100000 <= int(code) <= 999999

    def test_fixed_generator(self):
        assert FixedCodeGenerator("654321").generate() == "654321"

    def test_engine_defaults_to_secure_generator(self, cache):
        engine = OTCEngine(cache, settings=_settings())
        assert isinstance(engine.code_generator, SecureCodeGenerator)


class TestIssue:
    async def test_issue_stores_payload_with_ttl(self, engine, cache, transport):
        issued = await engine.issue(
            PHONE,
            Purpose.REGISTRATION,
            kind=VerificationKind.PHONE,
            role=Role.DRIVER,
            address="driver@example.com",
        )

        assert issued.purpose is Purpose.REGISTRATION
        assert issued.expires_in == 300
        assert issued.delivered is True
        stored = json.loads(await cache.get(code_key(PHONE, Purpose.REGISTRATION)))
        assert stored["code"] == "123456"
        assert stored["role"] == "driver"
        assert cache.ttl(code_key(PHONE, Purpose.REGISTRATION)) == 300
        destination, subject, body = transport.sent[0]
        assert destination == "driver@example.com"
        assert "123456" in body

    async def test_reset_codes_use_reset_ttl(self, engine, cache):
        issued = await engine.issue(PHONE, Purpose.RESET, kind=VerificationKind.PHONE)
        assert issued.expires_in == 600
        assert cache.ttl(code_key(PHONE, Purpose.RESET)) == 600

    async def test_no_address_skips_delivery(self, engine, transport):
        issued = await engine.issue(
            PHONE, Purpose.LOGIN, kind=VerificationKind.PHONE, address=None
        )
        assert issued.delivered is False
        assert transport.sent == []

    async def test_transport_failure_still_leaves_code_live(self, cache):
        class Broken:
            def send(self, *args, **kwargs):
                raise OSError("smtp down")

        engine = OTCEngine(
            cache,
            settings=_settings(),
            delivery=Broken(),
            code_generator=FixedCodeGenerator("111111"),
        )
        issued = await engine.issue(
            PHONE, Purpose.LOGIN, kind=VerificationKind.PHONE, address="a@b.co"
        )
        assert issued.delivered is False
        payload = await engine.verify(PHONE, Purpose.LOGIN, "111111")
        assert payload.code == "111111"

    async def test_reissue_invalidates_previous_code(self, cache):
        engine = OTCEngine(
            cache,
            settings=_settings(),
            code_generator=SequenceGenerator("111111", "222222"),
        )
        await engine.issue(PHONE, Purpose.LOGIN, kind=VerificationKind.PHONE)
        await engine.issue(PHONE, Purpose.LOGIN, kind=VerificationKind.PHONE)

        with pytest.raises(CodeInvalid):
            await engine.verify(PHONE, Purpose.LOGIN, "111111")
        payload = await engine.verify(PHONE, Purpose.LOGIN, "222222")
        assert payload.code == "222222"

    async def test_purposes_are_independent(self, cache):
        engine = OTCEngine(
            cache,
            settings=_settings(),
            code_generator=SequenceGenerator("111111", "222222"),
        )
        await engine.issue(PHONE, Purpose.REGISTRATION, kind=VerificationKind.PHONE)
        await engine.issue(PHONE, Purpose.LOGIN, kind=VerificationKind.PHONE)

        assert (await engine.verify(PHONE, Purpose.REGISTRATION, "111111")).code == "111111"
        assert (await engine.verify(PHONE, Purpose.LOGIN, "222222")).code == "222222"

    async def test_issue_mirrors_hashed_record(self, cache):
        store = MemoryStore()
        identity = Identity.new(PHONE, "hash", Role.RIDER, email="r@example.com")
        with store.transaction() as tx:
            tx.insert_identity(identity)
        engine = OTCEngine(
            cache,
            settings=_settings(),
            store=store,
            code_generator=FixedCodeGenerator("123456"),
        )

        await engine.issue(
            PHONE, Purpose.REGISTRATION, kind=VerificationKind.PHONE, identity_id=identity.id
        )

        assert len(store.verifications) == 1
        record = store.verifications[0]
        assert record.code_hash == hash_code(identity.id, "123456")
        assert record.code_hash != "123456"
        assert record.verified is False

    async def test_mirror_failure_does_not_fail_issue(self, cache):
        store = MemoryStore()
        engine = OTCEngine(
            cache,
            settings=_settings(),
            store=store,
            code_generator=FixedCodeGenerator("123456"),
        )
        # Unknown identity makes the mirror raise ConstraintViolation
        issued = await engine.issue(
            PHONE, Purpose.LOGIN, kind=VerificationKind.PHONE, identity_id="missing"
        )
        assert issued.expires_in == 300
        assert await cache.get(code_key(PHONE, Purpose.LOGIN)) is not None


class TestVerify:
    async def test_missing_code_is_expired(self, engine):
        with pytest.raises(CodeExpired):
            await engine.verify(PHONE, Purpose.LOGIN, "123456")

    async def test_expired_after_ttl(self, engine, clock):
        await engine.issue(PHONE, Purpose.LOGIN, kind=VerificationKind.PHONE)
        clock.advance(301)
        with pytest.raises(CodeExpired):
            await engine.verify(PHONE, Purpose.LOGIN, "123456")

    async def test_second_verify_is_expired(self, engine):
        await engine.issue(PHONE, Purpose.LOGIN, kind=VerificationKind.PHONE)
        await engine.verify(PHONE, Purpose.LOGIN, "123456")
        with pytest.raises(CodeExpired):
            await engine.verify(PHONE, Purpose.LOGIN, "123456")

    async def test_peek_does_not_consume(self, engine):
        await engine.issue(PHONE, Purpose.RESET, kind=VerificationKind.PHONE)
        await engine.verify(PHONE, Purpose.RESET, "123456", consume=False)
        payload = await engine.verify(PHONE, Purpose.RESET, "123456")
        assert payload.purpose is Purpose.RESET

    async def test_wrong_code_reports_remaining_attempts(self, engine):
        await engine.issue(PHONE, Purpose.LOGIN, kind=VerificationKind.PHONE)
        with pytest.raises(CodeInvalid) as exc:
            await engine.verify(PHONE, Purpose.LOGIN, "000000")
        assert exc.value.detail == {"attempts_remaining": 4}

    async def test_too_many_wrong_codes_discards_live_code(self, engine, cache):
        await engine.issue(PHONE, Purpose.LOGIN, kind=VerificationKind.PHONE)
        for _ in range(4):
            with pytest.raises(CodeInvalid):
                await engine.verify(PHONE, Purpose.LOGIN, "000000")
        with pytest.raises(RateLimited):
            await engine.verify(PHONE, Purpose.LOGIN, "000000")

        assert await cache.get(code_key(PHONE, Purpose.LOGIN)) is None
        with pytest.raises(CodeExpired):
            await engine.verify(PHONE, Purpose.LOGIN, "123456")

    async def test_reissue_resets_attempt_counter(self, engine, cache):
        await engine.issue(PHONE, Purpose.LOGIN, kind=VerificationKind.PHONE)
        with pytest.raises(CodeInvalid):
            await engine.verify(PHONE, Purpose.LOGIN, "000000")
        await engine.issue(PHONE, Purpose.LOGIN, kind=VerificationKind.PHONE)
        assert await cache.get(attempts_key(PHONE, Purpose.LOGIN)) is None

    async def test_success_clears_rate_counter(self, engine, cache):
        await engine.limiter.check_and_increment(PHONE, Purpose.LOGIN)
        await engine.issue(PHONE, Purpose.LOGIN, kind=VerificationKind.PHONE)
        await engine.verify(PHONE, Purpose.LOGIN, "123456")
        assert await cache.get(rate_key(PHONE, Purpose.LOGIN)) is None

    async def test_corrupt_payload_is_invalid(self, engine, cache):
        await cache.set(code_key(PHONE, Purpose.LOGIN), "{not json", 300)
        with pytest.raises(CodeInvalid):
            await engine.verify(PHONE, Purpose.LOGIN, "123456")

    async def test_unknown_role_in_payload_is_invalid(self, engine, cache):
        await cache.set(
            code_key(PHONE, Purpose.LOGIN),
            json.dumps({"code": "123456", "purpose": "login", "kind": "phone", "role": "pilot"}),
            300,
        )
        with pytest.raises(CodeInvalid):
            await engine.verify(PHONE, Purpose.LOGIN, "123456")

    async def test_cache_outage_is_not_a_miss(self, clock):
        engine = OTCEngine(FailingCache(clock=clock), settings=_settings())
        with pytest.raises(StoreUnavailable):
            await engine.verify(PHONE, Purpose.LOGIN, "123456")

    async def test_concurrent_verify_succeeds_once(self, yielding_cache):
        engine = OTCEngine(
            yielding_cache,
            settings=_settings(),
            limiter=RateLimiter(yielding_cache),
            code_generator=FixedCodeGenerator("123456"),
        )
        await engine.issue(PHONE, Purpose.LOGIN, kind=VerificationKind.PHONE)
        results = await asyncio.gather(
            *(engine.verify(PHONE, Purpose.LOGIN, "123456") for _ in range(5)),
            return_exceptions=True,
        )
        successes = [r for r in results if isinstance(r, OTCPayload)]
        failures = [r for r in results if isinstance(r, CodeExpired)]
        assert len(successes) == 1
        assert len(failures) == 4
        # Every loser read the live code and lost at the delete step
        assert {f.message for f in failures} == {"verification code already used"}


def test_payload_json_round_trip():
    payload = OTCPayload(
        code="123456",
        purpose=Purpose.LOGIN,
        kind=VerificationKind.EMAIL,
        role=Role.FLEET_MANAGER,
        identity_id="abc",
        issued_at=1.5,
    )
    assert OTCPayload.from_json(payload.to_json()) == payload
