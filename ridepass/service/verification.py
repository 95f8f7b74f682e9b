from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from ridepass.config import Settings
from ridepass.logging import get_logger
from ridepass.service.errors import (
    AlreadyRegistered,
    CodeExpired,
    CodeInvalid,
    InvalidCredentials,
    InvalidInput,
    NotVerified,
    RateLimited,
    TokenInvalid,
    UserInactive,
    UserNotFound,
    UserSuspended,
)
from ridepass.service.normalizer import canonicalize, is_email, mask_identifier
from ridepass.service.otc import IssuedCode, OTCEngine
from ridepass.service.passwords import (
    MAX_PASSWORD_LENGTH,
    MIN_PASSWORD_LENGTH,
    PasswordHasher,
)
from ridepass.service.rate_limit import RateLimiter
from ridepass.service.tokens import SessionIssuer, TokenClaims, TokenPair
from ridepass.storage.errors import ConstraintViolation
from ridepass.storage.models import (
    Identity,
    IdentityStatus,
    Purpose,
    Role,
    VerificationKind,
)

logger = get_logger(__name__)


class IdentityStore(Protocol):
    def transaction(self): ...

    def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    def get_identity_by_identifier(
        self, canonical_identifier: str
    ) -> Optional[Identity]: ...

    def get_identity_by_email(self, email: str) -> Optional[Identity]: ...


@dataclass(frozen=True)
class RegistrationResult:
    identity: Identity
    code: IssuedCode


@dataclass(frozen=True)
class VerificationResult:
    activated: bool
    tokens: TokenPair
    identity: Identity


@dataclass(frozen=True)
class LoginResult:
    identity: Identity
    tokens: TokenPair


@dataclass(frozen=True)
class AuthContext:
    identity: Identity
    claims: TokenClaims


def _kind_for(identifier: str) -> VerificationKind:
    return VerificationKind.EMAIL if is_email(identifier) else VerificationKind.PHONE


def _coerce_role(role: Role | str | None) -> Optional[Role]:
    if role is None:
        return None
    try:
        return Role(role)
    except ValueError:
        raise InvalidInput("unknown role", detail={"field": "role"})


def _coerce_purpose(purpose: Purpose | str) -> Purpose:
    try:
        return Purpose(purpose)
    except ValueError:
        raise InvalidInput("unknown purpose", detail={"field": "purpose"})


def _check_password_shape(password: str) -> None:
    if not isinstance(password, str) or not (
        MIN_PASSWORD_LENGTH <= len(password) <= MAX_PASSWORD_LENGTH
    ):
        raise InvalidInput(
            f"password must be {MIN_PASSWORD_LENGTH}-{MAX_PASSWORD_LENGTH} characters",
            detail={"field": "password"},
        )


def _reject_blocked(identity: Identity) -> None:
    if identity.status is IdentityStatus.SUSPENDED:
        raise UserSuspended("account is suspended")
    if identity.status is IdentityStatus.INACTIVE:
        raise UserInactive("account is inactive")


class VerificationOrchestrator:
    """Drives identities through ``unregistered -> pending -> active``.

    Every durable mutation happens inside ``store.transaction()``; tokens are
    only minted after that transaction has committed.
    """

    def __init__(
        self,
        *,
        store: IdentityStore,
        otc: OTCEngine,
        limiter: RateLimiter,
        issuer: SessionIssuer,
        hasher: PasswordHasher,
        settings: Settings,
    ) -> None:
        self.store = store
        self.otc = otc
        self.limiter = limiter
        self.issuer = issuer
        self.hasher = hasher
        self.settings = settings

    def _canonical(self, raw: str) -> str:
        return canonicalize(raw, country_code=self.settings.default_country_code)

    def _find(self, canonical: str) -> Optional[Identity]:
        """Look up by identifier, then by contact email for email-shaped input."""
        identity = self.store.get_identity_by_identifier(canonical)
        if identity is None and is_email(canonical):
            identity = self.store.get_identity_by_email(canonical)
        return identity

    def _email_taken(self, address: str) -> bool:
        return (
            self.store.get_identity_by_identifier(address) is not None
            or self.store.get_identity_by_email(address) is not None
        )

    async def _over_rate_limit(self, identifier: str, purpose: Purpose) -> bool:
        limit = self.settings.otp_rate_limit_per_hour
        count = await self.limiter.check_and_increment(identifier, purpose)
        if limit and count > limit:
            logger.warning(
                "otc_rate_limited",
                target=mask_identifier(identifier),
                purpose=purpose.value,
                attempts=count,
            )
            return True
        return False

    async def _enforce_rate_limit(self, identifier: str, purpose: Purpose) -> None:
        if await self._over_rate_limit(identifier, purpose):
            raise RateLimited(
                "too many code requests; try again later",
                detail={"retry_after": self.settings.otp_rate_window_seconds},
            )

    def _claims(self, identity: Identity) -> TokenClaims:
        return TokenClaims(
            subject=identity.id, role=identity.role, version=identity.token_version
        )

    # -- registration ------------------------------------------------------

    async def register(
        self,
        identifier: str,
        password: str,
        *,
        role: Role | str = Role.RIDER,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        allow_privileged: bool = False,
    ) -> RegistrationResult:
        canonical = self._canonical(identifier)
        role = _coerce_role(role)
        if role.is_privileged and not allow_privileged:
            raise InvalidInput(
                "role cannot be self-registered", detail={"field": "role"}
            )
        _check_password_shape(password)
        contact_email = None
        if email:
            if not is_email(email):
                raise InvalidInput("invalid email address", detail={"field": "email"})
            contact_email = self._canonical(email)
        elif not is_email(canonical):
            raise InvalidInput(
                "an email address is required to deliver the verification code",
                detail={"field": "email"},
            )

        await self._enforce_rate_limit(canonical, Purpose.REGISTRATION)
        if self.store.get_identity_by_identifier(canonical) is not None:
            raise AlreadyRegistered("identifier is already registered")
        # A contact email can stand in for the identifier, so it has one owner
        addresses = [canonical] if is_email(canonical) else []
        if contact_email and contact_email != canonical:
            addresses.append(contact_email)
        if any(self._email_taken(address) for address in addresses):
            raise AlreadyRegistered("email is already registered")

        identity = Identity.new(
            canonical,
            self.hasher.hash(password),
            role,
            email=contact_email,
            first_name=first_name,
            last_name=last_name,
        )
        try:
            with self.store.transaction() as tx:
                tx.insert_identity(identity)
                tx.insert_profile(identity)
        except ConstraintViolation:
            # Lost a concurrent registration race on a unique column
            raise AlreadyRegistered("identifier is already registered")

        logger.info(
            "identity_registered",
            identity_id=identity.id,
            role=identity.role.value,
            target=mask_identifier(canonical),
        )
        issued = await self.otc.issue(
            canonical,
            Purpose.REGISTRATION,
            kind=_kind_for(canonical),
            role=identity.role,
            address=identity.delivery_address,
            identity_id=identity.id,
        )
        return RegistrationResult(identity=identity, code=issued)

    async def request_code(
        self,
        identifier: str,
        purpose: Purpose | str = Purpose.REGISTRATION,
        role: Role | str | None = None,
    ) -> IssuedCode:
        """Issue (or re-issue) a registration or login code."""
        canonical = self._canonical(identifier)
        purpose = _coerce_purpose(purpose)
        if purpose is Purpose.RESET:
            raise InvalidInput(
                "use the password reset flow for reset codes",
                detail={"field": "purpose"},
            )
        role = _coerce_role(role)

        identity = self.store.get_identity_by_identifier(canonical)
        if identity is None:
            raise UserNotFound("no account for this identifier")
        if role is not None and role is not identity.role:
            raise InvalidInput("role does not match account", detail={"field": "role"})
        _reject_blocked(identity)
        address = identity.delivery_address
        if not address:
            raise UserNotFound("no delivery address on file")

        await self._enforce_rate_limit(canonical, purpose)
        return await self.otc.issue(
            canonical,
            purpose,
            kind=_kind_for(canonical),
            role=identity.role,
            address=address,
            identity_id=identity.id,
        )

    # -- verification ------------------------------------------------------

    async def verify_code(
        self, identifier: str, purpose: Purpose | str, code: str
    ) -> VerificationResult:
        canonical = self._canonical(identifier)
        purpose = _coerce_purpose(purpose)
        if purpose is Purpose.RESET:
            raise InvalidInput(
                "reset codes are confirmed through the password reset flow",
                detail={"field": "purpose"},
            )

        payload = await self.otc.verify(canonical, purpose, code)

        with self.store.transaction() as tx:
            identity = tx.get_identity_by_identifier(canonical, for_update=True)
            if identity is None:
                raise UserNotFound("no account for this identifier")
            if payload.role is not None and payload.role is not identity.role:
                raise InvalidInput("code was issued for a different role")
            _reject_blocked(identity)
            activated = identity.status is IdentityStatus.PENDING
            if activated:
                tx.set_status(identity.id, IdentityStatus.ACTIVE)
                identity.status = IdentityStatus.ACTIVE
            tx.mark_verification_verified(identity.id, payload.kind)
            tx.touch_last_login(identity.id)

        tokens = self.issuer.issue_pair(self._claims(identity))
        logger.info(
            "identity_verified",
            identity_id=identity.id,
            purpose=purpose.value,
            activated=activated,
        )
        return VerificationResult(activated=activated, tokens=tokens, identity=identity)

    # -- password login ----------------------------------------------------

    async def login(self, identifier: str, password: str) -> LoginResult:
        try:
            canonical = self._canonical(identifier)
        except InvalidInput:
            raise InvalidCredentials("invalid credentials")
        identity = self._find(canonical)
        if identity is None:
            raise InvalidCredentials("invalid credentials")
        if identity.status is IdentityStatus.PENDING:
            raise NotVerified("account is not verified")
        if identity.status is not IdentityStatus.ACTIVE:
            # Suspension wins over password correctness
            raise UserSuspended("account is suspended")
        if not isinstance(password, str) or not self.hasher.verify(
            identity.password_hash, password
        ):
            logger.warning("login_failed", identity_id=identity.id)
            raise InvalidCredentials("invalid credentials")

        with self.store.transaction() as tx:
            tx.touch_last_login(identity.id)
        tokens = self.issuer.issue_pair(self._claims(identity))
        logger.info("login_succeeded", identity_id=identity.id, role=identity.role.value)
        return LoginResult(identity=identity, tokens=tokens)

    async def refresh(self, refresh_token: str) -> TokenPair:
        return await self.issuer.rotate(refresh_token)

    async def logout(self, refresh_token: str) -> None:
        revoked = await self.issuer.revoke_refresh(refresh_token)
        logger.info("logout", refresh_revoked=revoked)

    # -- password reset ----------------------------------------------------

    async def request_password_reset(self, identifier: str) -> None:
        """Send a reset code if the account exists. Never reveals whether it does."""
        try:
            canonical = self._canonical(identifier)
        except InvalidInput:
            logger.info("password_reset_requested", known=False)
            return None
        # Counted before the lookup so known and unknown identifiers behave alike
        if await self._over_rate_limit(canonical, Purpose.RESET):
            return None
        identity = self._find(canonical)
        address = identity.delivery_address if identity else None
        if identity is None or not address:
            logger.info("password_reset_requested", known=False)
            return None
        # Keyed on the account, whichever of its addresses was submitted
        await self.otc.issue(
            identity.canonical_identifier,
            Purpose.RESET,
            kind=_kind_for(identity.canonical_identifier),
            role=identity.role,
            address=address,
            identity_id=identity.id,
        )
        logger.info("password_reset_requested", known=True, identity_id=identity.id)
        return None

    def _reset_subject(self, identifier: str) -> Identity:
        identity = self._find(self._canonical(identifier))
        if identity is None:
            # Same answer as a missing code so the account stays hidden
            raise CodeExpired("verification code expired or not found")
        return identity

    async def peek_reset_code(self, identifier: str, code: str) -> bool:
        """Check a reset code without consuming it. False for a wrong code."""
        identity = self._reset_subject(identifier)
        try:
            await self.otc.verify(
                identity.canonical_identifier, Purpose.RESET, code, consume=False
            )
        except CodeInvalid:
            return False
        return True

    async def confirm_password_reset(
        self, identifier: str, code: str, new_password: str
    ) -> None:
        _check_password_shape(new_password)
        subject = self._reset_subject(identifier)
        await self.otc.verify(subject.canonical_identifier, Purpose.RESET, code)
        new_hash = self.hasher.hash(new_password)
        with self.store.transaction() as tx:
            identity = tx.get_identity(subject.id, for_update=True)
            if identity is None:
                raise UserNotFound("no account for this identifier")
            tx.update_password(identity.id, new_hash)
            # Tokens minted before the reset stop authenticating
            version = tx.bump_token_version(identity.id)
        logger.info("password_reset", identity_id=identity.id, token_version=version)

    # -- authenticated requests --------------------------------------------

    def authenticate(self, access_token: str) -> AuthContext:
        """Resolve an access token to a live, active identity."""
        claims = self.issuer.verify_access_token(access_token)
        identity = self.store.get_identity(claims.subject)
        if identity is None:
            raise TokenInvalid("token subject no longer exists")
        if identity.token_version != claims.version:
            raise TokenInvalid("token has been revoked")
        if identity.role is not claims.role:
            raise TokenInvalid("token role is stale")
        if identity.status is IdentityStatus.PENDING:
            raise NotVerified("account is not verified")
        _reject_blocked(identity)
        return AuthContext(identity=identity, claims=claims)

    def get_identity(self, identity_id: str) -> Identity:
        identity = self.store.get_identity(identity_id)
        if identity is None:
            raise UserNotFound("identity not found")
        return identity

    def revoke_all_sessions(self, identity_id: str) -> int:
        """Invalidate every access token issued so far for ``identity_id``."""
        with self.store.transaction() as tx:
            identity = tx.get_identity(identity_id, for_update=True)
            if identity is None:
                raise UserNotFound("identity not found")
            version = tx.bump_token_version(identity_id)
        logger.info("sessions_revoked", identity_id=identity_id, token_version=version)
        return version
