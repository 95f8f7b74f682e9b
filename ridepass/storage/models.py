from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Closed set of platform roles; unknown strings are rejected everywhere."""

    RIDER = "rider"
    DRIVER = "driver"
    DISPATCHER = "dispatcher"
    SUPPORT = "support"
    FLEET_MANAGER = "fleet_manager"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"

    @property
    def profile_table(self) -> str:
        if self is Role.RIDER:
            return "rider_profiles"
        if self is Role.DRIVER:
            return "driver_profiles"
        return "staff_profiles"

    @property
    def is_privileged(self) -> bool:
        return self in PRIVILEGED_ROLES


# Roles that may only be created by an operator (bootstrap script or admin tooling)
PRIVILEGED_ROLES = frozenset(
    {Role.DISPATCHER, Role.SUPPORT, Role.FLEET_MANAGER, Role.ADMIN, Role.SUPER_ADMIN}
)


class IdentityStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class VerificationKind(str, Enum):
    PHONE = "phone"
    EMAIL = "email"
    DOCUMENT = "document"


class Purpose(str, Enum):
    """Why a one-time code was issued; each purpose has its own live code."""

    REGISTRATION = "registration"
    LOGIN = "login"
    RESET = "reset"


@dataclass
class Identity:
    id: str
    canonical_identifier: str
    password_hash: str
    role: Role
    status: IdentityStatus = IdentityStatus.PENDING
    token_version: int = 1
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        canonical_identifier: str,
        password_hash: str,
        role: Role,
        *,
        email: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> "Identity":
        return cls(
            id=str(uuid.uuid4()),
            canonical_identifier=canonical_identifier,
            password_hash=password_hash,
            role=Role(role),
            email=email,
            first_name=first_name,
            last_name=last_name,
        )

    @property
    def delivery_address(self) -> Optional[str]:
        """Where codes are sent; email identities deliver to themselves."""
        if self.email:
            return self.email
        if "@" in self.canonical_identifier:
            return self.canonical_identifier
        return None


@dataclass
class VerificationRecord:
    id: str
    identity_id: str
    kind: VerificationKind
    code_hash: str
    expires_at: datetime
    verified: bool = False
    verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        identity_id: str,
        kind: VerificationKind,
        code_hash: str,
        ttl_seconds: int,
    ) -> "VerificationRecord":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            identity_id=identity_id,
            kind=VerificationKind(kind),
            code_hash=code_hash,
            expires_at=now + timedelta(seconds=ttl_seconds),
            created_at=now,
        )
