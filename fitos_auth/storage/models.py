from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    """Closed set of account roles, highest privilege first."""

    SUPER_ADMIN = "SUPER_ADMIN"
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    TRAINER = "TRAINER"
    CLIENT = "CLIENT"


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"
    PENDING = "PENDING"


class VerificationPurpose(str, Enum):
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"


@dataclass
class Tenant:
    id: str
    subdomain: str
    name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    id: str
    email: str
    tenant_id: Optional[str] = None
    role: UserRole = UserRole.CLIENT
    status: UserStatus = UserStatus.ACTIVE
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    google_id: Optional[str] = None
    email_verified: bool = False
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    @property
    def display_name(self) -> Optional[str]:
        if self.name:
            return self.name
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or None


@dataclass
class Session:
    id: str
    user_id: str
    tenant_id: Optional[str]
    created_at: datetime
    expires_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        tenant_id: Optional[str],
        ttl_seconds: int,
        ip_addr: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            tenant_id=tenant_id,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            ip_addr=ip_addr,
            user_agent=user_agent,
        )


@dataclass
class RefreshToken:
    token: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class Verification:
    id: str
    identifier: str
    value: str
    purpose: VerificationPurpose
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, identifier: str, value: str, purpose: VerificationPurpose, ttl: timedelta
    ) -> "Verification":
        now = utcnow()
        return cls(
            id=f"verify_{secrets.token_hex(8)}",
            identifier=identifier,
            value=value,
            purpose=purpose,
            expires_at=now + ttl,
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class GoogleCalendarToken:
    id: str
    user_id: str
    tenant_id: str
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
