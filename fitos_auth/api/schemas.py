from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from fitos_auth.storage.models import User

# Upper bound for free-text fields accepted from clients
MAX_STRING_LENGTH = 4096

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def normalize_email_input(value: str) -> str:
    return unicodedata.normalize("NFKC", value.strip().lower())


def is_valid_email(value: Optional[str]) -> bool:
    if not isinstance(value, str):
        return False
    normalized = normalize_email_input(value)
    if not 3 <= len(normalized) <= 254:
        return False
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        return False
    if not _EMAIL_LOCAL_PART.match(local):
        return False
    labels = domain.split(".")
    if len(labels) < 2:
        return False
    return all(len(label) <= 63 and _EMAIL_DOMAIN_LABEL.match(label) for label in labels)


class _CamelModel(BaseModel):
    """Accepts camelCase on the wire and snake_case from Python callers."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_max_length=MAX_STRING_LENGTH,
    )


# Request bodies keep every field optional so the routes can report the
# specific error code (MISSING_CREDENTIALS, MISSING_REQUIRED_FIELDS...).


class LoginRequest(_CamelModel):
    email: Optional[str] = None
    password: Optional[str] = None


class SignupRequest(_CamelModel):
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    email: Optional[str] = None
    password: Optional[str] = None
    confirm_password: Optional[str] = None
    phone: Optional[str] = Field(default=None, max_length=32)
    tenant_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("first_name", "last_name", "phone", "tenant_id")
    @classmethod
    def _strip(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class ForgotPasswordRequest(_CamelModel):
    email: Optional[str] = None


class ResetPasswordRequest(_CamelModel):
    token: Optional[str] = None
    password: Optional[str] = None
    confirm_password: Optional[str] = None


class VerifyEmailRequest(_CamelModel):
    token: Optional[str] = None


class RefreshRequest(_CamelModel):
    refresh_token: Optional[str] = None


class GoogleCreateUserRequest(_CamelModel):
    email: Optional[str] = None
    name: Optional[str] = Field(default=None, max_length=200)
    google_id: Optional[str] = Field(default=None, max_length=255)
    tenant_id: Optional[str] = Field(default=None, max_length=128)


class EventTime(_CamelModel):
    date_time: datetime
    time_zone: Optional[str] = None


class CalendarEventRequest(_CamelModel):
    summary: str = Field(min_length=1, max_length=1024)
    description: Optional[str] = None
    location: Optional[str] = Field(default=None, max_length=1024)
    start: EventTime
    end: EventTime
    attendees: List[str] = Field(default_factory=list, max_length=100)

    @model_validator(mode="after")
    def _end_after_start(self) -> "CalendarEventRequest":
        if self.end.date_time <= self.start.date_time:
            raise ValueError("end must be after start")
        return self

    def to_google_event(self) -> dict[str, Any]:
        def _time(value: EventTime) -> dict[str, Any]:
            body: dict[str, Any] = {"dateTime": value.date_time.isoformat()}
            if value.time_zone:
                body["timeZone"] = value.time_zone
            return body

        event: dict[str, Any] = {
            "summary": self.summary,
            "start": _time(self.start),
            "end": _time(self.end),
        }
        if self.description:
            event["description"] = self.description
        if self.location:
            event["location"] = self.location
        if self.attendees:
            event["attendees"] = [{"email": email} for email in self.attendees]
        return event


class UserResponse(_CamelModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    role: str
    status: str
    tenant_id: Optional[str] = None
    email_verified: bool = False
    last_login: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            name=user.display_name,
            phone=user.phone,
            role=user.role.value,
            status=user.status.value,
            tenant_id=user.tenant_id,
            email_verified=user.email_verified,
            last_login=user.last_login,
            created_at=user.created_at,
        )


def serialize_user(user: User) -> dict[str, Any]:
    return UserResponse.from_user(user).model_dump(mode="json", by_alias=True)


class ErrorBody(BaseModel):
    success: bool = False
    error: str
    message: str
    details: Optional[Any] = None
