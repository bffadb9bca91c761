from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from fitos_auth.logging import get_logger
from fitos_auth.storage.common import (
    TokenCipher,
    format_datetime,
    normalize_email,
    parse_datetime,
)
from fitos_auth.storage.errors import ConstraintViolation
from fitos_auth.storage.models import (
    GoogleCalendarToken,
    RefreshToken,
    Session,
    Tenant,
    User,
    UserRole,
    UserStatus,
    Verification,
    VerificationPurpose,
    utcnow,
)


class MemoryStore:
    """In-process backing store used by tests and local development.

    Every table is guarded by one re-entrant lock so multi-step operations
    (refresh-token consumption, password reset) are atomic with respect to
    concurrent requests. When ``fs_root`` is given, the state is snapshotted
    to ``<fs_root>/state/memory_store.json`` after each mutation and reloaded
    on start-up.
    """

    def __init__(
        self,
        fs_root: str | None = None,
        *,
        token_encryption_key: str | None = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, Session] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.verifications: Dict[str, Verification] = {}
        self.calendar_tokens: Dict[tuple[str, str], GoogleCalendarToken] = {}
        # RLock so store methods can call each other while holding it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        self._cipher = TokenCipher(token_encryption_key or "fitos-memory-store")
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # tenants
    def create_tenant(
        self, subdomain: str, name: str | None = None, *, tenant_id: str | None = None
    ) -> Tenant:
        with self._data_lock:
            if any(t.subdomain == subdomain for t in self.tenants.values()):
                raise ConstraintViolation("subdomain already exists", {"field": "subdomain"})
            tenant = Tenant(id=tenant_id or str(uuid.uuid4()), subdomain=subdomain, name=name)
            if tenant.id in self.tenants:
                raise ConstraintViolation("tenant already exists", {"field": "id"})
            self.tenants[tenant.id] = tenant
            self._persist_state()
            return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def get_tenant_by_subdomain(self, subdomain: str) -> Optional[Tenant]:
        with self._data_lock:
            return next(
                (t for t in self.tenants.values() if t.subdomain == subdomain), None
            )

    # users
    def create_user(
        self,
        email: str,
        *,
        tenant_id: str | None,
        role: UserRole = UserRole.CLIENT,
        status: UserStatus = UserStatus.ACTIVE,
        first_name: str | None = None,
        last_name: str | None = None,
        name: str | None = None,
        phone: str | None = None,
        google_id: str | None = None,
        email_verified: bool = False,
    ) -> User:
        with self._data_lock:
            user = self._insert_user(
                email,
                tenant_id=tenant_id,
                role=role,
                status=status,
                first_name=first_name,
                last_name=last_name,
                name=name,
                phone=phone,
                google_id=google_id,
                email_verified=email_verified,
            )
            self._persist_state()
            return replace(user)

    def create_user_with_password(
        self,
        email: str,
        password_hash: str,
        password_algo: str,
        *,
        tenant_id: str | None,
        role: UserRole = UserRole.CLIENT,
        status: UserStatus = UserStatus.ACTIVE,
        first_name: str | None = None,
        last_name: str | None = None,
        name: str | None = None,
        phone: str | None = None,
        email_verified: bool = False,
    ) -> User:
        """Insert the user and its credential together; neither exists on failure."""
        with self._data_lock:
            user = self._insert_user(
                email,
                tenant_id=tenant_id,
                role=role,
                status=status,
                first_name=first_name,
                last_name=last_name,
                name=name,
                phone=phone,
                email_verified=email_verified,
            )
            self.credentials[user.id] = (password_hash, password_algo)
            self._persist_state()
            return replace(user)

    def _insert_user(self, email: str, *, tenant_id: str | None, **fields) -> User:
        email = normalize_email(email)
        if any(existing.email == email for existing in self.users.values()):
            raise ConstraintViolation("email already exists", {"field": "email"})
        if tenant_id is not None and tenant_id not in self.tenants:
            raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
        fields["role"] = UserRole(fields.get("role", UserRole.CLIENT))
        fields["status"] = UserStatus(fields.get("status", UserStatus.ACTIVE))
        user = User(id=str(uuid.uuid4()), email=email, tenant_id=tenant_id, **fields)
        self.users[user.id] = user
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def update_last_login(self, user_id: str, when: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login = when
            user.updated_at = utcnow()
            self._persist_state()

    def update_user_role(self, user_id: str, role: UserRole) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = UserRole(role)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def set_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = UserStatus(status)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # sessions
    def create_session(
        self,
        user_id: str,
        tenant_id: str | None,
        ttl_seconds: int,
        ip_addr: str | None = None,
        user_agent: str | None = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                tenant_id=tenant_id,
                ttl_seconds=ttl_seconds,
                ip_addr=ip_addr,
                user_agent=user_agent,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return replace(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def delete_session(self, session_id: str) -> None:
        with self._data_lock:
            if self.sessions.pop(session_id, None) is not None:
                self._persist_state()

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            removed = self._drop_user_sessions(user_id)
            if removed:
                self._persist_state()
            return removed

    def _drop_user_sessions(self, user_id: str) -> int:
        stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
        for sid in stale:
            self.sessions.pop(sid, None)
        return len(stale)

    # refresh tokens
    def create_refresh_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if token in self.refresh_tokens:
                raise ConstraintViolation("refresh token collision", {"field": "token"})
            record = RefreshToken(token=token, user_id=user_id, expires_at=expires_at)
            self.refresh_tokens[token] = record
            self._persist_state()
            return replace(record)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def consume_refresh_token(self, token: str) -> Optional[RefreshToken]:
        """Delete and return a refresh token in one step.

        Expired tokens are removed as well but reported as absent.
        """
        with self._data_lock:
            record = self.refresh_tokens.pop(token, None)
            if record is None:
                return None
            self._persist_state()
            if record.is_expired():
                return None
            return record

    def delete_refresh_token(self, token: str) -> None:
        with self._data_lock:
            if self.refresh_tokens.pop(token, None) is not None:
                self._persist_state()

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            removed = self._drop_user_refresh_tokens(user_id)
            if removed:
                self._persist_state()
            return removed

    def _drop_user_refresh_tokens(self, user_id: str) -> int:
        stale = [t for t, rec in self.refresh_tokens.items() if rec.user_id == user_id]
        for token in stale:
            self.refresh_tokens.pop(token, None)
        return len(stale)

    # verifications
    def create_verification(self, verification: Verification) -> Verification:
        with self._data_lock:
            if any(v.value == verification.value for v in self.verifications.values()):
                raise ConstraintViolation("verification collision", {"field": "value"})
            self.verifications[verification.id] = replace(verification)
            self._persist_state()
            return verification

    def get_verification(
        self, value: str, purpose: VerificationPurpose
    ) -> Optional[Verification]:
        with self._data_lock:
            found = next(
                (
                    v
                    for v in self.verifications.values()
                    if v.value == value and v.purpose == purpose
                ),
                None,
            )
            return replace(found) if found else None

    def apply_password_reset(
        self,
        verification_id: str,
        user_id: str,
        password_hash: str,
        password_algo: str,
    ) -> bool:
        """Consume the reset verification and swap credentials atomically.

        Returns False, changing nothing, when the verification is already gone.
        """
        with self._data_lock:
            if verification_id not in self.verifications:
                return False
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            self.verifications.pop(verification_id)
            self._drop_user_sessions(user_id)
            self._drop_user_refresh_tokens(user_id)
            self.credentials[user_id] = (password_hash, password_algo)
            self.users[user_id].updated_at = utcnow()
            self._persist_state()
            return True

    def apply_email_verification(self, verification_id: str, user_id: str) -> bool:
        with self._data_lock:
            if verification_id not in self.verifications:
                return False
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            self.verifications.pop(verification_id)
            user.email_verified = True
            user.updated_at = utcnow()
            self._persist_state()
            return True

    def delete_expired(self, now: datetime) -> dict[str, int]:
        with self._data_lock:
            expired_sessions = [
                sid for sid, s in self.sessions.items() if s.expires_at <= now
            ]
            expired_tokens = [
                t for t, rec in self.refresh_tokens.items() if rec.expires_at <= now
            ]
            expired_verifications = [
                vid for vid, v in self.verifications.items() if v.expires_at <= now
            ]
            for sid in expired_sessions:
                self.sessions.pop(sid, None)
            for token in expired_tokens:
                self.refresh_tokens.pop(token, None)
            for vid in expired_verifications:
                self.verifications.pop(vid, None)
            counts = {
                "sessions": len(expired_sessions),
                "refresh_tokens": len(expired_tokens),
                "verifications": len(expired_verifications),
            }
            if any(counts.values()):
                self._persist_state()
            return counts

    # google calendar tokens
    def get_calendar_token(
        self, user_id: str, tenant_id: str
    ) -> Optional[GoogleCalendarToken]:
        with self._data_lock:
            stored = self.calendar_tokens.get((user_id, tenant_id))
            return self._decrypt_calendar_token(stored) if stored else None

    def upsert_calendar_token(
        self,
        user_id: str,
        tenant_id: str,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
        scope: str | None,
    ) -> GoogleCalendarToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
            key = (user_id, tenant_id)
            existing = self.calendar_tokens.get(key)
            now = utcnow()
            if existing:
                existing.access_token = self._cipher.encrypt(access_token)
                if refresh_token:
                    existing.refresh_token = self._cipher.encrypt(refresh_token)
                existing.expires_at = expires_at
                existing.scope = scope
                existing.updated_at = now
                stored = existing
            else:
                stored = GoogleCalendarToken(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    tenant_id=tenant_id,
                    access_token=self._cipher.encrypt(access_token),
                    refresh_token=self._cipher.encrypt(refresh_token),
                    expires_at=expires_at,
                    scope=scope,
                )
                self.calendar_tokens[key] = stored
            self._persist_state()
            return self._decrypt_calendar_token(stored)

    def update_calendar_access_token(
        self, token_id: str, access_token: str, expires_at: datetime | None
    ) -> Optional[GoogleCalendarToken]:
        with self._data_lock:
            stored = next(
                (t for t in self.calendar_tokens.values() if t.id == token_id), None
            )
            if not stored:
                return None
            stored.access_token = self._cipher.encrypt(access_token)
            stored.expires_at = expires_at
            stored.updated_at = utcnow()
            self._persist_state()
            return self._decrypt_calendar_token(stored)

    def delete_calendar_token(self, user_id: str, tenant_id: str) -> bool:
        with self._data_lock:
            removed = self.calendar_tokens.pop((user_id, tenant_id), None)
            if removed:
                self._persist_state()
            return removed is not None

    def _decrypt_calendar_token(self, stored: GoogleCalendarToken) -> GoogleCalendarToken:
        return replace(
            stored,
            access_token=self._cipher.decrypt(stored.access_token) or "",
            refresh_token=self._cipher.decrypt(stored.refresh_token),
        )

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        state = {
            "tenants": [self._serialize_tenant(t) for t in self.tenants.values()],
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "refresh_tokens": [
                {
                    "token": rec.token,
                    "user_id": rec.user_id,
                    "expires_at": format_datetime(rec.expires_at),
                    "created_at": format_datetime(rec.created_at),
                }
                for rec in self.refresh_tokens.values()
            ],
            "verifications": [
                self._serialize_verification(v) for v in self.verifications.values()
            ],
            "calendar_tokens": [
                self._serialize_calendar_token(t) for t in self.calendar_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.tenants = {
            t["id"]: self._deserialize_tenant(t) for t in data.get("tenants", [])
        }
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.refresh_tokens = {
            r["token"]: RefreshToken(
                token=r["token"],
                user_id=r["user_id"],
                expires_at=parse_datetime(r["expires_at"]),
                created_at=parse_datetime(r.get("created_at")) or utcnow(),
            )
            for r in data.get("refresh_tokens", [])
        }
        self.verifications = {
            v["id"]: self._deserialize_verification(v)
            for v in data.get("verifications", [])
        }
        self.calendar_tokens = {}
        for raw in data.get("calendar_tokens", []):
            token = self._deserialize_calendar_token(raw)
            self.calendar_tokens[(token.user_id, token.tenant_id)] = token
        self.logger.info("memory_store_loaded", users=len(self.users), path=str(path))
        return True

    def _serialize_tenant(self, tenant: Tenant) -> dict:
        return {
            "id": tenant.id,
            "subdomain": tenant.subdomain,
            "name": tenant.name,
            "created_at": format_datetime(tenant.created_at),
        }

    def _deserialize_tenant(self, data: dict) -> Tenant:
        return Tenant(
            id=data["id"],
            subdomain=data["subdomain"],
            name=data.get("name"),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "tenant_id": user.tenant_id,
            "role": user.role.value,
            "status": user.status.value,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "name": user.name,
            "phone": user.phone,
            "google_id": user.google_id,
            "email_verified": user.email_verified,
            "last_login": format_datetime(user.last_login),
            "created_at": format_datetime(user.created_at),
            "updated_at": format_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            tenant_id=data.get("tenant_id"),
            role=UserRole(data.get("role", UserRole.CLIENT.value)),
            status=UserStatus(data.get("status", UserStatus.ACTIVE.value)),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            name=data.get("name"),
            phone=data.get("phone"),
            google_id=data.get("google_id"),
            email_verified=data.get("email_verified", False),
            last_login=parse_datetime(data.get("last_login")),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=parse_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "tenant_id": session.tenant_id,
            "created_at": format_datetime(session.created_at),
            "expires_at": format_datetime(session.expires_at),
            "ip_addr": session.ip_addr,
            "user_agent": session.user_agent,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            tenant_id=data.get("tenant_id"),
            created_at=parse_datetime(data["created_at"]),
            expires_at=parse_datetime(data["expires_at"]),
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
        )

    def _serialize_verification(self, verification: Verification) -> dict:
        return {
            "id": verification.id,
            "identifier": verification.identifier,
            "value": verification.value,
            "purpose": verification.purpose.value,
            "expires_at": format_datetime(verification.expires_at),
            "created_at": format_datetime(verification.created_at),
        }

    def _deserialize_verification(self, data: dict) -> Verification:
        return Verification(
            id=data["id"],
            identifier=data["identifier"],
            value=data["value"],
            purpose=VerificationPurpose(data["purpose"]),
            expires_at=parse_datetime(data["expires_at"]),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_calendar_token(self, token: GoogleCalendarToken) -> dict:
        # access/refresh values are already encrypted in memory
        return {
            "id": token.id,
            "user_id": token.user_id,
            "tenant_id": token.tenant_id,
            "access_token": token.access_token,
            "refresh_token": token.refresh_token,
            "expires_at": format_datetime(token.expires_at),
            "scope": token.scope,
            "created_at": format_datetime(token.created_at),
            "updated_at": format_datetime(token.updated_at),
        }

    def _deserialize_calendar_token(self, data: dict) -> GoogleCalendarToken:
        return GoogleCalendarToken(
            id=data["id"],
            user_id=data["user_id"],
            tenant_id=data["tenant_id"],
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=parse_datetime(data.get("expires_at")),
            scope=data.get("scope"),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=parse_datetime(data.get("updated_at")) or utcnow(),
        )
