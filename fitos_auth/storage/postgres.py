from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from fitos_auth.logging import get_logger
from fitos_auth.storage.common import TokenCipher, ensure_utc, normalize_email
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


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS tenant (
        id TEXT PRIMARY KEY,
        subdomain TEXT NOT NULL UNIQUE,
        name TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        tenant_id TEXT REFERENCES tenant(id),
        role TEXT NOT NULL DEFAULT 'CLIENT',
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        first_name TEXT,
        last_name TEXT,
        name TEXT,
        phone TEXT,
        google_id TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        last_login TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        tenant_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        ip_addr TEXT,
        user_agent TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS verification (
        id TEXT PRIMARY KEY,
        identifier TEXT NOT NULL,
        value TEXT NOT NULL UNIQUE,
        purpose TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS google_calendar_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        tenant_id TEXT NOT NULL REFERENCES tenant(id),
        access_token TEXT NOT NULL,
        refresh_token TEXT,
        expires_at TIMESTAMPTZ,
        scope TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (user_id, tenant_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
)

_REQUIRED_TABLES = (
    "tenant",
    "app_user",
    "user_auth_credential",
    "auth_session",
    "refresh_token",
    "verification",
    "google_calendar_token",
)


class PostgresStore:
    """Postgres-backed store for tenants, accounts, sessions and tokens."""

    def __init__(self, dsn: str, *, token_encryption_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = TokenCipher(token_encryption_key)
        self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # tenants
    def create_tenant(
        self, subdomain: str, name: str | None = None, *, tenant_id: str | None = None
    ) -> Tenant:
        tenant = Tenant(id=tenant_id or str(uuid.uuid4()), subdomain=subdomain, name=name)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO tenant (id, subdomain, name, created_at) VALUES (%s, %s, %s, %s)",
                    (tenant.id, tenant.subdomain, tenant.name, tenant.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("tenant already exists", {"field": "subdomain"})
        return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tenant WHERE id = %s", (tenant_id,)).fetchone()
        return self._tenant_from_row(row) if row else None

    def get_tenant_by_subdomain(self, subdomain: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant WHERE subdomain = %s", (subdomain,)
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    @staticmethod
    def _tenant_from_row(row: dict) -> Tenant:
        return Tenant(
            id=str(row["id"]),
            subdomain=row["subdomain"],
            name=row.get("name"),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
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
        user = self._new_user(
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
        try:
            with self._connect() as conn:
                self._insert_user(conn, user)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
        return user

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
        """Insert the user row and its credential in one transaction."""
        user = self._new_user(
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
        try:
            with self._connect() as conn:
                with conn.transaction():
                    self._insert_user(conn, user)
                    self._upsert_credential(conn, user.id, password_hash, password_algo)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
        return user

    @staticmethod
    def _new_user(email: str, *, tenant_id: str | None, **fields) -> User:
        fields["role"] = UserRole(fields.get("role", UserRole.CLIENT))
        fields["status"] = UserStatus(fields.get("status", UserStatus.ACTIVE))
        return User(
            id=str(uuid.uuid4()), email=normalize_email(email), tenant_id=tenant_id, **fields
        )

    @staticmethod
    def _insert_user(conn, user: User) -> None:
        conn.execute(
            """
            INSERT INTO app_user (id, email, tenant_id, role, status, first_name, last_name,
                                  name, phone, google_id, email_verified, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                user.id,
                user.email,
                user.tenant_id,
                user.role.value,
                user.status.value,
                user.first_name,
                user.last_name,
                user.name,
                user.phone,
                user.google_id,
                user.email_verified,
                user.created_at,
                user.updated_at,
            ),
        )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_last_login(self, user_id: str, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login = %s, updated_at = now() WHERE id = %s",
                (when, user_id),
            )

    def update_user_role(self, user_id: str, role: UserRole) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (UserRole(role).value, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET status = %s, updated_at = now() WHERE id = %s RETURNING *",
                (UserStatus(status).value, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            tenant_id=row.get("tenant_id"),
            role=UserRole(row.get("role") or UserRole.CLIENT.value),
            status=UserStatus(row.get("status") or UserStatus.ACTIVE.value),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            name=row.get("name"),
            phone=row.get("phone"),
            google_id=row.get("google_id"),
            email_verified=bool(row.get("email_verified")),
            last_login=ensure_utc(row.get("last_login")),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
            updated_at=ensure_utc(row.get("updated_at")) or utcnow(),
        )

    @staticmethod
    def _upsert_credential(conn, user_id: str, password_hash: str, password_algo: str) -> None:
        conn.execute(
            """
            INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
            VALUES (%s, %s, %s, now())
            ON CONFLICT (user_id) DO UPDATE
            SET password_hash = EXCLUDED.password_hash,
                password_algo = EXCLUDED.password_algo,
                last_updated_at = now()
            """,
            (user_id, password_hash, password_algo),
        )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # sessions
    def create_session(
        self,
        user_id: str,
        tenant_id: str | None,
        ttl_seconds: int,
        ip_addr: str | None = None,
        user_agent: str | None = None,
    ) -> Session:
        sess = Session.new(
            user_id=user_id,
            tenant_id=tenant_id,
            ttl_seconds=ttl_seconds,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, tenant_id, created_at, expires_at, ip_addr, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.tenant_id,
                        sess.created_at,
                        sess.expires_at,
                        sess.ip_addr,
                        sess.user_agent,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            tenant_id=row.get("tenant_id"),
            created_at=ensure_utc(row["created_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
        )

    def delete_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
            return result.rowcount

    # refresh tokens
    def create_refresh_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> RefreshToken:
        record = RefreshToken(token=token, user_id=user_id, expires_at=expires_at)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO refresh_token (token, user_id, expires_at, created_at) VALUES (%s, %s, %s, %s)",
                    (record.token, record.user_id, record.expires_at, record.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return record

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def consume_refresh_token(self, token: str) -> Optional[RefreshToken]:
        """Delete and return a refresh token with a single statement.

        Concurrent callers race on the row lock; only one gets it back.
        """
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM refresh_token WHERE token = %s RETURNING *", (token,)
            ).fetchone()
        if not row:
            return None
        record = self._refresh_from_row(row)
        if record.is_expired():
            return None
        return record

    def delete_refresh_token(self, token: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM refresh_token WHERE token = %s", (token,))

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
            return result.rowcount

    @staticmethod
    def _refresh_from_row(row: dict) -> RefreshToken:
        return RefreshToken(
            token=row["token"],
            user_id=str(row["user_id"]),
            expires_at=ensure_utc(row["expires_at"]),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
        )

    # verifications
    def create_verification(self, verification: Verification) -> Verification:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO verification (id, identifier, value, purpose, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        verification.id,
                        verification.identifier,
                        verification.value,
                        verification.purpose.value,
                        verification.expires_at,
                        verification.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("verification collision", {"field": "value"})
        return verification

    def get_verification(
        self, value: str, purpose: VerificationPurpose
    ) -> Optional[Verification]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM verification WHERE value = %s AND purpose = %s",
                (value, VerificationPurpose(purpose).value),
            ).fetchone()
        if not row:
            return None
        return Verification(
            id=str(row["id"]),
            identifier=row["identifier"],
            value=row["value"],
            purpose=VerificationPurpose(row["purpose"]),
            expires_at=ensure_utc(row["expires_at"]),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
        )

    def apply_password_reset(
        self,
        verification_id: str,
        user_id: str,
        password_hash: str,
        password_algo: str,
    ) -> bool:
        """Consume the reset verification and swap credentials in one transaction."""
        with self._connect() as conn:
            with conn.transaction():
                consumed = conn.execute(
                    "DELETE FROM verification WHERE id = %s", (verification_id,)
                )
                if consumed.rowcount == 0:
                    return False
                conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
                conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
                self._upsert_credential(conn, user_id, password_hash, password_algo)
                conn.execute(
                    "UPDATE app_user SET updated_at = now() WHERE id = %s", (user_id,)
                )
        return True

    def apply_email_verification(self, verification_id: str, user_id: str) -> bool:
        with self._connect() as conn:
            with conn.transaction():
                consumed = conn.execute(
                    "DELETE FROM verification WHERE id = %s", (verification_id,)
                )
                if consumed.rowcount == 0:
                    return False
                conn.execute(
                    "UPDATE app_user SET email_verified = TRUE, updated_at = now() WHERE id = %s",
                    (user_id,),
                )
        return True

    def delete_expired(self, now: datetime) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._connect() as conn:
            for key, table in (
                ("sessions", "auth_session"),
                ("refresh_tokens", "refresh_token"),
                ("verifications", "verification"),
            ):
                result = conn.execute(
                    f"DELETE FROM {table} WHERE expires_at <= %s", (now,)
                )
                counts[key] = result.rowcount
        return counts

    # google calendar tokens
    def get_calendar_token(
        self, user_id: str, tenant_id: str
    ) -> Optional[GoogleCalendarToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM google_calendar_token WHERE user_id = %s AND tenant_id = %s",
                (user_id, tenant_id),
            ).fetchone()
        return self._calendar_from_row(row) if row else None

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO google_calendar_token (id, user_id, tenant_id, access_token, refresh_token, expires_at, scope)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id, tenant_id) DO UPDATE
                    SET access_token = EXCLUDED.access_token,
                        refresh_token = COALESCE(EXCLUDED.refresh_token, google_calendar_token.refresh_token),
                        expires_at = EXCLUDED.expires_at,
                        scope = EXCLUDED.scope,
                        updated_at = now()
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        user_id,
                        tenant_id,
                        self._cipher.encrypt(access_token),
                        self._cipher.encrypt(refresh_token),
                        expires_at,
                        scope,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "calendar owner missing", {"user_id": user_id, "tenant_id": tenant_id}
            )
        return self._calendar_from_row(row)

    def update_calendar_access_token(
        self, token_id: str, access_token: str, expires_at: datetime | None
    ) -> Optional[GoogleCalendarToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE google_calendar_token
                SET access_token = %s, expires_at = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (self._cipher.encrypt(access_token), expires_at, token_id),
            ).fetchone()
        return self._calendar_from_row(row) if row else None

    def delete_calendar_token(self, user_id: str, tenant_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM google_calendar_token WHERE user_id = %s AND tenant_id = %s",
                (user_id, tenant_id),
            )
            return result.rowcount > 0

    def _calendar_from_row(self, row: dict[str, Any]) -> GoogleCalendarToken:
        return GoogleCalendarToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            tenant_id=str(row["tenant_id"]),
            access_token=self._cipher.decrypt(row["access_token"]) or "",
            refresh_token=self._cipher.decrypt(row.get("refresh_token")),
            expires_at=ensure_utc(row.get("expires_at")),
            scope=row.get("scope"),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
            updated_at=ensure_utc(row.get("updated_at")) or utcnow(),
        )
