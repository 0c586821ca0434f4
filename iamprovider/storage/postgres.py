from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from iamprovider.logging import get_logger
from iamprovider.storage.errors import ConstraintViolation
from iamprovider.storage.models import (
    ExternalIdentity,
    PasskeyCredential,
    RefreshToken,
    User,
    UserPage,
    UserPatch,
    UserSearch,
    utcnow,
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS iam_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT,
        is_admin BOOLEAN NOT NULL DEFAULT false,
        is_email_verified BOOLEAN NOT NULL DEFAULT false,
        verification_deadline TIMESTAMPTZ,
        display_name TEXT,
        first_name TEXT,
        last_name TEXT,
        avatar_url TEXT,
        is_active BOOLEAN NOT NULL DEFAULT true,
        inactive_at TIMESTAMPTZ,
        deletion_deadline TIMESTAMPTZ,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0 CHECK (failed_login_attempts >= 0),
        lockout_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_external_identity (
        provider TEXT NOT NULL,
        provider_id TEXT NOT NULL,
        user_id TEXT NOT NULL REFERENCES iam_user(id) ON DELETE CASCADE,
        email TEXT,
        display_name TEXT,
        avatar_url TEXT,
        linked_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (provider, provider_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_passkey (
        credential_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES iam_user(id) ON DELETE CASCADE,
        public_key TEXT NOT NULL,
        counter BIGINT NOT NULL DEFAULT 0,
        display_name TEXT NOT NULL,
        device_type TEXT NOT NULL,
        backed_up BOOLEAN NOT NULL DEFAULT false,
        transports JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES iam_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        family TEXT NOT NULL,
        device_fingerprint TEXT,
        user_agent TEXT,
        ip_address TEXT,
        is_used BOOLEAN NOT NULL DEFAULT false,
        is_revoked BOOLEAN NOT NULL DEFAULT false,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_family_idx ON refresh_token (family)",
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    "CREATE INDEX IF NOT EXISTS user_external_identity_user_idx ON user_external_identity (user_id)",
    "CREATE INDEX IF NOT EXISTS user_passkey_user_idx ON user_passkey (user_id)",
]

_USER_COLUMNS = (
    "id",
    "email",
    "password_hash",
    "is_admin",
    "is_email_verified",
    "verification_deadline",
    "display_name",
    "first_name",
    "last_name",
    "avatar_url",
    "is_active",
    "inactive_at",
    "deletion_deadline",
    "failed_login_attempts",
    "lockout_until",
    "last_login_at",
    "created_at",
    "updated_at",
)

_SORT_COLUMNS = {"created_at", "email", "last_login_at"}

# Usable means: not used, not revoked, not expired
_ACTIVE_TOKEN_CLAUSE = "is_used = false AND is_revoked = false AND expires_at > now()"


class PostgresStore:
    """Postgres-backed credential store and token ledger.

    Single-row conditional updates carry the atomicity guarantees:
    ``mark_refresh_token_used`` only succeeds for the caller whose UPDATE
    actually flips the flag, and family/user revocation is one statement.
    """

    def __init__(
        self,
        dsn: str,
        *,
        statement_timeout_seconds: float = 5.0,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        timeout_ms = int(statement_timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=statement_timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={timeout_ms}",
            },
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1")
        return True

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _identity_from_row(row: Dict[str, Any]) -> ExternalIdentity:
        return ExternalIdentity(
            provider=row["provider"],
            provider_id=row["provider_id"],
            email=row.get("email"),
            display_name=row.get("display_name"),
            avatar_url=row.get("avatar_url"),
            linked_at=row["linked_at"],
        )

    @staticmethod
    def _passkey_from_row(row: Dict[str, Any]) -> PasskeyCredential:
        transports = row.get("transports")
        if isinstance(transports, str):
            transports = json.loads(transports)
        return PasskeyCredential(
            credential_id=row["credential_id"],
            public_key=row["public_key"],
            counter=int(row["counter"]),
            display_name=row["display_name"],
            device_type=row["device_type"],
            backed_up=bool(row["backed_up"]),
            transports=transports,
            created_at=row["created_at"],
            last_used_at=row.get("last_used_at"),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=row["id"],
            user_id=row["user_id"],
            token_hash=row["token_hash"],
            family=row["family"],
            expires_at=row["expires_at"],
            device_fingerprint=row.get("device_fingerprint"),
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
            is_used=bool(row["is_used"]),
            is_revoked=bool(row["is_revoked"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _hydrate(self, conn, row: Optional[Dict[str, Any]]) -> Optional[User]:
        if not row:
            return None
        user = User(**{col: row[col] for col in _USER_COLUMNS})
        identities = conn.execute(
            "SELECT * FROM user_external_identity WHERE user_id = %s ORDER BY linked_at",
            (user.id,),
        ).fetchall()
        passkeys = conn.execute(
            "SELECT * FROM user_passkey WHERE user_id = %s ORDER BY created_at",
            (user.id,),
        ).fetchall()
        user.external_identities = [self._identity_from_row(r) for r in identities]
        user.passkeys = [self._passkey_from_row(r) for r in passkeys]
        return user

    def _fetch_user(self, conn, where: str, params: tuple) -> Optional[User]:
        row = conn.execute(f"SELECT * FROM iam_user WHERE {where}", params).fetchone()
        return self._hydrate(conn, row)

    def _update_returning(self, sql: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(sql + " RETURNING *", params).fetchone()
            return self._hydrate(conn, row)

    # users
    def find_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            return self._fetch_user(conn, "email = %s", (email.strip().lower(),))

    def find_user_by_id(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            return self._fetch_user(conn, "id = %s", (user_id,))

    def find_user_by_external_identity(
        self, provider: str, provider_id: str
    ) -> Optional[User]:
        with self._connect() as conn:
            return self._fetch_user(
                conn,
                "id = (SELECT user_id FROM user_external_identity WHERE provider = %s AND provider_id = %s)",
                (provider, provider_id),
            )

    def find_user_by_passkey_credential_id(self, credential_id: str) -> Optional[User]:
        with self._connect() as conn:
            return self._fetch_user(
                conn,
                "id = (SELECT user_id FROM user_passkey WHERE credential_id = %s)",
                (credential_id,),
            )

    def create_user(self, user: User) -> User:
        values = {col: getattr(user, col) for col in _USER_COLUMNS}
        values["email"] = user.email.strip().lower()
        placeholders = ", ".join(["%s"] * len(_USER_COLUMNS))
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO iam_user ({', '.join(_USER_COLUMNS)}) VALUES ({placeholders})",
                    tuple(values[col] for col in _USER_COLUMNS),
                )
                for identity in user.external_identities:
                    self._insert_identity(conn, user.id, identity)
                for passkey in user.passkeys:
                    self._insert_passkey(conn, user.id, passkey)
                return self._fetch_user(conn, "id = %s", (user.id,))
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", "") or ""
            if "email" in constraint:
                raise ConstraintViolation("email already exists", {"field": "email"})
            raise ConstraintViolation(
                "external identity already linked", {"field": "external_identities"}
            )

    def update_user(self, user_id: str, patch: UserPatch) -> Optional[User]:
        changes = patch.changes()
        if "email" in changes and changes["email"] is not None:
            changes["email"] = changes["email"].strip().lower()
        if not changes:
            return self.find_user_by_id(user_id)
        assignments = ", ".join(f"{col} = %s" for col in changes)
        try:
            return self._update_returning(
                f"UPDATE iam_user SET {assignments}, updated_at = now() WHERE id = %s",
                (*changes.values(), user_id),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM iam_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    @staticmethod
    def _insert_identity(conn, user_id: str, identity: ExternalIdentity) -> None:
        conn.execute(
            """
            INSERT INTO user_external_identity
                (provider, provider_id, user_id, email, display_name, avatar_url, linked_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                identity.provider,
                identity.provider_id,
                user_id,
                identity.email,
                identity.display_name,
                identity.avatar_url,
                identity.linked_at,
            ),
        )

    @staticmethod
    def _insert_passkey(conn, user_id: str, passkey: PasskeyCredential) -> None:
        conn.execute(
            """
            INSERT INTO user_passkey
                (credential_id, user_id, public_key, counter, display_name,
                 device_type, backed_up, transports, created_at, last_used_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                passkey.credential_id,
                user_id,
                passkey.public_key,
                passkey.counter,
                passkey.display_name,
                passkey.device_type,
                passkey.backed_up,
                json.dumps(passkey.transports) if passkey.transports is not None else None,
                passkey.created_at,
                passkey.last_used_at,
            ),
        )

    def add_external_identity(
        self, user_id: str, identity: ExternalIdentity
    ) -> Optional[User]:
        with self._connect() as conn:
            owner = conn.execute(
                "SELECT user_id FROM user_external_identity WHERE provider = %s AND provider_id = %s",
                (identity.provider, identity.provider_id),
            ).fetchone()
            if owner and owner["user_id"] != user_id:
                raise ConstraintViolation(
                    "external identity already linked", {"field": "external_identities"}
                )
            if not owner:
                try:
                    self._insert_identity(conn, user_id, identity)
                except errors.ForeignKeyViolation:
                    conn.rollback()
                    return None
                except errors.UniqueViolation:
                    raise ConstraintViolation(
                        "external identity already linked", {"field": "external_identities"}
                    )
            conn.execute("UPDATE iam_user SET updated_at = now() WHERE id = %s", (user_id,))
            return self._fetch_user(conn, "id = %s", (user_id,))

    def remove_external_identity(
        self, user_id: str, provider: str, provider_id: str
    ) -> Optional[User]:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM user_external_identity WHERE user_id = %s AND provider = %s AND provider_id = %s",
                (user_id, provider, provider_id),
            )
            conn.execute("UPDATE iam_user SET updated_at = now() WHERE id = %s", (user_id,))
            return self._fetch_user(conn, "id = %s", (user_id,))

    def add_passkey(self, user_id: str, passkey: PasskeyCredential) -> Optional[User]:
        try:
            with self._connect() as conn:
                self._insert_passkey(conn, user_id, passkey)
                conn.execute("UPDATE iam_user SET updated_at = now() WHERE id = %s", (user_id,))
                return self._fetch_user(conn, "id = %s", (user_id,))
        except errors.ForeignKeyViolation:
            return None
        except errors.UniqueViolation:
            raise ConstraintViolation("passkey already registered", {"field": "credential_id"})

    def update_passkey_counter(
        self, user_id: str, credential_id: str, counter: int
    ) -> Optional[User]:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_passkey SET counter = %s, last_used_at = now()
                WHERE user_id = %s AND credential_id = %s
                """,
                (counter, user_id, credential_id),
            )
            if cur.rowcount == 0:
                return None
            conn.execute("UPDATE iam_user SET updated_at = now() WHERE id = %s", (user_id,))
            return self._fetch_user(conn, "id = %s", (user_id,))

    def remove_passkey(self, user_id: str, credential_id: str) -> Optional[User]:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM user_passkey WHERE user_id = %s AND credential_id = %s",
                (user_id, credential_id),
            )
            conn.execute("UPDATE iam_user SET updated_at = now() WHERE id = %s", (user_id,))
            return self._fetch_user(conn, "id = %s", (user_id,))

    def increment_failed_login_attempts(self, user_id: str) -> Optional[User]:
        return self._update_returning(
            "UPDATE iam_user SET failed_login_attempts = failed_login_attempts + 1, updated_at = now() WHERE id = %s",
            (user_id,),
        )

    def reset_failed_login_attempts(self, user_id: str) -> Optional[User]:
        return self._update_returning(
            "UPDATE iam_user SET failed_login_attempts = 0, lockout_until = NULL, updated_at = now() WHERE id = %s",
            (user_id,),
        )

    def set_lockout(self, user_id: str, until: datetime) -> Optional[User]:
        return self._update_returning(
            "UPDATE iam_user SET lockout_until = %s, updated_at = now() WHERE id = %s",
            (until, user_id),
        )

    def update_last_login(self, user_id: str) -> Optional[User]:
        return self._update_returning(
            "UPDATE iam_user SET last_login_at = now(), updated_at = now() WHERE id = %s",
            (user_id,),
        )

    def search_users(self, query: UserSearch) -> UserPage:
        clauses: List[str] = []
        params: List[Any] = []
        if query.email:
            clauses.append("email LIKE %s")
            params.append(f"%{query.email.strip().lower()}%")
        if query.is_active is not None:
            clauses.append("is_active = %s")
            params.append(query.is_active)
        if query.is_email_verified is not None:
            clauses.append("is_email_verified = %s")
            params.append(query.is_email_verified)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sort_by = query.sort_by if query.sort_by in _SORT_COLUMNS else "created_at"
        direction = "ASC" if query.sort_order == "asc" else "DESC"
        with self._connect() as conn:
            total = conn.execute(
                f"SELECT count(*) AS total FROM iam_user {where}", tuple(params)
            ).fetchone()["total"]
            rows = conn.execute(
                f"SELECT * FROM iam_user {where} ORDER BY {sort_by} {direction} NULLS LAST, id LIMIT %s OFFSET %s",
                (*params, query.limit, query.skip),
            ).fetchall()
            users = [self._hydrate(conn, row) for row in rows]
        return UserPage(users=users, total=int(total), limit=query.limit, skip=query.skip)

    def purge_deleted_users(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM iam_user WHERE is_active = false AND deletion_deadline IS NOT NULL AND deletion_deadline <= %s",
                (now,),
            )
            return cur.rowcount

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token
                        (id, user_id, token_hash, family, device_fingerprint, user_agent,
                         ip_address, is_used, is_revoked, expires_at, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.token_hash,
                        token.family,
                        token.device_fingerprint,
                        token.user_agent,
                        token.ip_address,
                        token.is_used,
                        token.is_revoked,
                        token.expires_at,
                        token.created_at,
                        token.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token_hash"})
        return token

    def find_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def find_active_refresh_tokens_by_user(self, user_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM refresh_token WHERE user_id = %s AND {_ACTIVE_TOKEN_CLAUSE} ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._token_from_row(row) for row in rows]

    def mark_refresh_token_used(self, token_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token SET is_used = true, updated_at = now()
                WHERE token_hash = %s AND is_used = false
                RETURNING id
                """,
                (token_hash,),
            ).fetchone()
        return row is not None

    def revoke_refresh_tokens_by_family(self, family: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET is_revoked = true, updated_at = now() WHERE family = %s AND is_revoked = false",
                (family,),
            )
            return cur.rowcount

    def revoke_all_refresh_tokens_by_user(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET is_revoked = true, updated_at = now() WHERE user_id = %s AND is_revoked = false",
                (user_id,),
            )
            return cur.rowcount

    def revoke_other_refresh_tokens_by_user(self, user_id: str, keep_family: Optional[str]) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET is_revoked = true, updated_at = now() "
                "WHERE user_id = %s AND is_revoked = false AND family IS DISTINCT FROM %s",
                (user_id, keep_family),
            )
            return cur.rowcount

    def count_active_refresh_tokens_by_user(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT count(*) AS active FROM refresh_token WHERE user_id = %s AND {_ACTIVE_TOKEN_CLAUSE}",
                (user_id,),
            ).fetchone()
        return int(row["active"])

    def purge_expired_refresh_tokens(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s", (before or utcnow(),)
            )
            return cur.rowcount
