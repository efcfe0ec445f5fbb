from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from blogauth.logging import get_logger
from blogauth.storage.errors import ConstraintViolation
from blogauth.storage.models import (
    ROLE_USER,
    Account,
    AuditEntry,
    AuditFilter,
    PasswordResetToken,
    PendingLoginChallenge,
    RefreshToken,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id BIGSERIAL PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        role_id SMALLINT NOT NULL DEFAULT 3,
        full_name TEXT,
        address TEXT,
        gender TEXT,
        locked_at TIMESTAMPTZ,
        locked_until TIMESTAMPTZ,
        lock_reason TEXT,
        locked_by BIGINT,
        last_login_ip TEXT,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT account_username_key UNIQUE (username),
        CONSTRAINT account_email_key UNIQUE (email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_login_challenge (
        id BIGSERIAL PRIMARY KEY,
        account_id BIGINT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        code TEXT NOT NULL,
        token TEXT NOT NULL UNIQUE,
        ip_addr TEXT,
        device TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id BIGSERIAL PRIMARY KEY,
        account_id BIGINT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        id BIGSERIAL PRIMARY KEY,
        account_id BIGINT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_audit_log (
        id BIGSERIAL PRIMARY KEY,
        account_id BIGINT,
        username TEXT,
        action TEXT NOT NULL,
        status TEXT NOT NULL,
        ip_addr TEXT,
        masked_ip TEXT,
        user_agent TEXT,
        browser TEXT,
        os TEXT,
        details JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_audit_log_account_idx ON auth_audit_log (account_id, created_at DESC)",
)

_UPDATABLE_ACCOUNT_COLUMNS = (
    "username",
    "email",
    "password_hash",
    "role_id",
    "full_name",
    "address",
    "gender",
    "last_login_ip",
    "last_login_at",
)

_UNIQUE_FIELDS = {
    "account_username_key": "username",
    "account_email_key": "email",
}


def _constraint_from(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    field = _UNIQUE_FIELDS.get(constraint, "token")
    return ConstraintViolation(f"{field} already exists", {"field": field})


class PostgresStore:
    """Postgres-backed implementation of the auth storage contract."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        return Account(
            id=row["id"],
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            role_id=row["role_id"],
            full_name=row.get("full_name"),
            address=row.get("address"),
            gender=row.get("gender"),
            locked_at=row.get("locked_at"),
            locked_until=row.get("locked_until"),
            lock_reason=row.get("lock_reason"),
            locked_by=row.get("locked_by"),
            last_login_ip=row.get("last_login_ip"),
            last_login_at=row.get("last_login_at"),
            created_at=row["created_at"],
        )

    # -- accounts -----------------------------------------------------------

    def create_account(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        role_id: int = ROLE_USER,
        full_name: Optional[str] = None,
        address: Optional[str] = None,
        gender: Optional[str] = None,
    ) -> Account:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (username, email, password_hash, role_id, full_name, address, gender)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (username, email.lower(), password_hash, role_id, full_name, address, gender),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_from(exc) from exc
        return self._account_from_row(row)

    def _get_account(self, column: str, value: Any) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM account WHERE {column} = %s", (value,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_id(self, account_id: int) -> Optional[Account]:
        return self._get_account("id", account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._get_account("email", email.lower())

    def get_account_by_username(self, username: str) -> Optional[Account]:
        return self._get_account("username", username)

    def update_account(self, account_id: int, **fields: Any) -> Optional[Account]:
        unknown = set(fields) - set(_UPDATABLE_ACCOUNT_COLUMNS)
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        if not fields:
            return self.get_account_by_id(account_id)
        if "email" in fields:
            fields["email"] = fields["email"].lower()
        # Column names come from the allow-list above, never from callers.
        columns = [c for c in _UPDATABLE_ACCOUNT_COLUMNS if c in fields]
        assignments = ", ".join(f"{c} = %s" for c in columns)
        params = [fields[c] for c in columns] + [account_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE account SET {assignments} WHERE id = %s RETURNING *", params
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_from(exc) from exc
        return self._account_from_row(row) if row else None

    def list_accounts(
        self, *, locked_as_of: Optional[datetime] = None, limit: int = 100
    ) -> List[Account]:
        with self._connect() as conn:
            if locked_as_of is not None:
                rows = conn.execute(
                    "SELECT * FROM account WHERE locked_until > %s ORDER BY id LIMIT %s",
                    (locked_as_of, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM account ORDER BY id LIMIT %s", (limit,)
                ).fetchall()
        return [self._account_from_row(row) for row in rows]

    def lock_account(
        self,
        account_id: int,
        *,
        locked_by: Optional[int],
        locked_at: datetime,
        locked_until: datetime,
        reason: str,
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET locked_by = %s, locked_at = %s, locked_until = %s, lock_reason = %s
                WHERE id = %s
                RETURNING *
                """,
                (locked_by, locked_at, locked_until, reason, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def unlock_account(self, account_id: int) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET locked_by = NULL, locked_at = NULL, locked_until = NULL, lock_reason = NULL
                WHERE id = %s
                RETURNING *
                """,
                (account_id,),
            ).fetchone()
        return self._account_from_row(row) if row else None

    # -- pending login challenges -------------------------------------------

    def create_pending_challenge(
        self,
        account_id: int,
        *,
        code: str,
        token: str,
        ip_addr: Optional[str],
        device: Optional[str],
        expires_at: datetime,
    ) -> PendingLoginChallenge:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO pending_login_challenge (account_id, code, token, ip_addr, device, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (account_id, code, token, ip_addr, device, expires_at),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_from(exc) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("account does not exist", {"account_id": account_id}) from exc
        return PendingLoginChallenge(**row)

    def get_pending_challenge_by_token(self, token: str) -> Optional[PendingLoginChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pending_login_challenge WHERE token = %s", (token,)
            ).fetchone()
        return PendingLoginChallenge(**row) if row else None

    def list_pending_challenges(self, account_id: int) -> List[PendingLoginChallenge]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM pending_login_challenge WHERE account_id = %s ORDER BY id",
                (account_id,),
            ).fetchall()
        return [PendingLoginChallenge(**row) for row in rows]

    def delete_pending_challenge(self, challenge_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM pending_login_challenge WHERE id = %s", (challenge_id,)
            )
            return cur.rowcount > 0

    # -- refresh tokens -----------------------------------------------------

    def create_refresh_token(
        self, account_id: int, token: str, expires_at: datetime
    ) -> RefreshToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (account_id, token, expires_at)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (account_id, token, expires_at),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_from(exc) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("account does not exist", {"account_id": account_id}) from exc
        return RefreshToken(**row)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return RefreshToken(**row) if row else None

    def delete_refresh_token(self, token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE token = %s", (token,))
            return cur.rowcount > 0

    def delete_refresh_tokens_for_account(self, account_id: int) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE account_id = %s", (account_id,)
            )
            return cur.rowcount

    # -- password resets ----------------------------------------------------

    def create_password_reset(
        self, account_id: int, token_hash: str, expires_at: datetime
    ) -> PasswordResetToken:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO password_reset_token (account_id, token_hash, expires_at)
                VALUES (%s, %s, %s)
                RETURNING *
                """,
                (account_id, token_hash, expires_at),
            ).fetchone()
        return PasswordResetToken(**row)

    def get_password_reset(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return PasswordResetToken(**row) if row else None

    def delete_password_reset(self, reset_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM password_reset_token WHERE id = %s", (reset_id,))
            return cur.rowcount > 0

    # -- audit log ----------------------------------------------------------

    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO auth_audit_log
                    (account_id, username, action, status, ip_addr, masked_ip, user_agent, browser, os, details, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    entry.account_id,
                    entry.username,
                    entry.action,
                    entry.status,
                    entry.ip_addr,
                    entry.masked_ip,
                    entry.user_agent,
                    entry.browser,
                    entry.os,
                    Jsonb(entry.details or {}),
                    entry.created_at,
                ),
            ).fetchone()
        return AuditEntry(**row)

    def list_audit_entries(self, query: AuditFilter) -> List[AuditEntry]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (
            ("account_id", query.account_id),
            ("action", query.action),
            ("ip_addr", query.ip_addr),
            ("status", query.status),
        ):
            if value is not None:
                clauses.append(f"{column} = %s")
                params.append(value)
        if query.since is not None:
            clauses.append("created_at >= %s")
            params.append(query.since)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(query.limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM auth_audit_log {where} ORDER BY created_at DESC, id DESC LIMIT %s",
                params,
            ).fetchall()
        return [AuditEntry(**row) for row in rows]

    def ping(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except Exception as exc:
            self.logger.error("postgres_ping_failed", error=str(exc))
            return False
        return True
