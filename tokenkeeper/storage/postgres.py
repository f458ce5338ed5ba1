from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from typing import Iterator, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tokenkeeper.logging import get_logger
from tokenkeeper.storage.errors import ConstraintViolation, StorageUnavailable
from tokenkeeper.storage.models import Account, RefreshTokenRecord, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        first_name TEXT,
        last_name TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS account_email_lower_idx ON account (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        value TEXT NOT NULL UNIQUE,
        owner_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_owner_idx ON refresh_token (owner_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_expires_idx ON refresh_token (expires_at)",
)

_TOKEN_WITH_OWNER_SQL = """
    SELECT t.id, t.value, t.owner_id, t.expires_at, t.created_at,
           a.id AS account_id, a.email, a.password_hash, a.first_name, a.last_name,
           a.is_active, a.created_at AS account_created_at,
           a.updated_at AS account_updated_at
    FROM refresh_token t
    LEFT JOIN account a ON a.id = t.owner_id
    WHERE t.value = %s
"""


class PostgresStore:
    """Credential store on Postgres through a psycopg connection pool.

    Email uniqueness rests on the ``lower(email)`` unique index, and refresh
    token rotation deletes and inserts inside one transaction, so both hold
    across processes sharing the database.
    """

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

    @contextlib.contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        """Translate driver and pool failures into ``StorageUnavailable``."""

        try:
            yield
        except (errors.OperationalError, errors.InterfaceError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable", operation=operation, error=str(exc)
            )
            raise StorageUnavailable(
                "database unavailable", {"operation": operation}
            ) from exc

    def _ensure_schema(self) -> None:
        """Create the ``account`` and ``refresh_token`` tables if they are missing."""

        with self._guard("ensure_schema"), self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    @staticmethod
    def _row_to_account(row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_refresh_token(row: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(row["id"]),
            value=row["value"],
            owner_id=str(row["owner_id"]),
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
        )

    # accounts

    def find_account_by_email(self, email: str) -> Optional[Account]:
        with self._guard("find_account_by_email"), self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE lower(email) = lower(%s)",
                (email.strip(),),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def find_account_by_id(self, account_id: str) -> Optional[Account]:
        try:
            uuid.UUID(str(account_id))
        except ValueError:
            return None
        with self._guard("find_account_by_id"), self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        is_active: bool = True,
    ) -> Account:
        account_id = str(uuid.uuid4())
        normalized = email.strip().lower()
        now = utcnow()
        try:
            with self._guard("create_account"), self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (id, email, password_hash, first_name, last_name, is_active, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account_id,
                        normalized,
                        password_hash,
                        first_name,
                        last_name,
                        is_active,
                        now,
                        now,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return Account(
            id=account_id,
            email=normalized,
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            is_active=is_active,
            created_at=now,
            updated_at=now,
        )

    def update_password_hash(self, account_id: str, password_hash: str) -> None:
        with self._guard("update_password_hash"), self._connect() as conn:
            conn.execute(
                "UPDATE account SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, account_id),
            )

    def set_account_active(self, account_id: str, is_active: bool) -> Optional[Account]:
        with self._guard("set_account_active"), self._connect() as conn:
            row = conn.execute(
                "UPDATE account SET is_active = %s, updated_at = now() WHERE id = %s RETURNING *",
                (is_active, account_id),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def delete_account(self, account_id: str) -> bool:
        with self._guard("delete_account"), self._connect() as conn:
            result = conn.execute("DELETE FROM account WHERE id = %s", (account_id,))
            return result.rowcount > 0

    # refresh tokens

    def create_refresh_token(
        self, owner_id: str, value: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        record = RefreshTokenRecord.new(owner_id, value, expires_at)
        try:
            with self._guard("create_refresh_token"), self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, value, owner_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (record.id, record.value, record.owner_id, record.expires_at, record.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "value"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account does not exist", {"owner_id": owner_id})
        return record

    def find_refresh_token(self, value: str) -> Optional[RefreshTokenRecord]:
        with self._guard("find_refresh_token"), self._connect() as conn:
            row = conn.execute(_TOKEN_WITH_OWNER_SQL, (value,)).fetchone()
        if not row:
            return None
        record = self._row_to_refresh_token(row)
        if row.get("account_id") is not None:
            record.owner = Account(
                id=str(row["account_id"]),
                email=row["email"],
                password_hash=row["password_hash"],
                first_name=row.get("first_name"),
                last_name=row.get("last_name"),
                is_active=row.get("is_active", True),
                created_at=row.get("account_created_at") or utcnow(),
                updated_at=row.get("account_updated_at") or utcnow(),
            )
        return record

    def delete_refresh_token(self, token_id: str) -> bool:
        with self._guard("delete_refresh_token"), self._connect() as conn:
            result = conn.execute("DELETE FROM refresh_token WHERE id = %s", (token_id,))
            return result.rowcount > 0

    def delete_refresh_tokens_by_owner(self, owner_id: str) -> int:
        with self._guard("delete_refresh_tokens_by_owner"), self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE owner_id = %s", (owner_id,)
            )
            return max(result.rowcount, 0)

    def delete_refresh_tokens_by_value(self, value: str) -> int:
        with self._guard("delete_refresh_tokens_by_value"), self._connect() as conn:
            result = conn.execute("DELETE FROM refresh_token WHERE value = %s", (value,))
            return max(result.rowcount, 0)

    def rotate_refresh_token(
        self, old_id: str, new_value: str, owner_id: str, expires_at: datetime
    ) -> Optional[RefreshTokenRecord]:
        new = RefreshTokenRecord.new(owner_id, new_value, expires_at)
        try:
            with self._guard("rotate_refresh_token"), self._connect() as conn:
                with conn.transaction():
                    # The row lock taken by DELETE makes a concurrent rotation of
                    # the same record wait, then find nothing to return
                    deleted = conn.execute(
                        "DELETE FROM refresh_token WHERE id = %s RETURNING id",
                        (old_id,),
                    ).fetchone()
                    if not deleted:
                        return None
                    conn.execute(
                        """
                        INSERT INTO refresh_token (id, value, owner_id, expires_at, created_at)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        (new.id, new.value, new.owner_id, new.expires_at, new.created_at),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "value"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account does not exist", {"owner_id": owner_id})
        return new

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._guard("purge_expired_refresh_tokens"), self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at < %s", (cutoff,)
            )
            return max(result.rowcount, 0)

    def close(self) -> None:
        self.pool.close()
