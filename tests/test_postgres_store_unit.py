import contextlib
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from tokenkeeper.storage.errors import ConstraintViolation, StorageUnavailable
from tokenkeeper.storage.postgres import PostgresStore
from tokenkeeper.logging import get_logger

NOW = datetime(2030, 1, 1, tzinfo=timezone.utc)


class FakeResult:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row


class FakeConnection:
    """Records executed SQL and replays scripted results in order."""

    def __init__(self, results=None, raise_on=None):
        self.executed = []
        self.results = list(results or [])
        self.raise_on = raise_on or {}
        self.transactions = 0

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        for fragment, exc in self.raise_on.items():
            if fragment in sql:
                raise exc
        return self.results.pop(0) if self.results else FakeResult()

    @contextlib.contextmanager
    def transaction(self):
        self.transactions += 1
        yield


class FakePool:
    def __init__(self, conn=None, exc=None):
        self.conn = conn
        self.exc = exc
        self.closed = False

    @contextlib.contextmanager
    def connection(self):
        if self.exc is not None:
            raise self.exc
        yield self.conn

    def close(self):
        self.closed = True


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.logger = get_logger("tests.postgres")
    return store


def _account_row(account_id, email="pg@example.com"):
    return {
        "id": uuid.UUID(account_id),
        "email": email,
        "password_hash": "hash",
        "first_name": None,
        "last_name": None,
        "is_active": True,
        "created_at": NOW,
        "updated_at": NOW,
    }


def test_rotate_deletes_then_inserts_in_one_transaction():
    old_id = str(uuid.uuid4())
    conn = FakeConnection(results=[FakeResult(row={"id": old_id}), FakeResult()])
    store = _store(FakePool(conn))

    rotated = store.rotate_refresh_token(old_id, "new-value", "owner-1", NOW + timedelta(days=7))

    assert rotated.value == "new-value"
    assert conn.transactions == 1
    assert conn.executed[0][0].startswith("DELETE FROM refresh_token WHERE id = %s RETURNING id")
    assert conn.executed[0][1] == (old_id,)
    assert conn.executed[1][0].startswith("INSERT INTO refresh_token")
    assert conn.executed[1][1][1] == "new-value"


def test_rotate_of_consumed_record_returns_none_without_insert():
    conn = FakeConnection(results=[FakeResult(row=None)])
    store = _store(FakePool(conn))

    assert store.rotate_refresh_token("gone", "new", "owner", NOW) is None
    assert len(conn.executed) == 1


def test_rotate_foreign_key_violation_maps_to_constraint():
    conn = FakeConnection(
        results=[FakeResult(row={"id": "old"})],
        raise_on={"INSERT INTO refresh_token": errors.ForeignKeyViolation("fk")},
    )
    store = _store(FakePool(conn))
    with pytest.raises(ConstraintViolation) as excinfo:
        store.rotate_refresh_token("old", "new", "owner", NOW)
    assert excinfo.value.detail == {"owner_id": "owner"}


def test_duplicate_email_maps_to_constraint():
    conn = FakeConnection(raise_on={"INSERT INTO account": errors.UniqueViolation("dup")})
    store = _store(FakePool(conn))
    with pytest.raises(ConstraintViolation):
        store.create_account("Dup@Example.com", "hash")


def test_create_account_normalizes_email():
    conn = FakeConnection()
    store = _store(FakePool(conn))
    account = store.create_account(" Mixed@Example.COM ", "hash")
    assert account.email == "mixed@example.com"
    assert conn.executed[0][1][1] == "mixed@example.com"


def test_operational_error_maps_to_storage_unavailable():
    conn = FakeConnection(raise_on={"SELECT": errors.OperationalError("server closed")})
    store = _store(FakePool(conn))
    with pytest.raises(StorageUnavailable) as excinfo:
        store.find_account_by_email("x@example.com")
    assert excinfo.value.detail == {"operation": "find_account_by_email"}


def test_pool_failure_maps_to_storage_unavailable():
    store = _store(FakePool(exc=errors.InterfaceError("pool closed")))
    with pytest.raises(StorageUnavailable):
        store.delete_refresh_tokens_by_owner("owner")


def test_find_refresh_token_hydrates_owner():
    account_id = str(uuid.uuid4())
    row = {
        "id": uuid.uuid4(),
        "value": "value",
        "owner_id": uuid.UUID(account_id),
        "expires_at": NOW,
        "created_at": NOW,
        "account_id": uuid.UUID(account_id),
        "email": "pg@example.com",
        "password_hash": "hash",
        "first_name": "P",
        "last_name": None,
        "is_active": False,
        "account_created_at": NOW,
        "account_updated_at": NOW,
    }
    store = _store(FakePool(FakeConnection(results=[FakeResult(row=row)])))

    record = store.find_refresh_token("value")
    assert record.owner_id == account_id
    assert record.owner.id == account_id
    assert record.owner.is_active is False


def test_find_account_by_id_skips_query_for_non_uuid():
    conn = FakeConnection()
    store = _store(FakePool(conn))
    assert store.find_account_by_id("not-a-uuid") is None
    assert conn.executed == []


def test_find_account_by_id_maps_row():
    account_id = str(uuid.uuid4())
    store = _store(FakePool(FakeConnection(results=[FakeResult(row=_account_row(account_id))])))
    account = store.find_account_by_id(account_id)
    assert account.id == account_id
    assert account.email == "pg@example.com"


def test_purge_uses_strict_cutoff():
    conn = FakeConnection(results=[FakeResult(rowcount=4)])
    store = _store(FakePool(conn))
    assert store.purge_expired_refresh_tokens(NOW) == 4
    assert conn.executed[0] == ("DELETE FROM refresh_token WHERE expires_at < %s", (NOW,))


def test_close_closes_pool():
    pool = FakePool(FakeConnection())
    _store(pool).close()
    assert pool.closed is True
