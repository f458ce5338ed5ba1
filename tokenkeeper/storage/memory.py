from __future__ import annotations

import dataclasses
import json
import os
import tempfile
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional

from tokenkeeper.logging import get_logger
from tokenkeeper.storage.errors import ConstraintViolation, StorageUnavailable
from tokenkeeper.storage.models import Account, RefreshTokenRecord, utcnow


def _copy(account: Optional[Account]) -> Optional[Account]:
    # Callers get snapshots; stored accounts change only through the store
    return dataclasses.replace(account) if account is not None else None


class MemoryStore:
    """Dict-backed credential store for development and tests.

    Every operation runs under one re-entrant lock, which makes account
    creation and refresh-token rotation atomic with respect to each other.
    When ``fs_root`` is given the state is mirrored to
    ``<fs_root>/state/credential_store.json`` after each write and reloaded
    on construction.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        # lowercase email -> account id
        self._email_index: Dict[str, str] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        # token value -> record id
        self._value_index: Dict[str, str] = {}
        # RLock so helpers can be called while an operation holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    # accounts

    def find_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account_id = self._email_index.get(email.strip().lower())
            return _copy(self.accounts.get(account_id)) if account_id else None

    def find_account_by_id(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return _copy(self.accounts.get(account_id))

    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        is_active: bool = True,
    ) -> Account:
        normalized = email.strip().lower()
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            account = Account(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                is_active=is_active,
                created_at=now,
                updated_at=now,
            )
            self.accounts[account.id] = account
            self._email_index[normalized] = account.id

            def _undo() -> None:
                self.accounts.pop(account.id, None)
                self._email_index.pop(normalized, None)

            self._persist_state(_undo)
            return _copy(account)

    def update_password_hash(self, account_id: str, password_hash: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            previous = (account.password_hash, account.updated_at)
            account.password_hash = password_hash
            account.updated_at = utcnow()

            def _undo() -> None:
                account.password_hash, account.updated_at = previous

            self._persist_state(_undo)

    def set_account_active(self, account_id: str, is_active: bool) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            previous = (account.is_active, account.updated_at)
            account.is_active = is_active
            account.updated_at = utcnow()

            def _undo() -> None:
                account.is_active, account.updated_at = previous

            self._persist_state(_undo)
            return _copy(account)

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            removed_tokens = self._pop_tokens(
                lambda rec: rec.owner_id == account_id
            )
            self.accounts.pop(account_id, None)
            self._email_index.pop(account.email, None)

            def _undo() -> None:
                self.accounts[account.id] = account
                self._email_index[account.email] = account.id
                self._restore_tokens(removed_tokens)

            self._persist_state(_undo)
            return True

    # refresh tokens

    def create_refresh_token(
        self, owner_id: str, value: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        with self._data_lock:
            if owner_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"owner_id": owner_id})
            if value in self._value_index:
                raise ConstraintViolation("refresh token already exists", {"field": "value"})
            record = RefreshTokenRecord.new(owner_id, value, expires_at)
            self._put_token(record)
            self._persist_state(lambda: self._drop_token(record))
            return dataclasses.replace(record)

    def find_refresh_token(self, value: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record_id = self._value_index.get(value)
            record = self.refresh_tokens.get(record_id) if record_id else None
            if not record:
                return None
            return dataclasses.replace(record, owner=_copy(self.accounts.get(record.owner_id)))

    def delete_refresh_token(self, token_id: str) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if not record:
                return False
            self._drop_token(record)
            self._persist_state(lambda: self._put_token(record))
            return True

    def delete_refresh_tokens_by_owner(self, owner_id: str) -> int:
        with self._data_lock:
            removed = self._pop_tokens(lambda rec: rec.owner_id == owner_id)
            if removed:
                self._persist_state(lambda: self._restore_tokens(removed))
            return len(removed)

    def delete_refresh_tokens_by_value(self, value: str) -> int:
        with self._data_lock:
            removed = self._pop_tokens(lambda rec: rec.value == value)
            if removed:
                self._persist_state(lambda: self._restore_tokens(removed))
            return len(removed)

    def rotate_refresh_token(
        self, old_id: str, new_value: str, owner_id: str, expires_at: datetime
    ) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            old = self.refresh_tokens.get(old_id)
            if not old:
                # Already consumed by a concurrent rotation or a logout
                return None
            if owner_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"owner_id": owner_id})
            if new_value in self._value_index:
                raise ConstraintViolation("refresh token already exists", {"field": "value"})
            new = RefreshTokenRecord.new(owner_id, new_value, expires_at)
            self._drop_token(old)
            self._put_token(new)

            def _undo() -> None:
                self._drop_token(new)
                self._put_token(old)

            self._persist_state(_undo)
            return dataclasses.replace(new)

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            removed = self._pop_tokens(lambda rec: rec.is_expired(cutoff))
            if removed:
                self._persist_state(lambda: self._restore_tokens(removed))
            return len(removed)

    def close(self) -> None:
        """Nothing to release; present for parity with the database store."""

    # internals, callers hold _data_lock

    def _put_token(self, record: RefreshTokenRecord) -> None:
        self.refresh_tokens[record.id] = record
        self._value_index[record.value] = record.id

    def _drop_token(self, record: RefreshTokenRecord) -> None:
        self.refresh_tokens.pop(record.id, None)
        self._value_index.pop(record.value, None)

    def _pop_tokens(
        self, predicate: Callable[[RefreshTokenRecord], bool]
    ) -> list[RefreshTokenRecord]:
        removed = [rec for rec in self.refresh_tokens.values() if predicate(rec)]
        for rec in removed:
            self._drop_token(rec)
        return removed

    def _restore_tokens(self, records: list[RefreshTokenRecord]) -> None:
        for rec in records:
            self._put_token(rec)

    def _persist_state(self, undo: Optional[Callable[[], None]] = None) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(path.parent), prefix=".credential_store_", suffix=".tmp"
            )
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            if undo is not None:
                undo()
            self.logger.error("memory_store_persist_failed", error=str(exc))
            raise StorageUnavailable(
                "failed to persist in-memory state", {"path": str(path)}
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            self.logger.error("memory_store_load_failed", error=str(exc), path=str(path))
            raise StorageUnavailable("failed to load in-memory state") from exc
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self._email_index = {a.email: a.id for a in self.accounts.values()}
        self.refresh_tokens = {}
        self._value_index = {}
        for raw in data.get("refresh_tokens", []):
            record = self._deserialize_refresh_token(raw)
            if record.owner_id in self.accounts:
                self._put_token(record)
        self.logger.info(
            "memory_store_loaded",
            accounts=len(self.accounts),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "password_hash": account.password_hash,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "is_active": account.is_active,
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        created_at = self._deserialize_datetime(data["created_at"])
        return Account(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            is_active=data.get("is_active", True),
            created_at=created_at,
            updated_at=self._deserialize_datetime(data["updated_at"])
            if data.get("updated_at")
            else created_at,
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "id": record.id,
            "value": record.value,
            "owner_id": record.owner_id,
            "expires_at": self._serialize_datetime(record.expires_at),
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(data["id"]),
            value=data["value"],
            owner_id=str(data["owner_id"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
