from __future__ import annotations

import asyncio
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from tokenkeeper.config import Settings
from tokenkeeper.logging import get_logger
from tokenkeeper.service.errors import (
    AccountDisabledError,
    DuplicateEmailError,
    ExpiredCredentialError,
    InvalidCredentialsError,
    InvalidInputError,
    NotFoundError,
    StoreUnavailableError,
)
from tokenkeeper.service.passwords import PasswordHasher
from tokenkeeper.service.tokens import TokenCodec
from tokenkeeper.storage.errors import ConstraintViolation, StorageUnavailable
from tokenkeeper.storage.models import Account, AccountView, RefreshTokenRecord, utcnow

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class CredentialStore(Protocol):
    def find_account_by_email(self, email: str) -> Optional[Account]: ...

    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        is_active: bool = True,
    ) -> Account: ...

    def find_account_by_id(self, account_id: str) -> Optional[Account]: ...

    def update_password_hash(self, account_id: str, password_hash: str) -> None: ...

    def create_refresh_token(
        self, owner_id: str, value: str, expires_at: datetime
    ) -> RefreshTokenRecord: ...

    def find_refresh_token(self, value: str) -> Optional[RefreshTokenRecord]: ...

    def delete_refresh_token(self, token_id: str) -> bool: ...

    def delete_refresh_tokens_by_owner(self, owner_id: str) -> int: ...

    def delete_refresh_tokens_by_value(self, value: str) -> int: ...

    def rotate_refresh_token(
        self, old_id: str, new_value: str, owner_id: str, expires_at: datetime
    ) -> Optional[RefreshTokenRecord]: ...

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...

    def close(self) -> None: ...


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime


@dataclass(frozen=True)
class AuthResult:
    account: AccountView
    access_token: str
    refresh_token: str
    access_expires_at: datetime


class TokenLifecycleManager:
    """Registration, login, refresh rotation and revocation of credentials.

    The manager keeps no mutable state of its own. Every durable change goes
    through one atomic store call, so two requests racing on the same refresh
    token or the same email are settled by the store.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: PasswordHasher,
        codec: TokenCodec,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: CredentialStore = store
        self.hasher = hasher
        self.codec = codec
        self.settings = settings
        self._clock = clock or utcnow
        self.logger = logger

    @property
    def access_lifetime(self) -> timedelta:
        return timedelta(seconds=self.settings.access_token_ttl_seconds)

    @property
    def refresh_lifetime(self) -> timedelta:
        return timedelta(seconds=self.settings.refresh_token_ttl_seconds)

    def _now(self) -> datetime:
        return self._clock()

    async def _store_call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking store call in a worker thread.

        Backend failures are logged with their detail and surfaced as
        ``StoreUnavailableError`` with a generic message.
        """
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ConstraintViolation:
            raise
        except StorageUnavailable as exc:
            self.logger.error(
                "store_unavailable", operation=operation, error=exc.message, detail=exc.detail
            )
            raise StoreUnavailableError("credential store unavailable") from exc
        except Exception as exc:
            self.logger.error(
                "store_unavailable",
                operation=operation,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise StoreUnavailableError("credential store unavailable") from exc

    def _validate_registration(self, email: Any, password: Any) -> str:
        if not isinstance(email, str) or not EMAIL_PATTERN.match(email.strip()):
            raise InvalidInputError("a valid email address is required", detail={"field": "email"})
        if not isinstance(password, str):
            raise InvalidInputError("password is required", detail={"field": "password"})
        if len(password) < self.settings.password_min_length:
            raise InvalidInputError(
                f"password must be at least {self.settings.password_min_length} characters",
                detail={"field": "password"},
            )
        if len(password) > self.settings.password_max_length:
            raise InvalidInputError(
                f"password must be at most {self.settings.password_max_length} characters",
                detail={"field": "password"},
            )
        return email.strip().lower()

    async def _issue_pair(self, account: Account) -> TokenPair:
        now = self._now().replace(microsecond=0)
        access_token = self.codec.issue(
            {"sub": account.id, "email": account.email}, self.access_lifetime, now=now
        )
        refresh_value = secrets.token_urlsafe(32)
        try:
            await self._store_call(
                "create_refresh_token",
                self.store.create_refresh_token,
                account.id,
                refresh_value,
                now + self.refresh_lifetime,
            )
        except ConstraintViolation as exc:
            self.logger.error("refresh_token_persist_rejected", detail=exc.detail)
            raise StoreUnavailableError("credential store unavailable") from exc
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_value,
            access_expires_at=now + self.access_lifetime,
        )

    async def register(
        self,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> AuthResult:
        normalized = self._validate_registration(email, password)
        existing = await self._store_call(
            "find_account_by_email", self.store.find_account_by_email, normalized
        )
        if existing:
            self.logger.info("register_duplicate_email")
            raise DuplicateEmailError("an account with this email already exists")

        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        try:
            account = await self._store_call(
                "create_account",
                self.store.create_account,
                normalized,
                password_hash,
                first_name=first_name,
                last_name=last_name,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration of the same email
            self.logger.info("register_duplicate_email", detail=exc.detail)
            raise DuplicateEmailError("an account with this email already exists") from exc

        try:
            pair = await self._issue_pair(account)
        except StoreUnavailableError:
            # The account exists; the client recovers by logging in
            self.logger.error("register_token_issue_failed", account_id=account.id)
            raise
        self.logger.info("account_registered", account_id=account.id)
        return AuthResult(
            account=account.public(),
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            access_expires_at=pair.access_expires_at,
        )

    async def login(self, email: str, password: str) -> AuthResult:
        if not isinstance(email, str) or not isinstance(password, str) or not email.strip() or not password:
            raise InvalidCredentialsError("invalid email or password")
        normalized = email.strip().lower()
        account = await self._store_call(
            "find_account_by_email", self.store.find_account_by_email, normalized
        )
        if not account:
            await asyncio.to_thread(self.hasher.dummy_verify, password)
            self.logger.info("login_failed", reason="unknown_account")
            raise InvalidCredentialsError("invalid email or password")
        if not account.is_active:
            self.logger.info("login_failed", reason="account_disabled", account_id=account.id)
            raise AccountDisabledError("account is disabled")
        verified = await asyncio.to_thread(self.hasher.verify, password, account.password_hash)
        if not verified:
            self.logger.info("login_failed", reason="password_mismatch", account_id=account.id)
            raise InvalidCredentialsError("invalid email or password")

        if self.hasher.needs_rehash(account.password_hash):
            upgraded = await asyncio.to_thread(self.hasher.hash, password)
            await self._store_call(
                "update_password_hash", self.store.update_password_hash, account.id, upgraded
            )
            self.logger.info("password_hash_upgraded", account_id=account.id)

        pair = await self._issue_pair(account)
        self.logger.info("login_succeeded", account_id=account.id)
        return AuthResult(
            account=account.public(),
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            access_expires_at=pair.access_expires_at,
        )

    async def refresh(self, refresh_token: str) -> TokenPair:
        if not isinstance(refresh_token, str) or not refresh_token:
            raise InvalidCredentialsError("invalid refresh token")
        record = await self._store_call(
            "find_refresh_token", self.store.find_refresh_token, refresh_token
        )
        if not record:
            # Unknown, already rotated, or revoked by logout
            self.logger.info("refresh_token_unknown")
            raise InvalidCredentialsError("invalid refresh token")

        now = self._now()
        if record.is_expired(now):
            await self._store_call(
                "delete_refresh_token", self.store.delete_refresh_token, record.id
            )
            self.logger.info("refresh_token_expired", owner_id=record.owner_id)
            raise ExpiredCredentialError("refresh token has expired")

        owner = record.owner
        if owner is None:
            owner = await self._store_call(
                "find_account_by_id", self.store.find_account_by_id, record.owner_id
            )
        if owner is None:
            self.logger.warning("refresh_token_owner_missing", owner_id=record.owner_id)
            raise InvalidCredentialsError("invalid refresh token")
        if not owner.is_active:
            self.logger.info("refresh_rejected", reason="account_disabled", account_id=owner.id)
            raise AccountDisabledError("account is disabled")

        issued_at = now.replace(microsecond=0)
        access_token = self.codec.issue(
            {"sub": owner.id, "email": owner.email}, self.access_lifetime, now=issued_at
        )
        new_value = secrets.token_urlsafe(32)
        try:
            rotated = await self._store_call(
                "rotate_refresh_token",
                self.store.rotate_refresh_token,
                record.id,
                new_value,
                owner.id,
                issued_at + self.refresh_lifetime,
            )
        except ConstraintViolation as exc:
            # Owner deleted between lookup and rotation
            self.logger.warning("refresh_rotation_rejected", detail=exc.detail)
            raise InvalidCredentialsError("invalid refresh token") from exc
        if rotated is None:
            # A concurrent refresh or logout consumed the record first
            self.logger.info("refresh_token_unknown", reason="consumed_concurrently")
            raise InvalidCredentialsError("invalid refresh token")

        self.logger.info("refresh_token_rotated", account_id=owner.id)
        return TokenPair(
            access_token=access_token,
            refresh_token=new_value,
            access_expires_at=issued_at + self.access_lifetime,
        )

    async def logout(self, refresh_token: str) -> None:
        if not isinstance(refresh_token, str) or not refresh_token:
            return
        removed = await self._store_call(
            "delete_refresh_tokens_by_value",
            self.store.delete_refresh_tokens_by_value,
            refresh_token,
        )
        self.logger.info("logout", revoked=removed)

    async def logout_all(self, owner_id: str) -> int:
        removed = await self._store_call(
            "delete_refresh_tokens_by_owner",
            self.store.delete_refresh_tokens_by_owner,
            owner_id,
        )
        self.logger.info("logout_all", account_id=owner_id, revoked=removed)
        return removed

    async def get_profile(self, owner_id: str) -> AccountView:
        account = await self._store_call(
            "find_account_by_id", self.store.find_account_by_id, owner_id
        )
        if not account:
            raise NotFoundError("account not found")
        return account.public()

    async def purge_expired(self) -> int:
        removed = await self._store_call(
            "purge_expired_refresh_tokens",
            self.store.purge_expired_refresh_tokens,
            self._now(),
        )
        self.logger.info("refresh_tokens_purged", removed=removed)
        return removed
