from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    email: str
    password_hash: str = field(repr=False)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def public(self) -> "AccountView":
        """Project the account without its credential hash."""

        return AccountView(
            id=self.id,
            email=self.email,
            first_name=self.first_name,
            last_name=self.last_name,
            is_active=self.is_active,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


@dataclass(frozen=True)
class AccountView:
    id: str
    email: str
    first_name: Optional[str]
    last_name: Optional[str]
    is_active: bool
    created_at: datetime
    updated_at: datetime


@dataclass
class RefreshTokenRecord:
    id: str
    value: str = field(repr=False)
    owner_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    owner: Optional[Account] = field(default=None, repr=False, compare=False)

    @classmethod
    def new(cls, owner_id: str, value: str, expires_at: datetime) -> "RefreshTokenRecord":
        return cls(
            id=str(uuid.uuid4()),
            value=value,
            owner_id=owner_id,
            expires_at=expires_at,
        )

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at
