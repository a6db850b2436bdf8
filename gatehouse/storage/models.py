from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional


@dataclass
class Company:
    id: str
    name: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class Account:
    id: str
    company_id: str
    account_key: str
    name: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    deleted_at: Optional[datetime] = None

    @staticmethod
    def new_key() -> str:
        return secrets.token_urlsafe(24)


@dataclass
class User:
    id: str
    account_id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    # False for disposable trial users; gates forced cleanup on logout.
    registered: bool = False
    failed_logins: int = 0
    is_active: bool = True
    created_at: datetime = field(default_factory=datetime.utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class UserAuthProvider:
    id: int
    user_id: str
    provider: str
    provider_uid: str
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class SecondFactorSecret:
    user_id: str
    secret: str
    enabled: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class VerifiedIdentity:
    """Identity asserted by an OAuth provider after a completed handshake."""

    provider: str
    provider_uid: str
    email: Optional[str] = None
    name: Optional[str] = None
    # True only when the provider asserts it verified ownership of ``email``
    email_verified: bool = False


@dataclass
class Session:
    id: str
    created_at: datetime
    expires_at: datetime
    data: Dict = field(default_factory=dict)

    @classmethod
    def new(cls, ttl_minutes: int = 120) -> "Session":
        now = datetime.utcnow()
        return cls(
            id=str(uuid.uuid4()),
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )
