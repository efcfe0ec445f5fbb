from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

ROLE_ADMIN = 1
ROLE_MODERATOR = 2
ROLE_USER = 3

ROLE_NAMES = {ROLE_ADMIN: "admin", ROLE_MODERATOR: "moderator", ROLE_USER: "user"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: int
    username: str
    email: str
    password_hash: str
    role_id: int = ROLE_USER
    full_name: Optional[str] = None
    address: Optional[str] = None
    gender: Optional[str] = None
    locked_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    lock_reason: Optional[str] = None
    locked_by: Optional[int] = None
    last_login_ip: Optional[str] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def role_name(self) -> str:
        return ROLE_NAMES.get(self.role_id, "user")

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class PendingLoginChallenge:
    """An in-flight step-up verification for one login attempt."""

    id: int
    account_id: int
    code: str
    token: str
    ip_addr: Optional[str]
    device: Optional[str]
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class RefreshToken:
    id: int
    account_id: int
    token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class PasswordResetToken:
    id: int
    account_id: int
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class AuditEntry:
    """One authentication event as recorded by the audit sink."""

    action: str
    status: str
    ip_addr: Optional[str] = None
    masked_ip: Optional[str] = None
    account_id: Optional[int] = None
    username: Optional[str] = None
    user_agent: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class AuditFilter:
    account_id: Optional[int] = None
    action: Optional[str] = None
    ip_addr: Optional[str] = None
    status: Optional[str] = None
    since: Optional[datetime] = None
    limit: int = 100
