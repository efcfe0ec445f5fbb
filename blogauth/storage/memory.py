from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

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
    _utcnow,
)

_UPDATABLE_ACCOUNT_FIELDS = {
    "username",
    "email",
    "password_hash",
    "role_id",
    "full_name",
    "address",
    "gender",
    "last_login_ip",
    "last_login_at",
}


class MemoryStore:
    """In-memory backing store used for tests and local development."""

    def __init__(self, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self.logger = get_logger(__name__)
        # Stamps created_at, so records line up with the services' clock
        self.clock = clock
        self.accounts: Dict[int, Account] = {}
        self.pending_challenges: Dict[int, PendingLoginChallenge] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.password_resets: Dict[int, PasswordResetToken] = {}
        self.audit_entries: List[AuditEntry] = []
        self._sequences: Dict[str, int] = {}
        # RLock so helpers may re-enter while a public method holds it
        self._data_lock = threading.RLock()

    def _next_id(self, name: str) -> int:
        with self._data_lock:
            value = self._sequences.get(name, 0) + 1
            self._sequences[name] = value
            return value

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
        with self._data_lock:
            self._check_unique(username=username, email=email)
            account = Account(
                id=self._next_id("accounts"),
                username=username,
                email=email.lower(),
                password_hash=password_hash,
                role_id=role_id,
                full_name=full_name,
                address=address,
                gender=gender,
                created_at=self.clock(),
            )
            self.accounts[account.id] = account
            return replace(account)

    def _check_unique(
        self, *, username: Optional[str], email: Optional[str], exclude_id: Optional[int] = None
    ) -> None:
        for existing in self.accounts.values():
            if existing.id == exclude_id:
                continue
            if email is not None and existing.email == email.lower():
                raise ConstraintViolation("email already exists", {"field": "email"})
            if username is not None and existing.username == username:
                raise ConstraintViolation("username already exists", {"field": "username"})

    def get_account_by_id(self, account_id: int) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        needle = email.lower()
        with self._data_lock:
            account = next((a for a in self.accounts.values() if a.email == needle), None)
            return replace(account) if account else None

    def get_account_by_username(self, username: str) -> Optional[Account]:
        with self._data_lock:
            account = next((a for a in self.accounts.values() if a.username == username), None)
            return replace(account) if account else None

    def update_account(self, account_id: int, **fields: Any) -> Optional[Account]:
        unknown = set(fields) - _UPDATABLE_ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            self._check_unique(
                username=fields.get("username"),
                email=fields.get("email"),
                exclude_id=account_id,
            )
            if "email" in fields:
                fields["email"] = fields["email"].lower()
            for name, value in fields.items():
                setattr(account, name, value)
            return replace(account)

    def list_accounts(
        self, *, locked_as_of: Optional[datetime] = None, limit: int = 100
    ) -> List[Account]:
        """List accounts by id; with ``locked_as_of`` only those locked at that time."""
        with self._data_lock:
            results = sorted(self.accounts.values(), key=lambda a: a.id)
            if locked_as_of is not None:
                results = [a for a in results if a.is_locked(locked_as_of)]
            return [replace(a) for a in results[:limit]]

    def lock_account(
        self,
        account_id: int,
        *,
        locked_by: Optional[int],
        locked_at: datetime,
        locked_until: datetime,
        reason: str,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.locked_by = locked_by
            account.locked_at = locked_at
            account.locked_until = locked_until
            account.lock_reason = reason
            return replace(account)

    def unlock_account(self, account_id: int) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.locked_by = None
            account.locked_at = None
            account.locked_until = None
            account.lock_reason = None
            return replace(account)

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
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            if any(c.token == token for c in self.pending_challenges.values()):
                raise ConstraintViolation("challenge token already exists", {"field": "token"})
            challenge = PendingLoginChallenge(
                id=self._next_id("pending_challenges"),
                account_id=account_id,
                code=code,
                token=token,
                ip_addr=ip_addr,
                device=device,
                expires_at=expires_at,
                created_at=self.clock(),
            )
            self.pending_challenges[challenge.id] = challenge
            return replace(challenge)

    def get_pending_challenge_by_token(self, token: str) -> Optional[PendingLoginChallenge]:
        with self._data_lock:
            challenge = next(
                (c for c in self.pending_challenges.values() if c.token == token), None
            )
            return replace(challenge) if challenge else None

    def list_pending_challenges(self, account_id: int) -> List[PendingLoginChallenge]:
        with self._data_lock:
            return [
                replace(c)
                for c in sorted(self.pending_challenges.values(), key=lambda c: c.id)
                if c.account_id == account_id
            ]

    def delete_pending_challenge(self, challenge_id: int) -> bool:
        with self._data_lock:
            return self.pending_challenges.pop(challenge_id, None) is not None

    # -- refresh tokens -----------------------------------------------------

    def create_refresh_token(
        self, account_id: int, token: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            if token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            record = RefreshToken(
                id=self._next_id("refresh_tokens"),
                account_id=account_id,
                token=token,
                expires_at=expires_at,
                created_at=self.clock(),
            )
            self.refresh_tokens[token] = record
            return replace(record)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def delete_refresh_token(self, token: str) -> bool:
        with self._data_lock:
            return self.refresh_tokens.pop(token, None) is not None

    def delete_refresh_tokens_for_account(self, account_id: int) -> int:
        with self._data_lock:
            stale = [t for t, rec in self.refresh_tokens.items() if rec.account_id == account_id]
            for token in stale:
                self.refresh_tokens.pop(token, None)
            return len(stale)

    # -- password resets ----------------------------------------------------

    def create_password_reset(
        self, account_id: int, token_hash: str, expires_at: datetime
    ) -> PasswordResetToken:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            record = PasswordResetToken(
                id=self._next_id("password_resets"),
                account_id=account_id,
                token_hash=token_hash,
                expires_at=expires_at,
                created_at=self.clock(),
            )
            self.password_resets[record.id] = record
            return replace(record)

    def get_password_reset(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            record = next(
                (r for r in self.password_resets.values() if r.token_hash == token_hash), None
            )
            return replace(record) if record else None

    def delete_password_reset(self, reset_id: int) -> bool:
        with self._data_lock:
            return self.password_resets.pop(reset_id, None) is not None

    # -- audit log ----------------------------------------------------------

    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        with self._data_lock:
            stored = replace(entry, id=self._next_id("audit_entries"), details=dict(entry.details))
            self.audit_entries.append(stored)
            return replace(stored)

    def list_audit_entries(self, query: AuditFilter) -> List[AuditEntry]:
        with self._data_lock:
            matches = [
                e
                for e in reversed(self.audit_entries)
                if (query.account_id is None or e.account_id == query.account_id)
                and (query.action is None or e.action == query.action)
                and (query.ip_addr is None or e.ip_addr == query.ip_addr)
                and (query.status is None or e.status == query.status)
                and (query.since is None or e.created_at >= query.since)
            ]
            return [replace(e) for e in matches[: query.limit]]

    def ping(self) -> bool:
        return True
