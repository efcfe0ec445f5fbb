from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Protocol

from blogauth.storage.models import (
    Account,
    AuditEntry,
    AuditFilter,
    PasswordResetToken,
    PendingLoginChallenge,
    RefreshToken,
)


class AuthStore(Protocol):
    """Storage contract consumed by the auth services.

    Both the in-memory store and the Postgres store satisfy it; services never
    embed SQL.
    """

    def create_account(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        role_id: int = ...,
        full_name: Optional[str] = None,
        address: Optional[str] = None,
        gender: Optional[str] = None,
    ) -> Account: ...

    def get_account_by_id(self, account_id: int) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_username(self, username: str) -> Optional[Account]: ...

    def update_account(self, account_id: int, **fields: Any) -> Optional[Account]: ...

    def list_accounts(
        self, *, locked_as_of: Optional[datetime] = None, limit: int = 100
    ) -> List[Account]: ...

    def lock_account(
        self,
        account_id: int,
        *,
        locked_by: Optional[int],
        locked_at: datetime,
        locked_until: datetime,
        reason: str,
    ) -> Optional[Account]: ...

    def unlock_account(self, account_id: int) -> Optional[Account]: ...

    def create_pending_challenge(
        self,
        account_id: int,
        *,
        code: str,
        token: str,
        ip_addr: Optional[str],
        device: Optional[str],
        expires_at: datetime,
    ) -> PendingLoginChallenge: ...

    def get_pending_challenge_by_token(self, token: str) -> Optional[PendingLoginChallenge]: ...

    def list_pending_challenges(self, account_id: int) -> List[PendingLoginChallenge]: ...

    def delete_pending_challenge(self, challenge_id: int) -> bool: ...

    def create_refresh_token(
        self, account_id: int, token: str, expires_at: datetime
    ) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, token: str) -> bool: ...

    def delete_refresh_tokens_for_account(self, account_id: int) -> int: ...

    def create_password_reset(
        self, account_id: int, token_hash: str, expires_at: datetime
    ) -> PasswordResetToken: ...

    def get_password_reset(self, token_hash: str) -> Optional[PasswordResetToken]: ...

    def delete_password_reset(self, reset_id: int) -> bool: ...

    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry: ...

    def list_audit_entries(self, query: AuditFilter) -> List[AuditEntry]: ...

    def ping(self) -> bool: ...
