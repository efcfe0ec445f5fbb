from __future__ import annotations

from datetime import datetime
from typing import Optional

from blogauth.logging import get_logger
from blogauth.service.clock import Clock, system_clock
from blogauth.service.errors import AccountLockedError, NotFoundError, ValidationError
from blogauth.storage.base import AuthStore
from blogauth.storage.models import Account


class AccountLockManager:
    """Administrative, time-boxed account suspension.

    Expired locks are not swept in the background: every authentication read
    calls :meth:`reconcile`, which clears a lapsed lock as part of that read.
    Role enforcement for :meth:`lock` and :meth:`unlock` lives in the HTTP
    role gate.
    """

    def __init__(self, store: AuthStore, *, clock: Clock = system_clock) -> None:
        self.store = store
        self.clock = clock
        self.logger = get_logger(__name__)

    def lock(
        self,
        account_id: int,
        *,
        locked_by: Optional[int],
        locked_until: datetime,
        reason: str,
    ) -> Account:
        now = self.clock()
        if locked_until.tzinfo is None:
            raise ValidationError(
                "lock expiry must include a timezone", detail={"field": "locked_until"}
            )
        if locked_until <= now:
            raise ValidationError(
                "lock expiry must be in the future", detail={"field": "locked_until"}
            )
        if not reason or not reason.strip():
            raise ValidationError("lock reason is required", detail={"field": "lock_reason"})
        account = self.store.lock_account(
            account_id,
            locked_by=locked_by,
            locked_at=now,
            locked_until=locked_until,
            reason=reason.strip(),
        )
        if account is None:
            raise NotFoundError("account not found")
        self.logger.info(
            "account_locked",
            account_id=account_id,
            locked_by=locked_by,
            locked_until=locked_until.isoformat(),
        )
        return account

    def unlock(self, account_id: int, *, unlocked_by: Optional[int] = None) -> Account:
        account = self.store.unlock_account(account_id)
        if account is None:
            raise NotFoundError("account not found")
        self.logger.info("account_unlocked", account_id=account_id, unlocked_by=unlocked_by)
        return account

    def reconcile(self, account: Account) -> Account:
        """Return ``account`` with any expired lock cleared in storage."""
        if account.locked_until is None or account.locked_until > self.clock():
            return account
        refreshed = self.store.unlock_account(account.id)
        self.logger.info("account_auto_unlocked", account_id=account.id)
        return refreshed or account

    def ensure_unlocked(self, account: Account) -> Account:
        """Reconcile, then raise :class:`AccountLockedError` if a lock is still active."""
        account = self.reconcile(account)
        if account.is_locked(self.clock()):
            raise AccountLockedError(account.locked_until)
        return account
