from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from blogauth.logging import get_logger
from blogauth.service.clock import Clock, system_clock
from blogauth.service.risk import mask_ip, parse_browser_info
from blogauth.storage.base import AuthStore
from blogauth.storage.models import AuditEntry, AuditFilter

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_PENDING = "pending"


@dataclass(frozen=True)
class RequestContext:
    """Network identity of the caller, resolved once per request."""

    ip_addr: str
    user_agent: Optional[str] = None


class AuditLog:
    """Append-only sink for authentication events, persisted through the store."""

    def __init__(self, store: AuthStore, *, clock: Clock = system_clock) -> None:
        self.store = store
        self.clock = clock
        self.logger = get_logger("blogauth.audit")

    def record(
        self,
        action: str,
        status: str,
        ctx: Optional[RequestContext] = None,
        *,
        account_id: Optional[int] = None,
        username: Optional[str] = None,
        **details: Any,
    ) -> Optional[AuditEntry]:
        """Persist one event. Storage failures are logged, never raised."""
        ip_addr = ctx.ip_addr if ctx else None
        user_agent = ctx.user_agent if ctx else None
        browser, system = parse_browser_info(user_agent)
        entry = AuditEntry(
            action=action,
            status=status,
            ip_addr=ip_addr,
            masked_ip=mask_ip(ip_addr),
            account_id=account_id,
            username=username,
            user_agent=user_agent,
            browser=browser,
            os=system,
            details=details,
            created_at=self.clock(),
        )
        self.logger.info(
            "auth_event",
            action=action,
            status=status,
            account_id=account_id,
            masked_ip=entry.masked_ip,
            browser=browser,
            os=system,
        )
        try:
            return self.store.append_audit_entry(entry)
        except Exception as exc:
            self.logger.error("audit_persist_failed", action=action, error=str(exc))
            return None

    def query(self, query: AuditFilter) -> List[AuditEntry]:
        return self.store.list_audit_entries(query)

    def statistics(self, query: Optional[AuditFilter] = None) -> Dict[str, int]:
        """Summarize the entries matching ``query`` (default: the latest 1000)."""
        entries = self.query(query or AuditFilter(limit=1000))
        logins = [e for e in entries if e.action == "login"]
        return {
            "total": len(entries),
            "unique_ips": len({e.ip_addr for e in entries if e.ip_addr}),
            "unique_accounts": len({e.account_id for e in entries if e.account_id is not None}),
            "successful_logins": sum(1 for e in logins if e.status == STATUS_SUCCESS),
            "failed_logins": sum(1 for e in logins if e.status == STATUS_FAILED),
            "pending_logins": sum(1 for e in logins if e.status == STATUS_PENDING),
            "registrations": sum(1 for e in entries if e.action == "register"),
        }
