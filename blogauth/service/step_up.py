from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Literal, Optional
from urllib.parse import urlencode

from blogauth.logging import get_logger
from blogauth.service.clock import Clock, system_clock
from blogauth.service.email import EmailService
from blogauth.service.errors import AuthenticationError
from blogauth.storage.base import AuthStore
from blogauth.storage.errors import ConstraintViolation
from blogauth.storage.models import Account, PendingLoginChallenge

Action = Literal["approve", "reject"]

INVALID_LINK = "invalid or expired link"


@dataclass(frozen=True)
class ChallengeIssued:
    challenge: PendingLoginChallenge
    email_sent: bool


@dataclass(frozen=True)
class ChallengeResolved:
    account_id: int
    action: Action
    ip_addr: Optional[str]


def generate_code() -> str:
    """Six-digit human-readable code, uniform over 100000-999999."""
    return str(100000 + secrets.randbelow(900000))


def generate_link_token() -> str:
    """256-bit link secret rendered as 64 hex characters."""
    return secrets.token_hex(32)


class StepUpVerifier:
    """Out-of-band email approval for logins flagged as high risk.

    A challenge is resolved at most once: resolution deletes the row before
    the caller acts on it, and a failed delete means a concurrent resolver
    got there first.
    """

    def __init__(
        self,
        store: AuthStore,
        email: EmailService,
        *,
        base_url: str,
        ttl: timedelta = timedelta(minutes=5),
        clock: Clock = system_clock,
    ) -> None:
        self.store = store
        self.email = email
        self.base_url = base_url.rstrip("/")
        self.ttl = ttl
        self.clock = clock
        self.logger = get_logger(__name__)

    def link_for(self, token: str, action: Action) -> str:
        return f"{self.base_url}/verify-2fa?{urlencode({'token': token, 'action': action})}"

    async def begin(
        self, account: Account, *, ip_addr: Optional[str], user_agent: Optional[str]
    ) -> ChallengeIssued:
        """Persist a pending challenge and email the approve/reject links.

        A failed send is reported through ``email_sent``; the challenge stays.
        """
        expires_at = self.clock() + self.ttl
        challenge = None
        for _ in range(3):
            try:
                challenge = self.store.create_pending_challenge(
                    account.id,
                    code=generate_code(),
                    token=generate_link_token(),
                    ip_addr=ip_addr,
                    device=user_agent,
                    expires_at=expires_at,
                )
                break
            except ConstraintViolation as exc:
                if exc.field != "token":
                    raise
        if challenge is None:
            raise RuntimeError("could not allocate a unique challenge token")

        email_sent = await asyncio.to_thread(
            self.email.send_login_approval,
            account.email,
            account.username,
            self.link_for(challenge.token, "approve"),
            self.link_for(challenge.token, "reject"),
            expires_minutes=int(self.ttl.total_seconds() // 60),
            ip_addr=ip_addr,
        )
        if not email_sent:
            self.logger.error(
                "login_challenge_email_failed", account_id=account.id, challenge_id=challenge.id
            )
        self.logger.info(
            "login_challenge_created",
            account_id=account.id,
            challenge_id=challenge.id,
            expires_at=expires_at.isoformat(),
        )
        return ChallengeIssued(challenge=challenge, email_sent=email_sent)

    def resolve(self, token: str, action: Action) -> ChallengeResolved:
        """Consume the challenge behind ``token``.

        Unknown, expired and already-consumed tokens all raise the same
        :class:`AuthenticationError`.
        """
        if action not in ("approve", "reject"):
            raise ValueError(f"unknown action: {action}")
        challenge = self.store.get_pending_challenge_by_token(token) if token else None
        if challenge is None:
            raise AuthenticationError(INVALID_LINK)
        if challenge.is_expired(self.clock()):
            self.store.delete_pending_challenge(challenge.id)
            self.logger.info("login_challenge_expired", challenge_id=challenge.id)
            raise AuthenticationError(INVALID_LINK)
        if not self.store.delete_pending_challenge(challenge.id):
            raise AuthenticationError(INVALID_LINK)
        self.logger.info(
            "login_challenge_resolved",
            challenge_id=challenge.id,
            account_id=challenge.account_id,
            action=action,
        )
        return ChallengeResolved(
            account_id=challenge.account_id, action=action, ip_addr=challenge.ip_addr
        )
