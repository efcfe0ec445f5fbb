from __future__ import annotations

import asyncio
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from blogauth.logging import get_logger
from blogauth.service.audit import (
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SUCCESS,
    AuditLog,
    RequestContext,
)
from blogauth.service.clock import Clock, system_clock
from blogauth.service.credentials import CredentialStore
from blogauth.service.email import EmailService
from blogauth.service.errors import AccountLockedError, AuthenticationError, ValidationError
from blogauth.service.locks import AccountLockManager
from blogauth.service.risk import DEFAULT_MAX_LOGIN_AGE, is_high_risk
from blogauth.service.step_up import INVALID_LINK, Action, StepUpVerifier
from blogauth.service.tokens import IssuedToken, TokenService
from blogauth.storage.base import AuthStore
from blogauth.storage.errors import ConstraintViolation
from blogauth.storage.models import ROLE_USER, Account

INVALID_CREDENTIALS = "invalid credentials"
PENDING_MESSAGE = "We sent a sign-in link to your email. Approve it to finish logging in."
REJECTED_MESSAGE = "Sign-in rejected. No session was created."
RESET_REQUESTED_MESSAGE = "If that email is registered, a reset link is on its way."


@dataclass(frozen=True)
class Identity:
    """Caller identity carried by a valid access token."""

    id: int
    username: str
    email: str
    role_id: int


@dataclass(frozen=True)
class SessionTokens:
    access: IssuedToken
    refresh: IssuedToken


@dataclass(frozen=True)
class LoginSucceeded:
    account: Account
    tokens: SessionTokens


@dataclass(frozen=True)
class LoginPending:
    account_id: int
    expires_at: datetime
    email_sent: bool
    message: str = PENDING_MESSAGE


@dataclass(frozen=True)
class LoginRejected:
    account_id: int
    message: str = REJECTED_MESSAGE


LoginResult = Union[LoginSucceeded, LoginPending]
VerificationResult = Union[LoginSucceeded, LoginRejected]


def _hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class AuthService:
    """Registration, risk-aware login, step-up resolution and token lifecycle.

    Login is one linear coroutine: credentials, lock state and risk are
    checked in order and the outcome is a tagged result. Nothing here knows
    about HTTP; routes translate results into cookies and envelopes.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        credentials: CredentialStore,
        tokens: TokenService,
        locks: AccountLockManager,
        step_up: StepUpVerifier,
        audit: AuditLog,
        email: EmailService,
        base_url: str,
        max_login_age: timedelta = DEFAULT_MAX_LOGIN_AGE,
        reset_ttl: timedelta = timedelta(minutes=15),
        clock: Clock = system_clock,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.tokens = tokens
        self.locks = locks
        self.step_up = step_up
        self.audit = audit
        self.email = email
        self.base_url = base_url.rstrip("/")
        self.max_login_age = max_login_age
        self.reset_ttl = reset_ttl
        self.clock = clock
        self.logger = get_logger(__name__)
        self._dummy_hash: Optional[str] = None

    # -- helpers -------------------------------------------------------------

    async def _hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self.credentials.hash, password)

    async def _verify_password(self, password: str, hashed: str) -> bool:
        return await asyncio.to_thread(self.credentials.verify, password, hashed)

    async def _burn_verify(self, password: str) -> None:
        """Spend a verify on a throwaway hash so unknown emails cost the same as wrong passwords."""
        if self._dummy_hash is None:
            self._dummy_hash = await self._hash_password(secrets.token_urlsafe(16))
        await self._verify_password(password, self._dummy_hash)

    def _issue_session(self, account: Account, *, login_ip: Optional[str]) -> LoginSucceeded:
        """Mint tokens, persist the refresh grant and, for logins, stamp IP/time."""
        now = self.clock()
        access = self.tokens.issue_access(account)
        refresh = self.tokens.issue_refresh(account.id)
        self.store.create_refresh_token(account.id, refresh.token, now + self.tokens.refresh_ttl)
        if login_ip is not None:
            account = (
                self.store.update_account(account.id, last_login_ip=login_ip, last_login_at=now)
                or account
            )
        return LoginSucceeded(account=account, tokens=SessionTokens(access=access, refresh=refresh))

    # -- registration --------------------------------------------------------

    async def register(
        self,
        *,
        username: str,
        email: str,
        password: str,
        ctx: RequestContext,
        full_name: Optional[str] = None,
        address: Optional[str] = None,
        gender: Optional[str] = None,
    ) -> LoginSucceeded:
        if self.store.get_account_by_email(email):
            self.audit.record("register", STATUS_FAILED, ctx, reason="duplicate_email")
            raise ValidationError("email already registered", detail={"field": "email"})
        if self.store.get_account_by_username(username):
            self.audit.record("register", STATUS_FAILED, ctx, reason="duplicate_username")
            raise ValidationError("username already taken", detail={"field": "username"})

        password_hash = await self._hash_password(password)
        try:
            account = self.store.create_account(
                username,
                email,
                password_hash,
                role_id=ROLE_USER,
                full_name=full_name,
                address=address,
                gender=gender,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration
            raise ValidationError(exc.message, detail=exc.detail) from exc

        self.logger.info("account_registered", account_id=account.id)
        self.audit.record(
            "register", STATUS_SUCCESS, ctx, account_id=account.id, username=account.username
        )
        # No last-login stamp: the first real login always goes through step-up.
        return self._issue_session(account, login_ip=None)

    # -- login ---------------------------------------------------------------

    async def login(self, email: str, password: str, *, ctx: RequestContext) -> LoginResult:
        account = self.store.get_account_by_email(email)
        if account is None:
            await self._burn_verify(password)
            self.audit.record("login", STATUS_FAILED, ctx, reason="unknown_email")
            raise AuthenticationError(INVALID_CREDENTIALS)

        try:
            account = self.locks.ensure_unlocked(account)
        except AccountLockedError:
            self.audit.record(
                "login", STATUS_FAILED, ctx, account_id=account.id, username=account.username, reason="locked"
            )
            raise

        if not await self._verify_password(password, account.password_hash):
            self.audit.record(
                "login", STATUS_FAILED, ctx, account_id=account.id, username=account.username, reason="bad_password"
            )
            raise AuthenticationError(INVALID_CREDENTIALS)

        if self.credentials.needs_rehash(account.password_hash):
            new_hash = await self._hash_password(password)
            account = self.store.update_account(account.id, password_hash=new_hash) or account

        now = self.clock()
        if is_high_risk(
            account.last_login_ip, account.last_login_at, ctx.ip_addr, now, self.max_login_age
        ):
            issued = await self.step_up.begin(account, ip_addr=ctx.ip_addr, user_agent=ctx.user_agent)
            self.audit.record(
                "login",
                STATUS_PENDING,
                ctx,
                account_id=account.id,
                username=account.username,
                email_sent=issued.email_sent,
            )
            return LoginPending(
                account_id=account.id,
                expires_at=issued.challenge.expires_at,
                email_sent=issued.email_sent,
            )

        result = self._issue_session(account, login_ip=ctx.ip_addr)
        self.audit.record("login", STATUS_SUCCESS, ctx, account_id=account.id, username=account.username)
        return result

    async def resolve_login_link(
        self, token: str, action: Action, *, ctx: RequestContext
    ) -> VerificationResult:
        try:
            resolved = self.step_up.resolve(token, action)
        except AuthenticationError:
            self.audit.record("2fa", STATUS_FAILED, ctx, action_requested=action)
            raise

        if resolved.action == "reject":
            self.audit.record("2fa", STATUS_FAILED, ctx, account_id=resolved.account_id, outcome="rejected")
            return LoginRejected(account_id=resolved.account_id)

        account = self.store.get_account_by_id(resolved.account_id)
        if account is None:
            raise AuthenticationError(INVALID_LINK)
        account = self.locks.ensure_unlocked(account)
        # The login originated from the challenge's IP, not wherever the link was opened.
        login_ip = resolved.ip_addr or ctx.ip_addr
        result = self._issue_session(account, login_ip=login_ip)
        self.audit.record("2fa", STATUS_SUCCESS, ctx, account_id=account.id, username=account.username)
        return result

    # -- token lifecycle -----------------------------------------------------

    def authenticate(self, access_token: Optional[str]) -> Optional[Identity]:
        """Resolve an access token to an :class:`Identity` without touching storage."""
        claims = self.tokens.verify_access(access_token)
        if claims is None:
            return None
        try:
            return Identity(
                id=int(claims["id"]),
                username=str(claims["username"]),
                email=str(claims["email"]),
                role_id=int(claims["role_id"]),
            )
        except (KeyError, TypeError, ValueError):
            return None

    async def refresh(self, refresh_token: str, *, ctx: RequestContext) -> IssuedToken:
        """Mint a fresh access token from a live refresh grant."""
        claims = self.tokens.verify_refresh(refresh_token)
        if claims is None:
            # Signed exp matches the stored expiry, so expired grants land here
            stale = self.store.get_refresh_token(refresh_token)
            if stale is not None and stale.is_expired(self.clock()):
                self.store.delete_refresh_token(refresh_token)
                self.audit.record("refresh", STATUS_FAILED, ctx, account_id=stale.account_id, reason="expired")
            else:
                self.audit.record("refresh", STATUS_FAILED, ctx, reason="invalid_signature")
            raise AuthenticationError("invalid refresh token")

        record = self.store.get_refresh_token(refresh_token)
        if record is None or record.account_id != claims["id"]:
            self.audit.record("refresh", STATUS_FAILED, ctx, reason="unknown_grant")
            raise AuthenticationError("invalid refresh token")
        if record.is_expired(self.clock()):
            self.store.delete_refresh_token(refresh_token)
            self.audit.record("refresh", STATUS_FAILED, ctx, account_id=record.account_id, reason="expired")
            raise AuthenticationError("invalid refresh token")

        account = self.store.get_account_by_id(record.account_id)
        if account is None:
            self.store.delete_refresh_token(refresh_token)
            raise AuthenticationError("invalid refresh token")
        account = self.locks.ensure_unlocked(account)
        self.audit.record("refresh", STATUS_SUCCESS, ctx, account_id=account.id, username=account.username)
        return self.tokens.issue_access(account)

    async def logout(
        self, identity: Identity, refresh_token: Optional[str], *, ctx: RequestContext
    ) -> None:
        revoked = False
        if refresh_token:
            record = self.store.get_refresh_token(refresh_token)
            if record is not None and record.account_id == identity.id:
                revoked = self.store.delete_refresh_token(refresh_token)
        self.audit.record(
            "logout", STATUS_SUCCESS, ctx, account_id=identity.id, username=identity.username, revoked=revoked
        )

    def current_account(self, identity: Identity) -> Account:
        """Load the caller's account, clearing a lapsed lock on the way."""
        account = self.store.get_account_by_id(identity.id)
        if account is None:
            raise AuthenticationError("invalid session")
        return self.locks.reconcile(account)

    # -- password reset ------------------------------------------------------

    async def request_password_reset(self, email: str, *, ctx: RequestContext) -> bool:
        """Email a reset link when the account exists. Callers reply identically either way."""
        account = self.store.get_account_by_email(email)
        if account is None:
            self.audit.record("password_reset_request", STATUS_FAILED, ctx, reason="unknown_email")
            return False
        token = secrets.token_urlsafe(32)
        self.store.create_password_reset(account.id, _hash_reset_token(token), self.clock() + self.reset_ttl)
        sent = await asyncio.to_thread(
            self.email.send_password_reset,
            account.email,
            account.username,
            f"{self.base_url}/reset-password?token={token}",
            expires_minutes=int(self.reset_ttl.total_seconds() // 60),
        )
        self.audit.record(
            "password_reset_request", STATUS_SUCCESS, ctx, account_id=account.id, email_sent=sent
        )
        return sent

    async def reset_password(self, token: str, new_password: str, *, ctx: RequestContext) -> Account:
        record = self.store.get_password_reset(_hash_reset_token(token))
        if record is None or not self.store.delete_password_reset(record.id):
            self.audit.record("password_reset", STATUS_FAILED, ctx, reason="unknown_token")
            raise AuthenticationError(INVALID_LINK)
        if record.is_expired(self.clock()):
            self.audit.record("password_reset", STATUS_FAILED, ctx, account_id=record.account_id, reason="expired")
            raise AuthenticationError(INVALID_LINK)

        password_hash = await self._hash_password(new_password)
        account = self.store.update_account(record.account_id, password_hash=password_hash)
        if account is None:
            raise AuthenticationError(INVALID_LINK)
        revoked = self.store.delete_refresh_tokens_for_account(account.id)
        self.logger.info("password_reset_completed", account_id=account.id, revoked_refresh_tokens=revoked)
        self.audit.record("password_reset", STATUS_SUCCESS, ctx, account_id=account.id, username=account.username)
        return account

    # -- administration ------------------------------------------------------

    def lock_account(
        self,
        admin: Identity,
        account_id: int,
        *,
        locked_until: datetime,
        reason: str,
        ctx: RequestContext,
    ) -> Account:
        account = self.locks.lock(account_id, locked_by=admin.id, locked_until=locked_until, reason=reason)
        self.audit.record(
            "lock",
            STATUS_SUCCESS,
            ctx,
            account_id=account.id,
            username=account.username,
            locked_by=admin.id,
            locked_until=locked_until.isoformat(),
        )
        return account

    def unlock_account(self, admin: Identity, account_id: int, *, ctx: RequestContext) -> Account:
        account = self.locks.unlock(account_id, unlocked_by=admin.id)
        self.audit.record(
            "unlock", STATUS_SUCCESS, ctx, account_id=account.id, username=account.username, unlocked_by=admin.id
        )
        return account
