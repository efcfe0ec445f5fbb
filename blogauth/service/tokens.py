from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from blogauth.logging import get_logger
from blogauth.service.clock import Clock, system_clock
from blogauth.storage.models import Account

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_in: int  # seconds


class TokenService:
    """Issues and validates HS256 access and refresh tokens.

    Access and refresh tokens are signed with different secrets, so a token
    of one kind never verifies as the other even if the ``typ`` claim were
    forged. Every verification failure collapses to ``None``.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        issuer: str,
        audience: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        clock: Clock = system_clock,
        leeway: timedelta = timedelta(0),
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh tokens require distinct secrets")
        self._secrets = {ACCESS: access_secret.encode(), REFRESH: refresh_secret.encode()}
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.clock = clock
        self.leeway = leeway

    def issue_access(self, account: Account) -> IssuedToken:
        claims = {
            "id": account.id,
            "username": account.username,
            "email": account.email,
            "role_id": account.role_id,
        }
        return self._issue(ACCESS, claims, self.access_ttl)

    def issue_refresh(self, account_id: int) -> IssuedToken:
        # jti keeps tokens minted in the same second distinct
        return self._issue(REFRESH, {"id": account_id, "jti": uuid.uuid4().hex}, self.refresh_ttl)

    def verify_access(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        return self._verify(ACCESS, token)

    def verify_refresh(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        return self._verify(REFRESH, token)

    def _issue(self, kind: str, claims: dict[str, Any], ttl: timedelta) -> IssuedToken:
        now = self.clock()
        payload = {
            **claims,
            "typ": kind,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }
        return IssuedToken(token=self._encode(kind, payload), expires_in=int(ttl.total_seconds()))

    @staticmethod
    def _b64encode(raw: bytes) -> str:
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()

    @staticmethod
    def _b64decode(segment: str) -> bytes:
        padding = "=" * (-len(segment) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, kind: str, signing_input: str) -> str:
        digest = hmac.new(self._secrets[kind], signing_input.encode(), hashlib.sha256).digest()
        return self._b64encode(digest)

    def _encode(self, kind: str, payload: dict[str, Any]) -> str:
        header = self._b64encode(json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode())
        body = self._b64encode(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header}.{body}"
        return f"{signing_input}.{self._sign(kind, signing_input)}"

    def _verify(self, kind: str, token: Optional[str]) -> Optional[dict[str, Any]]:
        # Non-ASCII never appears in a token we minted; compare_digest would raise on it
        if not token or not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._b64decode(header_b64))
        except (ValueError, TypeError):
            return None
        # Only HS256; rejects "none" and algorithm-confusion tokens
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", kind=kind)
            return None

        expected = self._sign(kind, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected, sig_b64):
            return None

        try:
            payload = json.loads(self._b64decode(payload_b64))
        except (ValueError, TypeError):
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("typ") != kind:
            return None
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            return None
        if not isinstance(payload.get("id"), int):
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= self.clock().timestamp() - self.leeway.total_seconds():
            return None
        return payload
