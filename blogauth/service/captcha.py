from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from blogauth.logging import get_logger

logger = get_logger(__name__)

TURNSTILE_VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"


@dataclass
class CaptchaResult:
    success: bool
    error_codes: List[str] = field(default_factory=list)
    hostname: Optional[str] = None


class TurnstileVerifier:
    """Server-side verification of Cloudflare Turnstile tokens.

    With no secret configured every token passes, so development and tests
    need no Cloudflare account.
    """

    def __init__(
        self,
        secret_key: Optional[str],
        *,
        verify_url: str = TURNSTILE_VERIFY_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.secret_key = secret_key
        self.verify_url = verify_url
        self.timeout = timeout
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.secret_key)

    async def verify(self, token: Optional[str], *, remote_ip: Optional[str] = None) -> CaptchaResult:
        if not self.enabled:
            return CaptchaResult(success=True)
        if not token:
            return CaptchaResult(success=False, error_codes=["missing-input-response"])

        payload = {"secret": self.secret_key, "response": token}
        if remote_ip:
            payload["remoteip"] = remote_ip
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.verify_url, json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error("turnstile_http_error", status_code=exc.response.status_code)
            return CaptchaResult(success=False, error_codes=["verification-request-failed"])
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("turnstile_request_failed", error_type=type(exc).__name__, error=str(exc))
            return CaptchaResult(success=False, error_codes=["verification-request-failed"])

        result = CaptchaResult(
            success=bool(data.get("success")),
            error_codes=list(data.get("error-codes") or []),
            hostname=data.get("hostname"),
        )
        if not result.success:
            logger.warning("turnstile_rejected", error_codes=result.error_codes)
        return result
