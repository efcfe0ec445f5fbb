from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from redis.exceptions import RedisError

from blogauth.config import Settings, get_settings, reset_settings_cache
from blogauth.logging import get_logger
from blogauth.service.audit import AuditLog
from blogauth.service.auth import AuthService
from blogauth.service.captcha import TurnstileVerifier
from blogauth.service.clock import Clock, system_clock
from blogauth.service.credentials import CredentialStore
from blogauth.service.email import EmailService
from blogauth.service.errors import RateLimitedError
from blogauth.service.locks import AccountLockManager
from blogauth.service.step_up import StepUpVerifier
from blogauth.service.tokens import TokenService
from blogauth.storage.base import AuthStore
from blogauth.storage.memory import MemoryStore
from blogauth.storage.postgres import PostgresStore
from blogauth.storage.redis_cache import RedisRateLimiter

logger = get_logger(__name__)


class Runtime:
    """Process-wide wiring of settings, storage and services."""

    def __init__(self, settings: Optional[Settings] = None, *, clock: Clock = system_clock) -> None:
        self.settings = settings or get_settings()
        self.clock = clock
        settings = self.settings

        self.store: AuthStore
        if settings.use_memory_store:
            self.store = MemoryStore(clock=clock)
        else:
            self.store = PostgresStore(settings.database_url)

        self.rate_limiter: Optional[RedisRateLimiter] = None
        if settings.redis_url:
            limiter = RedisRateLimiter(settings.redis_url)
            try:
                limiter.verify_connection()
                self.rate_limiter = limiter
            except (RedisError, OSError) as exc:
                if not settings.test_mode:
                    raise RuntimeError("Redis configured but unreachable; unset REDIS_URL or fix it") from exc
                logger.warning("redis_unavailable_using_local_rate_limits", error=str(exc))
        self._local_buckets: Dict[str, Tuple[float, datetime]] = {}
        self._local_bucket_lock = threading.Lock()

        self.email = EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )
        self.captcha = TurnstileVerifier(
            settings.turnstile_secret_key, verify_url=settings.turnstile_verify_url
        )
        self.credentials = CredentialStore(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
        )
        self.tokens = TokenService(
            access_secret=settings.jwt_secret,
            refresh_secret=settings.refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
            clock=clock,
        )
        self.audit = AuditLog(self.store, clock=clock)
        self.locks = AccountLockManager(self.store, clock=clock)
        self.step_up = StepUpVerifier(
            self.store,
            self.email,
            base_url=settings.app_base_url,
            ttl=timedelta(minutes=settings.login_challenge_ttl_minutes),
            clock=clock,
        )
        self.auth = AuthService(
            self.store,
            credentials=self.credentials,
            tokens=self.tokens,
            locks=self.locks,
            step_up=self.step_up,
            audit=self.audit,
            email=self.email,
            base_url=settings.app_base_url,
            max_login_age=timedelta(days=settings.risk_max_login_age_days),
            reset_ttl=timedelta(minutes=settings.password_reset_ttl_minutes),
            clock=clock,
        )

    def hit_local_bucket(self, key: str, limit: int, window_seconds: int) -> Tuple[bool, int]:
        """In-process token bucket used when Redis is not configured."""
        now = self.clock()
        refill_rate = float(limit) / float(window_seconds)
        with self._local_bucket_lock:
            tokens, last = self._local_buckets.get(key, (float(limit), now))
            elapsed = max(0.0, (now - last).total_seconds())
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            if tokens >= 1:
                self._local_buckets[key] = (tokens - 1, now)
                return True, 0
            self._local_buckets[key] = (tokens, now)
            return False, max(1, int((1 - tokens) / refill_rate))

    async def close(self) -> None:
        if self.rate_limiter is not None:
            await self.rate_limiter.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, clock: Clock = system_clock) -> Runtime:
    """Rebuild the runtime from a fresh environment read. Only allowed in TEST_MODE."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.rate_limiter is not None:
            try:
                asyncio.run(runtime.rate_limiter.close())
            except (RuntimeError, RedisError, OSError) as exc:
                logger.warning("runtime_reset_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, clock=clock)
        return runtime


async def check_rate_limit(runtime: Runtime, key: str, limit: int, window_seconds: int = 60) -> None:
    """Consume one request from ``key``'s bucket or raise :class:`RateLimitedError`.

    Redis errors fall back to the in-process bucket.
    """
    if limit <= 0:
        return
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", window_seconds=window_seconds)
        window_seconds = 60

    if runtime.rate_limiter is not None:
        try:
            allowed, retry_after = await runtime.rate_limiter.hit(key, limit, window_seconds)
        except (RedisError, OSError) as exc:
            logger.warning("rate_limit_backend_error", error=str(exc))
            allowed, retry_after = runtime.hit_local_bucket(key, limit, window_seconds)
    else:
        allowed, retry_after = runtime.hit_local_bucket(key, limit, window_seconds)

    if not allowed:
        logger.warning("rate_limited", bucket=key.split(":", 1)[0], retry_after=retry_after)
        raise RateLimitedError(
            "too many requests, try again later", detail={"retry_after": retry_after}
        )
