from __future__ import annotations

from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from hrmsauth.config import Settings
from hrmsauth.logging import get_logger
from hrmsauth.service.auth import AuthService
from hrmsauth.service.delivery import TokenDelivery
from hrmsauth.service.gate import AccessGate
from hrmsauth.service.passwords import PasswordService
from hrmsauth.service.rate_limit import (
    InMemoryRateCounter,
    RateCounter,
    RateLimiter,
    RateLimitPolicy,
    RedisRateCounter,
)
from hrmsauth.service.tokens import Clock, TokenService
from hrmsauth.storage.memory import MemoryStore
from hrmsauth.storage.postgres import PostgresStore
from hrmsauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Composition root: builds every service once and hands them to the app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Union[MemoryStore, PostgresStore, None] = None,
        clock: Optional[Clock] = None,
        delivery: Optional[TokenDelivery] = None,
        rate_counter: Optional[RateCounter] = None,
        passwords: Optional[PasswordService] = None,
    ) -> None:
        self.settings = settings or Settings.from_env()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if store is not None:
            self.store = store
        else:
            try:
                self.store = (
                    MemoryStore()
                    if self.settings.use_memory_store
                    else PostgresStore(self.settings.database_url)
                )
                logger.info(
                    "runtime_store_initialized",
                    store_type="memory" if self.settings.use_memory_store else "postgres",
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type="memory" if self.settings.use_memory_store else "postgres",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise

        self.cache: Optional[RedisCache] = None
        if rate_counter is None:
            rate_counter = self._build_rate_counter()
        self.rate_limiter = RateLimiter(rate_counter)

        self.tokens = TokenService(self.settings, clock=clock)
        self.auth = AuthService(
            self.store,
            self.tokens,
            self.settings,
            passwords=passwords,
            delivery=delivery,
        )
        self.gate = AccessGate(self.store, self.tokens)

        self.login_policy = RateLimitPolicy(
            "login", self.settings.login_rate_limit, self.settings.login_rate_window_seconds
        )
        self.forgot_password_policy = RateLimitPolicy(
            "forgot_password",
            self.settings.forgot_password_rate_limit,
            self.settings.forgot_password_rate_window_seconds,
        )
        self.reset_password_policy = RateLimitPolicy(
            "reset_password",
            self.settings.reset_password_rate_limit,
            self.settings.reset_password_rate_window_seconds,
        )
        logger.info("runtime_init_completed", redis_enabled=self.cache is not None)

    def _build_rate_counter(self) -> RateCounter:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
                return RedisRateCounter(cache)
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for shared rate limits; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; rate limits are per process only."
            ),
            mode=fallback_mode,
        )
        return InMemoryRateCounter()

    async def close(self) -> None:
        """Release the Redis client and the Postgres pool."""
        if self.cache is not None:
            await self.cache.close()
            self.cache = None
        if isinstance(self.store, PostgresStore):
            self.store.close()
