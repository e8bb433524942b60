from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from tenantauth.config import get_settings, reset_settings_cache
from tenantauth.logging import get_logger
from tenantauth.service.auth import AuthService
from tenantauth.service.authz import AuthorizationEngine
from tenantauth.service.catalog import seed_catalog
from tenantauth.service.passwords import SecretHasher
from tenantauth.service.registry import RoleRegistry
from tenantauth.service.retry import StoreRetry
from tenantauth.service.sessions import RefreshSessionStore
from tenantauth.service.tenancy import TenantContextResolver
from tenantauth.service.tokens import TokenCodec
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.postgres import PostgresStore
from tenantauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

# Local buckets are swept for refilled entries once this many exist
LOCAL_RATE_LIMIT_SWEEP_SIZE = 1024


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

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

        self.cache: Union[RedisCache, SyncRedisCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a pytest event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for login and refresh rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits are "
                    "tracked per process only."
                ),
                mode=fallback_mode,
            )

        self.retry = StoreRetry(
            self.settings.store_retry_attempts, self.settings.store_retry_backoff_ms
        )
        self.codec = TokenCodec(self.settings)
        self.hasher = SecretHasher.from_settings(self.settings)
        self.sessions = RefreshSessionStore(
            self.store, self.codec, self.hasher, self.settings, retry=self.retry
        )
        self.registry = RoleRegistry(self.store, retry=self.retry)
        self.resolver = TenantContextResolver(self.store, retry=self.retry)
        self.authz = AuthorizationEngine(self.store, self.resolver, retry=self.retry)
        self.auth = AuthService(
            self.store,
            self.settings,
            codec=self.codec,
            hasher=self.hasher,
            sessions=self.sessions,
            registry=self.registry,
            retry=self.retry,
        )
        if self.settings.seed_catalog_on_startup:
            seed_catalog(self.store)

        self._local_rate_limits: Dict[str, Tuple[float, datetime, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            catalog_seeded=self.settings.seed_catalog_on_startup,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the first check skips the lock once the
    runtime exists, the second prevents two threads creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache._sync_client.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    scope: Optional[str] = None,
) -> bool:
    """Enforce rate limits even when Redis is unavailable."""
    if limit <= 0:
        return True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        allowed, _, _ = await runtime.cache.check_rate_limit(
            key, limit, window_seconds, scope=scope
        )
        return allowed

    now = datetime.utcnow()
    bucket_key = f"{scope}:{key}" if scope else key
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        buckets = runtime._local_rate_limits
        if len(buckets) >= LOCAL_RATE_LIMIT_SWEEP_SIZE:
            _evict_refilled_buckets(buckets, now)
        tokens, last_ts, _ = buckets.get(bucket_key, (float(limit), now, now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        if tokens < 1:
            return False
        buckets[bucket_key] = (tokens - 1, now, now + timedelta(seconds=window_seconds))
        return True


def _evict_refilled_buckets(buckets: Dict[str, Tuple[float, datetime, datetime]], now) -> None:
    # A bucket untouched for a full window has refilled and equals a fresh one
    for bucket_key in [k for k, (_, _, full_at) in buckets.items() if full_at <= now]:
        del buckets[bucket_key]
