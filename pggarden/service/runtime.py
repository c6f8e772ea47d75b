from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from pggarden.config import get_settings, reset_settings_cache
from pggarden.logging import get_logger
from pggarden.service.auth import AuthService
from pggarden.service.email import EmailService
from pggarden.service.identity import IdentityService
from pggarden.service.jobs import JobWorker
from pggarden.service.oauth import OAuthService
from pggarden.service.sessions import SessionService
from pggarden.storage.memory import MemoryStore
from pggarden.storage.postgres import PostgresStore
from pggarden.storage.redis_cache import MemorySessionCache, RedisCache, SyncRedisCache

logger = get_logger(__name__)

SessionCacheBackend = Union[RedisCache, SyncRedisCache, MemorySessionCache]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


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

        self.cache: SessionCacheBackend = self._connect_cache()

        self.identity = IdentityService(self.store)
        self.sessions = SessionService(
            self.store,
            self.cache,
            self.identity,
            ttl=timedelta(days=self.settings.session_ttl_days),
        )
        self.auth = AuthService(self.identity, self.sessions)
        self.oauth = OAuthService(self.identity, self.sessions, self.settings)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.job_worker = JobWorker(
            self.store,
            self.identity,
            self.email,
            poll_interval=self.settings.job_poll_interval_seconds,
        )

        logger.info(
            "runtime_initialized",
            cache_backend=type(self.cache).__name__,
            email_configured=self.email.is_configured,
            github_configured=self.settings.github_configured,
        )

    def _connect_cache(self) -> SessionCacheBackend:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client under tests avoids binding the pool to one event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=f"Running without Redis under {fallback_mode}; sessions are process-local.",
            mode=fallback_mode,
        )
        return MemorySessionCache()

    async def close(self) -> None:
        """Release the cache client and the database pool."""
        await self.cache.close()
        self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the first check skips the lock once the
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")

        if runtime is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.close())
            else:
                loop.create_task(runtime.close())

        runtime = Runtime()
        return runtime
