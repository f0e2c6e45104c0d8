from __future__ import annotations

import asyncio
import threading
from typing import Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from sessionguard.config import Settings, get_settings, reset_settings_cache
from sessionguard.logging import get_logger
from sessionguard.service.passwords import Argon2PasswordVerifier
from sessionguard.service.sessions import SessionService
from sessionguard.service.tokens import TokenIssuer
from sessionguard.storage.memory import MemoryCache, MemoryStore
from sessionguard.storage.postgres import PostgresStore
from sessionguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

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
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=None if self.settings.test_mode else self.settings.shared_fs_root
                )
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._build_cache()
        self.passwords = Argon2PasswordVerifier()
        self.issuer = TokenIssuer(self.settings)
        self.sessions = SessionService(
            directory=self.store,
            store=self.store,
            cache=self.cache,
            issuer=self.issuer,
            passwords=self.passwords,
            settings=self.settings,
        )
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            cache_type=type(self.cache).__name__,
            access_token_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_token_ttl_seconds=self.settings.refresh_token_ttl_seconds,
            treat_unknown_refresh_as_revoked=self.settings.treat_unknown_refresh_as_revoked,
        )

    def _build_cache(self) -> Union[RedisCache, MemoryCache]:
        prefix = self.settings.revocation_cache_prefix
        # Test runs never share markers through an external Redis
        if self.settings.test_mode:
            return MemoryCache(prefix=prefix)

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url, prefix=prefix)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for the revocation cache; start Redis or set "
                "ALLOW_REDIS_FALLBACK_DEV=true for a process-local fallback."
            ) from redis_error

        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                "Running without Redis under ALLOW_REDIS_FALLBACK_DEV; revocation "
                "markers are process-local and every miss is answered by the store."
            ),
        )
        return MemoryCache(prefix=prefix)

    async def close(self) -> None:
        try:
            await self.cache.close()
        except Exception as exc:
            logger.warning("runtime_cache_close_failed", error=str(exc))
        self.store.close()


async def check_rate_limit(
    runtime: Runtime, key: str, limit: int, window_seconds: int
) -> Tuple[bool, int, int]:
    """Count one attempt for ``key``; returns ``(allowed, remaining, reset_seconds)``.

    A limit of zero or less disables the check. The counter lives in the
    revocation cache, so a cache outage admits the attempt rather than
    locking every client out.
    """
    if not runtime.settings.rate_limit_enabled or limit <= 0:
        return True, limit, 0
    try:
        return await asyncio.wait_for(
            runtime.cache.check_rate_limit(key, limit, window_seconds),
            timeout=runtime.settings.cache_operation_timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.warning("rate_limit_unavailable", key=key, error="timeout")
    except Exception as exc:
        logger.warning("rate_limit_unavailable", key=key, error=str(exc))
    return True, limit, 0


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
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
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
