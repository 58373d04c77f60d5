from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from sessionguard.config import Settings, get_settings, reset_settings_cache
from sessionguard.logging import get_logger
from sessionguard.service.access_tokens import AccessTokenSigner
from sessionguard.service.blacklist import BlacklistCache
from sessionguard.service.cleanup import CleanupScheduler
from sessionguard.service.fingerprint import DeviceFingerprinter
from sessionguard.service.sessions import SessionService
from sessionguard.service.tokens import TokenService
from sessionguard.storage.memory import MemoryStore
from sessionguard.storage.postgres import PostgresStore
from sessionguard.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


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
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(parsed._replace(netloc=netloc))
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Composition root: builds the stores and services once and wires them together."""

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
                MemoryStore(fs_root=self.settings.shared_fs_root)
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

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = self._build_cache()

        self.signer = AccessTokenSigner(self.settings)
        self.fingerprinter = DeviceFingerprinter(self.settings.jwt_secret)
        self.blacklist = BlacklistCache(self.store, self.cache, self.settings)
        self.sessions = SessionService(
            self.store, self.blacklist, self.fingerprinter, self.signer, self.settings
        )
        self.tokens = TokenService(
            self.store,
            self.sessions,
            self.blacklist,
            self.fingerprinter,
            self.signer,
            self.settings,
        )
        self.cleanup = CleanupScheduler(
            self.tokens, self.sessions, self.blacklist, self.store, self.settings
        )

    def _build_cache(self) -> Optional[Union[RedisCache, SyncRedisCache]]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode so each asyncio.run() gets a usable cache
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
                "Redis is required for the fast revocation path; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true to use the durable store only."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; every blacklist check "
                "goes to the durable store."
            ),
            mode=fallback_mode,
        )
        return None

    async def close(self) -> None:
        self.cleanup.stop()
        if self.cache is not None:
            try:
                await self.cache.close()
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))
        if isinstance(self.store, PostgresStore):
            self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


async def close_runtime() -> None:
    """Close the Runtime singleton and forget it so the next ``get_runtime`` builds a fresh one."""
    global runtime
    with _runtime_lock:
        current, runtime = runtime, None
    if current is not None:
        await current.close()


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())
            except Exception as exc:
                # Connection may already be closed
                logger.debug("runtime_reset_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
