from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from tasktrack.config import Settings, get_settings, reset_settings_cache
from tasktrack.logging import get_logger
from tasktrack.service.account_guard import AccountGuard
from tasktrack.service.passwords import CredentialVerifier
from tasktrack.service.sessions import SessionManager
from tasktrack.service.tokens import TokenCodec
from tasktrack.storage.errors import ConstraintViolation
from tasktrack.storage.memory import MemoryStore
from tasktrack.storage.postgres import PostgresStore
from tasktrack.storage.redis_cache import Cache, RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of ``url`` for safe logging.

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


Store = Union[MemoryStore, PostgresStore]


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Optional[Cache] = self._connect_cache()
        self.default_role = self._seed_default_role()

        self.codec = TokenCodec(self.settings)
        self.verifier = CredentialVerifier(self.store)
        self.guard = AccountGuard(self.store, self.settings, cache=self.cache)
        self.sessions = SessionManager(
            self.store, self.codec, self.verifier, self.guard, self.settings
        )
        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            refresh_grace_seconds=self.settings.refresh_grace_seconds,
            refresh_retry_attempts=self.settings.refresh_retry_attempts,
        )

    def _connect_cache(self) -> Optional[Cache]:
        redis_error: Optional[Exception] = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode to avoid event loop binding issues
                if self.settings.test_mode:
                    cache: Cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except (RedisError, OSError) as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for shared login lockout state; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; login lockout is tracked "
                "on the user record only."
            ),
            mode=fallback_mode,
        )
        return None

    def _seed_default_role(self):
        name = self.settings.default_role_name
        role = self.store.get_role_by_name(name)
        if role:
            return role
        try:
            role = self.store.create_role(name, description="Default role for new users")
        except ConstraintViolation:
            # Another instance seeded it first
            return self.store.get_role_by_name(name)
        logger.info("default_role_seeded", role=name, role_id=role.id)
        return role

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path for the existing
    runtime, then a locked re-check before creating one.
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
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    runtime.cache.client.close()
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except RedisError as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
