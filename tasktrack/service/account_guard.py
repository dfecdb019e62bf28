from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from redis.exceptions import RedisError

from tasktrack.config import Settings
from tasktrack.logging import get_logger
from tasktrack.storage.models import User
from tasktrack.storage.redis_cache import Cache

logger = get_logger(__name__)


class GuardStore(Protocol):
    def record_login_failure(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout: timedelta,
        now: Optional[datetime] = None,
    ) -> Optional[User]: ...

    def reset_login_failures(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> Optional[User]: ...


class AccountGuard:
    """Failed-login counter with a temporary lockout.

    The counter and lock expiry live on the user row. When a Redis cache is
    configured the same count is mirrored there with an atomic script so
    instances sharing Redis agree on the lock.
    """

    def __init__(
        self, store: GuardStore, settings: Settings, cache: Optional[Cache] = None
    ) -> None:
        self.store = store
        self.cache = cache
        self.max_attempts = settings.max_login_attempts
        self.lockout = timedelta(minutes=settings.lockout_minutes)

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    async def is_locked(self, user: User, now: Optional[datetime] = None) -> bool:
        if user.is_locked(now or self._now()):
            return True
        if not self.cache:
            return False
        try:
            return await self.cache.check_login_lockout(user.id)
        except RedisError as exc:
            # Fail open; the stored lock expiry is still authoritative
            logger.warning("login_lockout_check_failed", user_id=user.id, error=str(exc))
            return False

    async def record_failure(
        self, user_id: str, now: Optional[datetime] = None
    ) -> Optional[User]:
        now = now or self._now()
        updated = self.store.record_login_failure(
            user_id, max_attempts=self.max_attempts, lockout=self.lockout, now=now
        )
        if self.cache:
            try:
                await self.cache.atomic_login_failure(
                    user_id,
                    max_attempts=self.max_attempts,
                    lockout_seconds=int(self.lockout.total_seconds()),
                )
            except RedisError as exc:
                logger.warning("login_failure_mirror_failed", user_id=user_id, error=str(exc))
        if updated and updated.lock_until == now + self.lockout:
            logger.warning(
                "account_lockout_triggered",
                user_id=user_id,
                attempts=updated.failed_login_attempts,
                locked_until=updated.lock_until.isoformat(),
            )
        return updated

    async def reset(self, user_id: str, now: Optional[datetime] = None) -> Optional[User]:
        updated = self.store.reset_login_failures(user_id, now=now or self._now())
        if self.cache:
            try:
                await self.cache.clear_login_failures(user_id)
            except RedisError as exc:
                logger.warning("login_failure_reset_failed", user_id=user_id, error=str(exc))
        return updated
