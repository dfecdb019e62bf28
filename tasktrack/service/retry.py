from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

from tasktrack.logging import get_logger
from tasktrack.service.errors import TokenAlreadyRotatedError

logger = get_logger(__name__)

T = TypeVar("T")


async def retry_on_rotation_conflict(
    operation: Callable[[], Awaitable[T]],
    *,
    retries: int,
    backoff_seconds: float,
) -> T:
    """Await ``operation``, retrying only when it loses a rotation race.

    Backoff grows linearly with the attempt number. Any exception other than
    ``TokenAlreadyRotatedError`` propagates on the first occurrence, and the
    last conflict is re-raised once ``retries`` extra attempts are spent.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except TokenAlreadyRotatedError:
            if attempt >= retries:
                raise
            attempt += 1
            delay = backoff_seconds * attempt
            logger.info("refresh_retry_scheduled", attempt=attempt, backoff_seconds=delay)
            if delay > 0:
                await asyncio.sleep(delay)
