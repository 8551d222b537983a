import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from checkout.core.exceptions import ConcurrencyConflict, StaleVersion

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 5,
    backoff: float = 0.01,
) -> T:
    """
    Run `operation` (a whole read-modify-write unit of work) again when it
    loses an optimistic version check. Only wrap operations that re-read
    their state on every call.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except StaleVersion as e:
            if attempt >= max_attempts:
                raise ConcurrencyConflict(
                    f"Order {e.order_id} kept changing, gave up after {attempt} attempts"
                ) from e
            logger.info(f"Version conflict on order {e.order_id}, retry {attempt}")
            await asyncio.sleep(backoff * attempt)
