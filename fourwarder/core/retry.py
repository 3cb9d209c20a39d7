"""
Bounded exponential backoff for transport calls.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from fourwarder.core.errors import TransportTransient

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Retries TransportTransient up to `max_attempts` times in total.

    TransportPermanent and every other exception propagate on first sight.
    """

    def __init__(self, max_attempts: int = 5, base_delay: float = 1.0,
                 max_delay: float = 30.0, multiplier: float = 2.0,
                 sleep: Optional[Callable[[float], Awaitable[None]]] = None):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.sleep = sleep or asyncio.sleep

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before retrying after failed attempt number `attempt` (1-based)."""
        delay = min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))
        if retry_after is not None and retry_after > delay:
            delay = retry_after
        return delay

    async def run(self, operation: Callable[[], Awaitable[T]], description: str = "operation") -> T:
        attempt = 1
        while True:
            try:
                return await operation()
            except TransportTransient as e:
                if attempt >= self.max_attempts:
                    logger.warning(f"{description} failed after {attempt} attempts: {e}")
                    raise
                delay = self.delay_for(attempt, e.retry_after)
                logger.info(
                    f"{description} failed (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await self.sleep(delay)
                attempt += 1
