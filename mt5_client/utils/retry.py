import asyncio
import random
from dataclasses import dataclass

from mt5_client.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff with jitter.

    ``delay(attempt)`` maps a 1-based retry number to a wait in seconds:
    base_delay * 2^(attempt-1), capped at max_delay, plus up to ``jitter``
    seconds of random spread. Call sites only ask for the delay; they never
    compute it.

    Args:
        base_delay: Wait before the first retry (seconds)
        max_delay: Upper bound before jitter (seconds)
        jitter: Maximum random addition (seconds)
    """
    base_delay: float = 0.5
    max_delay: float = 5.0
    jitter: float = 0.1

    def delay(self, attempt: int) -> float:
        if attempt < 1:
            return 0.0
        backoff = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter > 0:
            backoff += random.uniform(0, self.jitter)
        return backoff

    async def sleep(self, attempt: int, **context) -> float:
        wait = self.delay(attempt)
        logger.debug("BACKOFF_SLEEP", attempt=attempt, wait=f"{wait:.2f}s", **context)
        await asyncio.sleep(wait)
        return wait

    @classmethod
    def immediate(cls) -> "BackoffPolicy":
        """No waiting at all (tests, tight loops under an outer deadline)."""
        return cls(base_delay=0.0, max_delay=0.0, jitter=0.0)
