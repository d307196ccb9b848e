"""
Polling policy for vendor jobs that finish asynchronously.

Every vendor client that submits a job and waits on it goes through
``PollPolicy.poll`` instead of carrying its own sleep loop.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import PollTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PollPolicy:
    max_attempts: int = 60
    interval: float = 5.0
    backoff: float = 1.0
    max_interval: Optional[float] = None
    # Suno-style jobs need time before the first check is worth making
    initial_delay: bool = False

    def delays(self):
        """Sleep before each attempt after the first (or before every one with initial_delay)"""
        delay = self.interval
        for attempt in range(self.max_attempts):
            yield attempt, delay
            delay = delay * self.backoff
            if self.max_interval is not None:
                delay = min(delay, self.max_interval)

    def budget(self) -> float:
        """Upper bound on total sleeping time, in seconds"""
        return sum(delay for _, delay in self.delays())

    async def poll(
        self,
        check: Callable[[int], Awaitable[Optional[T]]],
        description: str = "job",
    ) -> T:
        """
        Call ``check(attempt)`` until it returns something other than None.

        ``check`` raises to signal a terminal failure. Raises PollTimeout once
        ``max_attempts`` checks came back empty.
        """
        for attempt, delay in self.delays():
            if self.initial_delay:
                await asyncio.sleep(delay)
            result = await check(attempt)
            if result is not None:
                return result
            if attempt % 10 == 0:
                logger.info("[Poll] Waiting on %s, attempt %d/%d", description, attempt + 1, self.max_attempts)
            if not self.initial_delay and attempt < self.max_attempts - 1:
                await asyncio.sleep(delay)

        raise PollTimeout(f"{description} timed out after {self.max_attempts} attempts")
