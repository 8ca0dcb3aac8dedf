"""Exponential backoff used for activity faults and storage retries."""

import asyncio
import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 1.0
    exponential_base: float = 2.0
    max_delay: float = 60.0
    jitter: bool = True

    def delay_for(self, attempt: int) -> float:
        delay = min(
            self.initial_delay * (self.exponential_base ** attempt),
            self.max_delay
        )
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)
        return delay

    async def wait(self, attempt: int) -> None:
        await asyncio.sleep(self.delay_for(attempt))

