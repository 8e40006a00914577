"""
Reliability utilities for outbound provider calls.

Includes the Circuit Breaker pattern and a retry helper used by the
routing/geocoding client.
"""

import time
import asyncio
import logging
from typing import Callable, Any, Sequence, Tuple, Type

logger = logging.getLogger(__name__)


class CircuitOpenError(Exception):
    pass


class CircuitBreaker:
    """
    Simple Circuit Breaker implementation.
    If 'failure_threshold' failures occur within 'reset_timeout', 
    the circuit opens and rejects calls for 'reset_timeout' seconds.
    """
    def __init__(self, failure_threshold: int = 5, reset_timeout: int = 60):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.failures = 0
        self.last_failure_time = 0
        self.state = "CLOSED" # CLOSED, OPEN, HALF_OPEN

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        if self.state == "OPEN":
            if time.time() - self.last_failure_time > self.reset_timeout:
                self.state = "HALF_OPEN"
            else:
                raise CircuitOpenError("Circuit is OPEN")

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise

        if self.state == "HALF_OPEN" or self.failures:
            self.reset_state()
        return result

    def record_failure(self):
        self.failures += 1
        self.last_failure_time = time.time()
        if self.state == "HALF_OPEN" or self.failures >= self.failure_threshold:
            if self.state != "OPEN":
                logger.warning("Circuit opened after %s failures", self.failures)
            self.state = "OPEN"

    def reset_state(self):
        self.failures = 0
        self.state = "CLOSED"


async def retry_async(
    func: Callable,
    *args,
    backoffs: Sequence[float] = (0.5, 0.7),
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    **kwargs
) -> Any:
    """
    Await func, retrying on the given exception types.
    
    One retry is made per entry in 'backoffs', sleeping that many seconds
    first. The last failure is re-raised once the schedule is exhausted.
    """
    attempt = 0
    while True:
        try:
            return await func(*args, **kwargs)
        except retry_on as exc:
            if attempt >= len(backoffs):
                raise
            delay = backoffs[attempt]
            attempt += 1
            logger.info("Retrying %s in %.1fs after %s (attempt %s)", getattr(func, "__name__", func), delay, type(exc).__name__, attempt + 1)
            await asyncio.sleep(delay)
