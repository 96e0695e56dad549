"""Per-dispatch rate floor."""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")


class RateFloor:
    """Make every paced operation last at least ``interval`` seconds.

    The operation and a sleep run concurrently; :meth:`pace` returns once
    both have finished, so a caller dispatching to bulbs one after another
    never exceeds ``1 / interval`` requests per second, even when the
    network answers instantly or fails immediately.
    """

    def __init__(self, interval: float) -> None:
        if interval < 0:
            raise ValueError("Rate floor interval cannot be negative")
        self.interval = interval

    @classmethod
    def per_second(cls, rate: float) -> "RateFloor":
        if rate <= 0:
            raise ValueError("Rate must be positive")
        return cls(1.0 / rate)

    async def pace(self, operation: Awaitable[T]) -> T:
        """Await ``operation`` alongside the floor delay and return its result.

        An exception from ``operation`` is re-raised only after the floor
        has elapsed.
        """

        outcome, _ = await asyncio.gather(
            operation, asyncio.sleep(self.interval), return_exceptions=True
        )
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome
