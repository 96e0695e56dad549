"""Single-flight execution of update cycles with latest-wins replay."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Awaitable, Callable, Optional

from .logging import get_logger
from .metrics import record_update_cycle, record_update_request

Cycle = Callable[[], Awaitable[None]]


class UpdateCoalescer:
    """Run at most one update cycle at a time for one request class.

    While a cycle is in flight, further submissions overwrite a single
    pending slot instead of queueing; when the cycle finishes, the same task
    consumes the slot and runs the newest request once. Lighting commands are
    idempotent state setters, so intermediate requests are simply dropped.

    ``submit`` tests and sets the in-flight task without awaiting in between,
    which makes the check atomic on the event loop.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.logger = get_logger("lifx.updates")
        self._task: Optional[asyncio.Task[None]] = None
        self._pending: Optional[Cycle] = None
        self.cycles_started = 0

    @property
    def in_flight(self) -> bool:
        return self._task is not None

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def submit(self, cycle: Cycle) -> asyncio.Task[None]:
        """Start ``cycle`` now, or park it as the replay for the running task."""

        if self._task is not None:
            outcome = "superseded" if self._pending is not None else "coalesced"
            self._pending = cycle
            record_update_request(self.name, outcome)
            self.logger.debug(
                "Update request deferred",
                extra={"update_class": self.name, "outcome": outcome},
            )
            return self._task
        record_update_request(self.name, "started")
        self._task = asyncio.create_task(self._drain(cycle), name=f"lifx-update-{self.name}")
        return self._task

    async def _drain(self, cycle: Cycle) -> None:
        current: Optional[Cycle] = cycle
        try:
            while current is not None:
                self.cycles_started += 1
                try:
                    await current()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    record_update_cycle(self.name, "error")
                    self.logger.exception(
                        "Update cycle failed", extra={"update_class": self.name}
                    )
                current, self._pending = self._pending, None
        finally:
            self._task = None
            self._pending = None

    async def wait_idle(self) -> None:
        """Wait until the in-flight cycle and any replay have finished."""

        task = self._task
        if task is not None:
            await asyncio.wait({task})

    async def cancel(self) -> None:
        """Stop the running cycle and drop any pending replay."""

        self._pending = None
        task = self._task
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
