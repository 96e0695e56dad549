"""Discovery listener turning transport events into registry changes."""

from __future__ import annotations

import asyncio
import contextlib
from functools import partial
from typing import Coroutine, Dict, Set

from .devices import DeviceRecord, DeviceRegistry, DeviceSettings, RegistryEvents
from .logging import get_logger
from .metrics import record_discovery_event, set_active_devices
from .settings import SettingsStore
from .transport import DeviceHandle, LifxTransport, TransportError


class DiscoveryListener:
    """Handle bulb discovered/lost notifications.

    Transport callbacks are synchronous; each event is handled in its own
    supervised task so failures are logged instead of vanishing. Events for
    different bulbs may interleave freely. A loss that arrives while the
    discovery of the same bulb is still querying it cancels that
    registration.
    """

    def __init__(
        self,
        transport: LifxTransport,
        registry: DeviceRegistry,
        settings: SettingsStore,
        events: RegistryEvents,
    ) -> None:
        self.transport = transport
        self.registry = registry
        self.settings = settings
        self.events = events
        self.logger = get_logger("lifx.discovery")
        self._tasks: Set[asyncio.Task[None]] = set()
        self._generation: Dict[str, int] = {}

    def attach(self) -> None:
        self.transport.set_listeners(self.device_discovered, self.device_lost)

    def device_discovered(self, device: DeviceHandle) -> None:
        self._spawn(self._handle_discovered(device), "discovered", device)

    def device_lost(self, device: DeviceHandle) -> None:
        self._spawn(self._handle_lost(device), "lost", device)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every outstanding event handler to finish."""

        while self._tasks:
            await asyncio.wait(set(self._tasks))

    async def close(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def _spawn(
        self, handler: Coroutine[object, object, None], event: str, device: DeviceHandle
    ) -> None:
        task = asyncio.get_running_loop().create_task(
            handler, name=f"lifx-{event}-{device.address}"
        )
        self._tasks.add(task)
        task.add_done_callback(partial(self._task_done, event, device.address))

    def _task_done(self, event: str, address: str, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            record_discovery_event("failed")
            self.logger.error(
                "Discovery event handler failed",
                extra={"event": event, "device": address},
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def _handle_discovered(self, device: DeviceHandle) -> None:
        address = device.address
        generation = self._generation.get(address, 0)
        try:
            version = await self.transport.get_version(device)
            state = await self.transport.get_light_state(device)
        except (TransportError, OSError) as exc:
            record_discovery_event("failed")
            self.logger.warning(
                "Could not query discovered bulb; ignoring",
                extra={"device": address, "ip": device.ip, "error": str(exc)},
            )
            return

        settings = self.settings.get(address)
        if settings is None:
            settings = DeviceSettings()
            await self.settings.save(address, settings, label=state.label)

        if self._generation.get(address, 0) != generation:
            record_discovery_event("ignored")
            self.logger.debug("Bulb lost before registration completed", extra={"device": address})
            return

        record = DeviceRecord(
            device=device,
            restore=state,
            mode=settings.mode,
            enabled=settings.enabled,
            version=version,
        )
        was_active = len(self.registry) > 0
        self.registry.register(record)
        set_active_devices(len(self.registry))
        record_discovery_event("discovered")
        self.logger.info(
            "Bulb found",
            extra={
                "device": address,
                "label": state.label,
                "product": version.product_name,
                "mode": settings.mode,
            },
        )
        if not was_active:
            self.logger.info("LIFX subsystem enabled")
            self.events.activity(True)
        self.events.changed()

    async def _handle_lost(self, device: DeviceHandle) -> None:
        address = device.address
        self._generation[address] = self._generation.get(address, 0) + 1
        record = self.registry.remove(address)
        if record is None:
            record_discovery_event("ignored")
            self.logger.debug("Loss reported for unknown bulb", extra={"device": address})
            return
        set_active_devices(len(self.registry))
        record_discovery_event("lost")
        self.logger.info("Bulb lost", extra={"device": address, "label": record.label})
        if len(self.registry) == 0:
            self.logger.info("LIFX subsystem disabled (no bulbs)")
            self.events.activity(False)
        self.events.changed()
