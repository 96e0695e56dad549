"""Owned LIFX subsystem: registry, discovery, coalesced updates and restore."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional

from .coalescer import UpdateCoalescer
from .color import Color, Hsbk
from .config import Config
from .devices import (
    ALL_MODES,
    COOL_WHITE_MODE,
    DeviceRegistry,
    DeviceSettings,
    RegistryEvents,
    mode_matches,
    validate_mode,
)
from .discovery import DiscoveryListener
from .logging import get_logger
from .metrics import (
    observe_dispatch_duration,
    record_dispatch_failure,
    record_restore,
    record_update_cycle,
    record_update_request,
    set_active_devices,
)
from .protocol import MAX_DURATION_MS
from .ratelimit import RateFloor
from .settings import SettingsStore
from .transport import LifxTransport, TransportError

COLOR_UPDATES = "color"
BRIGHTNESS_UPDATES = "brightness"


def _check_transition(transition_ms: int) -> None:
    if not 0 <= transition_ms <= MAX_DURATION_MS:
        raise ValueError(
            f"transition_ms must be between 0 and {MAX_DURATION_MS}; got {transition_ms}."
        )


class Controller:
    """Lifecycle owner for everything the LIFX subsystem keeps in memory.

    Constructed per run, started with :meth:`start` and torn down with
    :meth:`stop`. Update requests are grouped into two request classes,
    each backed by its own :class:`UpdateCoalescer`.
    """

    def __init__(
        self,
        config: Config,
        transport: LifxTransport,
        settings: SettingsStore,
        *,
        events: Optional[RegistryEvents] = None,
    ) -> None:
        self.config = config
        self.transport = transport
        self.settings = settings
        self.events = events or RegistryEvents()
        self.registry = DeviceRegistry()
        self.discovery = DiscoveryListener(transport, self.registry, settings, self.events)
        self.rate_floor = RateFloor(config.rate_floor)
        self.logger = get_logger("lifx")
        self.update_logger = get_logger("lifx.updates")
        self._coalescers: Dict[str, UpdateCoalescer] = {
            COLOR_UPDATES: UpdateCoalescer(COLOR_UPDATES),
            BRIGHTNESS_UPDATES: UpdateCoalescer(BRIGHTNESS_UPDATES),
        }
        self._started = False

    # ===== Lifecycle =====

    async def start(self) -> bool:
        """Load settings and start the transport. Returns ``False`` on failure."""

        self.logger.info("Attempting to start LIFX subsystem")
        try:
            await self.settings.load()
            self.discovery.attach()
            await self.transport.start()
        except Exception:
            self.logger.exception("LIFX subsystem failed to start")
            return False
        self._started = True
        self.logger.info("LIFX subsystem started")
        return True

    async def stop(self) -> None:
        await self.cancel_updates()
        await self.discovery.close()
        if self._started:
            await self.transport.stop()
        self.registry.clear()
        set_active_devices(0)
        self._started = False
        self.logger.info("LIFX subsystem stopped")

    # ===== Counters and snapshots =====

    @property
    def active_devices(self) -> int:
        return len(self.registry)

    @property
    def active(self) -> bool:
        return self._started and len(self.registry) > 0

    def snapshot(self) -> List[Dict[str, Any]]:
        return self.registry.snapshot()

    def status(self) -> Dict[str, Any]:
        return {
            "started": self._started,
            "active": self.active,
            "active_devices": self.active_devices,
            "updates_in_flight": {
                name: coalescer.in_flight for name, coalescer in self._coalescers.items()
            },
            "rate_floor_ms": round(self.rate_floor.interval * 1000, 3),
        }

    def coalescer(self, update_class: str) -> UpdateCoalescer:
        return self._coalescers[update_class]

    async def wait_idle(self) -> None:
        for coalescer in self._coalescers.values():
            await coalescer.wait_idle()

    async def cancel_updates(self) -> None:
        """Stop in-flight update cycles and drop their pending replays."""

        for coalescer in self._coalescers.values():
            await coalescer.cancel()

    # ===== Updates =====

    def request_update(
        self, mode: int, color: Color, transition_ms: int
    ) -> Optional[asyncio.Task[None]]:
        """Set every bulb in ``mode`` to ``color`` at the default colour temperature."""

        self._check_request(mode, transition_ms)
        if not self.active:
            record_update_request(COLOR_UPDATES, "inactive")
            self.update_logger.debug("Ignoring colour update; no active bulbs")
            return None
        hsbk = Hsbk.from_color(color, self.config.default_kelvin)
        return self._coalescers[COLOR_UPDATES].submit(
            lambda: self._run_cycle(COLOR_UPDATES, mode, hsbk, transition_ms)
        )

    def request_update_brightness(
        self, mode: int, color: Color, brightness: int, transition_ms: int
    ) -> Optional[asyncio.Task[None]]:
        """Set hue/saturation from ``color`` with an explicit 16-bit ``brightness``."""

        self._check_request(mode, transition_ms)
        if not self.active:
            record_update_request(BRIGHTNESS_UPDATES, "inactive")
            self.update_logger.debug("Ignoring brightness update; no active bulbs")
            return None
        kelvin = self.config.cool_kelvin if mode == COOL_WHITE_MODE else self.config.default_kelvin
        hsbk = Hsbk.from_color_brightness(color, brightness, kelvin)
        return self._coalescers[BRIGHTNESS_UPDATES].submit(
            lambda: self._run_cycle(BRIGHTNESS_UPDATES, mode, hsbk, transition_ms)
        )

    def _check_request(self, mode: int, transition_ms: int) -> None:
        if mode != ALL_MODES:
            validate_mode(mode)
        _check_transition(transition_ms)

    async def _run_cycle(
        self, update_class: str, mode: int, hsbk: Hsbk, transition_ms: int
    ) -> None:
        dispatched = 0
        failures = 0
        for record in self.registry.records():
            if not mode_matches(record.mode, mode):
                continue
            current = self.registry.get(record.address)
            if current is None:
                continue
            if not current.enabled:
                # A disabled bulb ends the whole cycle, not just its own dispatch.
                self.update_logger.info(
                    "Update cycle aborted at disabled bulb",
                    extra={
                        "update_class": update_class,
                        "device": current.address,
                        "dispatched": dispatched,
                    },
                )
                record_update_cycle(update_class, "aborted")
                return
            started = time.perf_counter()
            try:
                await self.rate_floor.pace(
                    self.transport.set_color(current.device, hsbk, transition_ms)
                )
            except (TransportError, OSError) as exc:
                failures += 1
                record_dispatch_failure(update_class)
                self.update_logger.warning(
                    "Bulb update failed",
                    extra={
                        "update_class": update_class,
                        "device": current.address,
                        "error": str(exc),
                    },
                )
            else:
                dispatched += 1
            finally:
                observe_dispatch_duration(update_class, time.perf_counter() - started)
        record_update_cycle(update_class, "completed")
        self.update_logger.debug(
            "Update cycle completed",
            extra={
                "update_class": update_class,
                "mode": mode,
                "dispatched": dispatched,
                "failures": failures,
            },
        )

    # ===== Restore =====

    async def restore_all(self, transition_ms: Optional[int] = None) -> int:
        """Put every registered bulb back to the state captured at discovery."""

        duration = self.config.restore_transition_ms if transition_ms is None else transition_ms
        _check_transition(duration)
        restored = 0
        for record in self.registry.records():
            try:
                await self.transport.set_color(record.device, record.restore.hsbk, duration)
            except (TransportError, OSError) as exc:
                record_restore("failed")
                self.logger.warning(
                    "Could not restore bulb",
                    extra={"device": record.address, "label": record.label, "error": str(exc)},
                )
                continue
            restored += 1
            record_restore("restored")
            self.logger.info(
                "Restored bulb", extra={"device": record.address, "label": record.label}
            )
        return restored

    # ===== Settings =====

    async def set_mode(self, address: str, mode: int) -> DeviceSettings:
        validate_mode(mode)
        return await self._update_settings(address, mode=mode)

    async def set_enabled(self, address: str, enabled: bool) -> DeviceSettings:
        return await self._update_settings(address, enabled=enabled)

    async def _update_settings(self, address: str, **changes: Any) -> DeviceSettings:
        record = self.registry.get(address)
        current = self.settings.get(address)
        if current is None:
            if record is None:
                raise KeyError(address)
            current = DeviceSettings(mode=record.mode, enabled=record.enabled)
        updated = DeviceSettings(
            mode=changes.get("mode", current.mode),
            enabled=changes.get("enabled", current.enabled),
        )
        await self.settings.save(address, updated, label=record.label if record else None)
        if address in self.registry:
            self.registry.update(address, mode=updated.mode, enabled=updated.enabled)
        self.logger.info(
            "Updated bulb settings",
            extra={"device": address, "mode": updated.mode, "enabled": updated.enabled},
        )
        self.events.changed()
        return updated
