from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest
import pytest_asyncio

from lifx_lan_sync.color import Hsbk
from lifx_lan_sync.config import Config
from lifx_lan_sync.controller import Controller
from lifx_lan_sync.db import apply_migrations
from lifx_lan_sync.protocol import DeviceVersion, LightState
from lifx_lan_sync.settings import SettingsStore
from lifx_lan_sync.transport import DeviceHandle, LifxTransport, TransportError


class FakeTransport(LifxTransport):
    """In-memory transport that records every call."""

    def __init__(self) -> None:
        super().__init__()
        self.started = False
        self.fail_start = False
        self.states: Dict[str, LightState] = {}
        self.versions: Dict[str, DeviceVersion] = {}
        self.calls: List[Tuple[str, Hsbk, int]] = []
        self.call_times: List[float] = []
        self.set_delay = 0.0
        self.query_delay = 0.0
        self.failing: Set[str] = set()
        self.unreachable: Set[str] = set()

    async def start(self) -> None:
        if self.fail_start:
            raise OSError("no network")
        self.started = True

    async def stop(self) -> None:
        self.started = False

    async def get_version(self, device: DeviceHandle) -> DeviceVersion:
        if self.query_delay:
            await asyncio.sleep(self.query_delay)
        if device.address in self.unreachable:
            raise TransportError(f"No reply from {device.address}")
        return self.versions.get(device.address, DeviceVersion(vendor=1, product=27, version=0))

    async def get_light_state(self, device: DeviceHandle) -> LightState:
        if device.address in self.unreachable:
            raise TransportError(f"No reply from {device.address}")
        return self.states.get(device.address, make_state(device.address))

    async def set_color(self, device: DeviceHandle, color: Hsbk, duration_ms: int) -> None:
        self.call_times.append(asyncio.get_running_loop().time())
        if self.set_delay:
            await asyncio.sleep(self.set_delay)
        if device.address in self.failing:
            raise TransportError(f"No acknowledgement from {device.address}")
        self.calls.append((device.address, color, duration_ms))

    def discover(self, address: str, ip: Optional[str] = None) -> DeviceHandle:
        device = DeviceHandle(address=address, ip=ip or "192.168.1.10")
        self._notify_discovered(device)
        return device

    def lose(self, address: str, ip: Optional[str] = None) -> None:
        self._notify_lost(DeviceHandle(address=address, ip=ip or "192.168.1.10"))


def make_state(label: str = "bulb", **overrides: int) -> LightState:
    values = {"hue": 1000, "saturation": 2000, "brightness": 3000, "kelvin": 3500}
    values.update(overrides)
    return LightState(power=True, label=label, **values)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "devices.sqlite3"
    apply_migrations(path)
    return path


@pytest.fixture
def config(db_path: Path) -> Config:
    return Config(db_path=db_path, rate_limit_per_second=1000.0, restore_on_shutdown=False)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest_asyncio.fixture
async def settings(db_path: Path):
    store = SettingsStore(db_path)
    yield store
    await store.close()


@pytest_asyncio.fixture
async def controller(config: Config, transport: FakeTransport, settings: SettingsStore):
    controller = Controller(config, transport, settings)
    assert await controller.start()
    yield controller
    await controller.stop()


@pytest.fixture
def discover(controller: Controller, transport: FakeTransport):
    async def _discover(*addresses: str) -> None:
        for address in addresses:
            transport.discover(address)
            await controller.discovery.drain()

    return _discover
