import asyncio
import random

import pytest

from lifx_lan_sync.devices import DEFAULT_MODE, DeviceSettings
from lifx_lan_sync.protocol import LightState


@pytest.mark.asyncio
async def test_discovery_registers_bulb_with_snapshot(controller, transport, discover) -> None:
    transport.states["A1:B2"] = LightState(10, 20, 30, 4000, True, "Lamp")
    await discover("A1:B2")

    record = controller.registry.get("A1:B2")
    assert record is not None
    assert record.restore == transport.states["A1:B2"]
    assert record.mode == DEFAULT_MODE
    assert record.enabled is True
    assert record.version is not None and record.version.product_name == "LIFX A19"
    assert controller.active_devices == 1
    assert controller.active is True
    assert controller.settings.get("A1:B2") == DeviceSettings()


@pytest.mark.asyncio
async def test_discovery_uses_remembered_settings(controller, transport, settings) -> None:
    await settings.save("A1:B2", DeviceSettings(mode=7, enabled=False))
    transport.discover("A1:B2")
    await controller.discovery.drain()

    record = controller.registry.get("A1:B2")
    assert record is not None
    assert (record.mode, record.enabled) == (7, False)


@pytest.mark.asyncio
async def test_loss_removes_every_trace(controller, transport, discover) -> None:
    await discover("A1:B2", "C3:D4")
    transport.lose("A1:B2")
    await controller.discovery.drain()

    assert controller.registry.get("A1:B2") is None
    assert "A1:B2" not in [row["address"] for row in controller.snapshot()]
    assert controller.active_devices == 1


@pytest.mark.asyncio
async def test_loss_for_unknown_bulb_is_ignored(controller, transport, discover) -> None:
    changes: list[str] = []
    controller.events.add_change_listener(lambda: changes.append("changed"))
    await discover("A1:B2")
    transport.lose("FF:FF")
    await controller.discovery.drain()

    assert controller.active_devices == 1
    assert changes == ["changed"]


@pytest.mark.asyncio
async def test_activity_follows_first_and_last_bulb(controller, transport, discover) -> None:
    activity: list[bool] = []
    controller.events.add_activity_listener(activity.append)
    await discover("A1:B2", "C3:D4")
    transport.lose("A1:B2")
    transport.lose("C3:D4")
    await controller.discovery.drain()

    assert activity == [True, False]
    assert controller.active is False


@pytest.mark.asyncio
async def test_rediscovery_does_not_double_count(controller, transport, discover) -> None:
    await discover("A1:B2")
    transport.states["A1:B2"] = LightState(5, 5, 5, 3000, True, "Renamed")
    await discover("A1:B2")

    assert controller.active_devices == 1
    assert controller.registry.get("A1:B2").label == "Renamed"


@pytest.mark.asyncio
async def test_counter_tracks_registry_under_random_events(controller, transport) -> None:
    rng = random.Random(1234)
    addresses = [f"D0:73:D5:00:00:{index:02X}" for index in range(6)]
    for _ in range(200):
        address = rng.choice(addresses)
        if rng.random() < 0.6:
            transport.discover(address)
        else:
            transport.lose(address)
        if rng.random() < 0.3:
            await controller.discovery.drain()
            assert controller.active_devices == len(controller.registry.records())
    await controller.discovery.drain()
    assert controller.active_devices == len(controller.snapshot())
    assert controller.active == (controller.active_devices > 0)


@pytest.mark.asyncio
async def test_loss_during_pending_discovery_drops_registration(controller, transport) -> None:
    transport.query_delay = 0.05
    transport.discover("A1:B2")
    await asyncio.sleep(0)
    transport.lose("A1:B2")
    await controller.discovery.drain()

    assert controller.registry.get("A1:B2") is None
    assert controller.active_devices == 0


@pytest.mark.asyncio
async def test_unreachable_bulb_is_not_registered(controller, transport, discover) -> None:
    transport.unreachable.add("A1:B2")
    await discover("A1:B2")
    assert controller.active_devices == 0
    assert controller.discovery.pending == 0


@pytest.mark.asyncio
async def test_listeners_observe_registry_after_each_change(controller, transport, discover) -> None:
    changes: list[tuple[bool, int]] = []
    activity: list[tuple[bool, bool]] = []
    controller.events.add_change_listener(
        lambda: changes.append(("A1:B2" in controller.registry, controller.active_devices))
    )
    controller.events.add_activity_listener(
        lambda active: activity.append((active, "A1:B2" in controller.registry))
    )

    await discover("A1:B2")
    assert changes == [(True, 1)]

    transport.lose("A1:B2")
    await controller.discovery.drain()
    transport.lose("A1:B2")
    await controller.discovery.drain()

    assert changes == [(True, 1), (False, 0)]
    assert activity == [(True, True), (False, False)]
