import asyncio
from dataclasses import replace

import pytest

from lifx_lan_sync.color import Color, Hsbk
from lifx_lan_sync.controller import BRIGHTNESS_UPDATES, COLOR_UPDATES, Controller
from lifx_lan_sync.devices import ALL_MODES, COOL_WHITE_MODE, DEFAULT_MODE, DeviceSettings
from lifx_lan_sync.protocol import MAX_DURATION_MS, LightState

RED = Color(255, 0, 0)


@pytest.mark.asyncio
async def test_red_update_reaches_single_bulb(controller, transport, discover) -> None:
    await discover("A1:B2")

    task = controller.request_update(ALL_MODES, RED, 500)
    assert task is not None
    await task

    assert transport.calls == [("A1:B2", Hsbk(0, 65535, 65535, 2700), 500)]
    assert not controller.coalescer(COLOR_UPDATES).in_flight


@pytest.mark.asyncio
async def test_requests_ignored_without_bulbs(controller, transport) -> None:
    assert controller.active is False
    assert controller.request_update(ALL_MODES, RED, 0) is None
    assert controller.request_update_brightness(ALL_MODES, RED, 100, 0) is None
    assert transport.calls == []


@pytest.mark.asyncio
async def test_update_targets_only_matching_mode(controller, transport, discover, settings) -> None:
    await settings.save("C3:D4", DeviceSettings(mode=5))
    await discover("A1:B2", "C3:D4")

    await controller.request_update(5, Color(0, 0, 255), 0)

    assert [call[0] for call in transport.calls] == ["C3:D4"]


@pytest.mark.asyncio
async def test_burst_of_requests_runs_one_replay_with_latest(controller, transport, discover) -> None:
    transport.set_delay = 0.02
    await discover("A1:B2")

    first = controller.request_update(ALL_MODES, RED, 100)
    await asyncio.sleep(0)
    for brightness in (10, 20, 30):
        again = controller.request_update(ALL_MODES, Color(brightness, 0, 0), brightness)
        assert again is first
    await first

    assert [call[2] for call in transport.calls] == [100, 30]
    assert controller.coalescer(COLOR_UPDATES).cycles_started == 2


@pytest.mark.asyncio
async def test_back_to_back_brightness_requests(controller, transport, discover, settings) -> None:
    await settings.save("A1:B2", DeviceSettings(mode=COOL_WHITE_MODE))
    await discover("A1:B2")

    first = controller.request_update_brightness(COOL_WHITE_MODE, RED, 1000, 0)
    second = controller.request_update_brightness(COOL_WHITE_MODE, Color(0, 255, 0), 2000, 0)
    assert second is first
    await first

    assert transport.calls == [
        ("A1:B2", Hsbk(0, 65535, 1000, 6000), 0),
        ("A1:B2", Hsbk(21845, 65535, 2000, 6000), 0),
    ]
    assert controller.coalescer(BRIGHTNESS_UPDATES).cycles_started == 2


@pytest.mark.asyncio
async def test_brightness_outside_cool_mode_uses_warm_kelvin(controller, transport, discover) -> None:
    await discover("A1:B2")
    await controller.request_update_brightness(ALL_MODES, RED, 500, 0)
    assert transport.calls[0][1].kelvin == 2700


@pytest.mark.asyncio
async def test_update_classes_run_independently(controller, transport, discover) -> None:
    transport.set_delay = 0.02
    await discover("A1:B2")
    color_task = controller.request_update(ALL_MODES, RED, 0)
    brightness_task = controller.request_update_brightness(ALL_MODES, RED, 1, 0)
    assert color_task is not brightness_task
    await asyncio.gather(color_task, brightness_task)
    assert len(transport.calls) == 2


@pytest.mark.asyncio
async def test_disabled_bulb_aborts_remaining_cycle(controller, transport, discover, settings) -> None:
    """A disabled bulb ends the cycle, so later bulbs are not updated either.

    Skipping only the disabled bulb would arguably be more useful; this test
    pins the current stop-at-first-disabled behaviour.
    """

    await settings.save("B", DeviceSettings(enabled=False))
    await discover("A", "B", "C")

    await controller.request_update(ALL_MODES, RED, 0)

    assert [call[0] for call in transport.calls] == ["A"]


@pytest.mark.asyncio
async def test_failed_dispatch_does_not_stop_cycle(controller, transport, discover) -> None:
    transport.failing.add("A")
    await discover("A", "B")
    await controller.request_update(ALL_MODES, RED, 0)
    assert [call[0] for call in transport.calls] == ["B"]


@pytest.mark.asyncio
async def test_bulb_lost_mid_cycle_is_skipped(controller, transport, discover) -> None:
    transport.set_delay = 0.02
    await discover("A", "B")
    task = controller.request_update(ALL_MODES, RED, 0)
    await asyncio.sleep(0.005)
    transport.lose("B")
    await task
    assert [call[0] for call in transport.calls] == ["A"]


@pytest.mark.asyncio
async def test_cycle_respects_rate_floor(config, transport, settings) -> None:
    controller = Controller(replace(config, rate_limit_per_second=20.0), transport, settings)
    assert await controller.start()
    try:
        for address in ("A", "B", "C"):
            transport.discover(address)
        await controller.discovery.drain()

        loop = asyncio.get_running_loop()
        start = loop.time()
        await controller.request_update(ALL_MODES, RED, 0)
        elapsed = loop.time() - start
    finally:
        await controller.stop()

    assert len(transport.calls) == 3
    assert elapsed >= 3 * 0.05 * 0.98
    gaps = [b - a for a, b in zip(transport.call_times, transport.call_times[1:])]
    assert all(gap >= 0.05 * 0.98 for gap in gaps)


@pytest.mark.asyncio
async def test_restore_all_replays_snapshots(controller, transport, discover) -> None:
    transport.states["A"] = LightState(100, 200, 300, 3500, True, "Desk")
    transport.states["B"] = LightState(400, 500, 600, 9000, False, "Hall")
    await discover("A", "B")
    await controller.request_update(ALL_MODES, RED, 0)
    transport.calls.clear()

    restored = await controller.restore_all()

    assert restored == 2
    assert transport.calls == [
        ("A", Hsbk(100, 200, 300, 3500), 1000),
        ("B", Hsbk(400, 500, 600, 9000), 1000),
    ]


@pytest.mark.asyncio
async def test_restore_skips_failures_and_honours_override(controller, transport, discover) -> None:
    await discover("A", "B")
    transport.failing.add("A")
    assert await controller.restore_all(transition_ms=0) == 1
    assert transport.calls[0][0] == "B"
    assert transport.calls[0][2] == 0


@pytest.mark.asyncio
async def test_set_mode_and_enabled_persist(controller, transport, discover, settings) -> None:
    changes: list[str] = []
    await discover("A1:B2")
    controller.events.add_change_listener(lambda: changes.append("changed"))

    await controller.set_mode("A1:B2", 4)
    await controller.set_enabled("A1:B2", False)

    record = controller.registry.get("A1:B2")
    assert (record.mode, record.enabled) == (4, False)
    assert settings.get("A1:B2") == DeviceSettings(mode=4, enabled=False)
    assert changes == ["changed", "changed"]


@pytest.mark.asyncio
async def test_settings_edits_validate_input(controller, discover) -> None:
    await discover("A1:B2")
    with pytest.raises(KeyError):
        await controller.set_mode("unknown", 2)
    with pytest.raises(ValueError):
        await controller.set_mode("A1:B2", ALL_MODES)
    with pytest.raises(ValueError):
        controller.request_update(ALL_MODES, RED, -1)


@pytest.mark.asyncio
async def test_remembered_bulb_can_be_edited_while_absent(controller, settings) -> None:
    await settings.save("A1:B2", DeviceSettings())
    updated = await controller.set_enabled("A1:B2", False)
    assert updated == DeviceSettings(mode=DEFAULT_MODE, enabled=False)


@pytest.mark.asyncio
async def test_start_failure_reports_false(config, transport, settings) -> None:
    transport.fail_start = True
    controller = Controller(config, transport, settings)
    assert await controller.start() is False
    transport.discover("A1:B2")
    await controller.discovery.drain()
    assert controller.active is False
    await controller.stop()


@pytest.mark.asyncio
async def test_status_reports_counters(controller, discover) -> None:
    await discover("A1:B2")
    status = controller.status()
    assert status["active"] is True
    assert status["active_devices"] == 1
    assert status["updates_in_flight"] == {"color": False, "brightness": False}


@pytest.mark.asyncio
async def test_transition_must_fit_wire_field(controller, transport, discover) -> None:
    await discover("A1:B2")
    with pytest.raises(ValueError, match="transition_ms"):
        controller.request_update(ALL_MODES, RED, MAX_DURATION_MS + 1)
    with pytest.raises(ValueError, match="transition_ms"):
        controller.request_update_brightness(ALL_MODES, RED, 100, MAX_DURATION_MS + 1)
    with pytest.raises(ValueError, match="transition_ms"):
        await controller.restore_all(MAX_DURATION_MS + 1)

    await controller.request_update(ALL_MODES, RED, MAX_DURATION_MS)
    assert transport.calls == [("A1:B2", Hsbk(0, 65535, 65535, 2700), MAX_DURATION_MS)]


@pytest.mark.asyncio
async def test_cancelled_cycles_do_not_repaint_after_restore(controller, transport, discover) -> None:
    transport.set_delay = 0.02
    await discover("A", "B")
    task = controller.request_update(ALL_MODES, RED, 0)
    controller.request_update(ALL_MODES, Color(0, 255, 0), 0)
    await asyncio.sleep(0.005)

    await controller.cancel_updates()
    assert task.done()
    assert not controller.coalescer(COLOR_UPDATES).in_flight

    assert await controller.restore_all(transition_ms=0) == 2
    await asyncio.sleep(0.05)

    snapshot = Hsbk(1000, 2000, 3000, 3500)
    assert transport.calls == [("A", snapshot, 0), ("B", snapshot, 0)]
