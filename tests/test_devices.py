import sqlite3
from pathlib import Path

import pytest

from lifx_lan_sync.db import apply_migrations
from lifx_lan_sync.devices import (
    ALL_MODES,
    COOL_WHITE_MODE,
    DEFAULT_MODE,
    DeviceRecord,
    DeviceRegistry,
    DeviceSettings,
    RegistryEvents,
    mode_matches,
    validate_mode,
)
from lifx_lan_sync.protocol import LightState
from lifx_lan_sync.settings import SettingsStore
from lifx_lan_sync.transport import DeviceHandle


def _record(address: str, mode: int = DEFAULT_MODE, enabled: bool = True) -> DeviceRecord:
    return DeviceRecord(
        device=DeviceHandle(address=address, ip="10.0.0.2"),
        restore=LightState(1, 2, 3, 3500, True, f"bulb {address}"),
        mode=mode,
        enabled=enabled,
    )


def test_mode_constants_and_matching() -> None:
    assert DEFAULT_MODE == 1
    assert COOL_WHITE_MODE == 10
    assert ALL_MODES == 100
    assert mode_matches(3, 3)
    assert mode_matches(3, ALL_MODES)
    assert not mode_matches(3, 4)


@pytest.mark.parametrize("mode", [-1, ALL_MODES, 250, True, "1"])
def test_invalid_modes_rejected(mode: object) -> None:
    with pytest.raises(ValueError):
        validate_mode(mode)  # type: ignore[arg-type]


def test_registry_count_matches_records() -> None:
    registry = DeviceRegistry()
    assert registry.register(_record("A")) is True
    assert registry.register(_record("B")) is True
    assert registry.register(_record("A", mode=5)) is False
    assert len(registry) == 2
    assert registry.get("A").mode == 5
    assert [record.address for record in registry.records()] == ["A", "B"]

    removed = registry.remove("A")
    assert removed is not None and removed.address == "A"
    assert "A" not in registry
    assert registry.get("A") is None
    assert registry.remove("A") is None
    assert len(registry) == 1


def test_registry_update_changes_mode_and_enabled() -> None:
    registry = DeviceRegistry()
    registry.register(_record("A"))
    updated = registry.update("A", mode=COOL_WHITE_MODE, enabled=False)
    assert updated is not None
    assert (updated.mode, updated.enabled) == (COOL_WHITE_MODE, False)
    assert registry.update("missing", mode=2) is None
    with pytest.raises(ValueError):
        registry.update("A", mode=ALL_MODES)


def test_snapshot_is_plain_data() -> None:
    registry = DeviceRegistry()
    registry.register(_record("A"))
    row = registry.snapshot()[0]
    assert row["address"] == "A"
    assert row["label"] == "bulb A"
    assert row["restore"]["kelvin"] == 3500
    assert row["product"] is None


def test_listener_failures_do_not_stop_others() -> None:
    events = RegistryEvents()
    seen: list[object] = []

    def _broken() -> None:
        raise RuntimeError("boom")

    events.add_change_listener(_broken)
    events.add_change_listener(lambda: seen.append("changed"))
    events.add_activity_listener(lambda active: seen.append(active))
    events.changed()
    events.activity(False)
    assert seen == ["changed", False]


@pytest.mark.asyncio
async def test_settings_persist_across_stores(tmp_path: Path) -> None:
    db_path = tmp_path / "devices.sqlite3"
    apply_migrations(db_path)

    store = SettingsStore(db_path)
    assert await store.load() == {}
    await store.save("D0:73:D5:00:00:01", DeviceSettings(mode=4, enabled=False), label="Desk")
    await store.save("D0:73:D5:00:00:02", DeviceSettings())
    await store.close()

    reopened = SettingsStore(db_path)
    loaded = await reopened.load()
    await reopened.close()
    assert loaded["D0:73:D5:00:00:01"] == DeviceSettings(mode=4, enabled=False)
    assert loaded["D0:73:D5:00:00:02"] == DeviceSettings(mode=DEFAULT_MODE, enabled=True)

    conn = sqlite3.connect(db_path)
    try:
        label = conn.execute(
            "SELECT label FROM device_settings WHERE address = ?", ("D0:73:D5:00:00:01",)
        ).fetchone()[0]
    finally:
        conn.close()
    assert label == "Desk"


@pytest.mark.asyncio
async def test_invalid_stored_modes_are_skipped(tmp_path: Path) -> None:
    db_path = tmp_path / "devices.sqlite3"
    apply_migrations(db_path)
    conn = sqlite3.connect(db_path)
    conn.execute(
        "INSERT INTO device_settings (address, mode, enabled) VALUES (?, ?, ?)",
        ("bad", 500, 1),
    )
    conn.commit()
    conn.close()

    store = SettingsStore(db_path)
    loaded = await store.load()
    await store.close()
    assert "bad" not in loaded


def test_migrations_are_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "devices.sqlite3"
    apply_migrations(db_path)
    apply_migrations(db_path)
    conn = sqlite3.connect(db_path)
    try:
        columns = {row[1] for row in conn.execute("PRAGMA table_info(device_settings)")}
    finally:
        conn.close()
    assert {"address", "mode", "enabled", "label", "created_at", "updated_at"} <= columns
