"""Persisted per-bulb mode and enabled flags."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Dict, Optional

from .db import DatabaseManager
from .devices import DeviceSettings
from .logging import get_logger


class SettingsStore:
    """SQLite-backed ``address -> (mode, enabled)`` memory.

    Settings are loaded once at start-up and served from an in-memory
    cache; every change is written through to the database.
    """

    def __init__(self, db_path: Path) -> None:
        self.db = DatabaseManager(db_path)
        self.logger = get_logger("lifx.db")
        self._cache: Dict[str, DeviceSettings] = {}

    async def load(self) -> Dict[str, DeviceSettings]:
        self._cache = await self.db.run(self._load)
        self.logger.info("Loaded device settings", extra={"count": len(self._cache)})
        return dict(self._cache)

    def _load(self, conn: sqlite3.Connection) -> Dict[str, DeviceSettings]:
        rows = conn.execute(
            "SELECT address, mode, enabled FROM device_settings ORDER BY created_at ASC"
        ).fetchall()
        loaded: Dict[str, DeviceSettings] = {}
        for row in rows:
            try:
                loaded[row["address"]] = DeviceSettings(
                    mode=int(row["mode"]), enabled=bool(row["enabled"])
                )
            except ValueError:
                self.logger.warning(
                    "Ignoring invalid stored settings",
                    extra={"device": row["address"], "mode": row["mode"]},
                )
        return loaded

    def get(self, address: str) -> Optional[DeviceSettings]:
        return self._cache.get(address)

    async def save(
        self, address: str, settings: DeviceSettings, label: Optional[str] = None
    ) -> None:
        self._cache[address] = settings
        await self.db.run(lambda conn: self._save(conn, address, settings, label))

    def _save(
        self,
        conn: sqlite3.Connection,
        address: str,
        settings: DeviceSettings,
        label: Optional[str],
    ) -> None:
        conn.execute(
            """
            INSERT INTO device_settings (address, mode, enabled, label)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(address) DO UPDATE SET
                mode=excluded.mode,
                enabled=excluded.enabled,
                label=COALESCE(excluded.label, device_settings.label)
            """,
            (address, settings.mode, int(settings.enabled), label),
        )
        conn.commit()

    async def close(self) -> None:
        await self.db.close()
