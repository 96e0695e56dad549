"""SQLite helpers and migrations for the LIFX LAN sync service."""

from __future__ import annotations

import asyncio
import shutil
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple, TypeVar

from .logging import get_logger

Migration = Callable[[sqlite3.Connection], None]

SCHEMA_VERSION_KEY = "schema_version"
BUSY_TIMEOUT_MS = 5000

T = TypeVar("T")


class DatabaseCorruptionError(RuntimeError):
    """Raised when a fatal SQLite corruption is detected."""


def _ensure_parent_dir(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _configure_connection(conn: sqlite3.Connection) -> None:
    """Apply connection-wide pragmas suitable for concurrent writers."""

    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")


def _ensure_meta_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """
    )


def _get_schema_version(conn: sqlite3.Connection) -> int:
    _ensure_meta_table(conn)
    row = conn.execute(
        "SELECT value FROM meta WHERE key = ?", (SCHEMA_VERSION_KEY,)
    ).fetchone()
    if row is None:
        return 0
    try:
        return int(row[0])
    except (TypeError, ValueError):
        return 0


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(
        """
        INSERT INTO meta (key, value)
        VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value
        """,
        (SCHEMA_VERSION_KEY, str(version)),
    )


def _migration_initial_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS device_settings (
            address TEXT PRIMARY KEY,
            mode INTEGER NOT NULL DEFAULT 1,
            enabled INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL DEFAULT (datetime('now')),
            updated_at TEXT NOT NULL DEFAULT (datetime('now'))
        );

        CREATE TRIGGER IF NOT EXISTS trg_device_settings_updated_at
        AFTER UPDATE ON device_settings
        WHEN old.updated_at = new.updated_at
        BEGIN
            UPDATE device_settings SET updated_at = datetime('now') WHERE address = NEW.address;
        END;
        """
    )


def _migration_device_labels(conn: sqlite3.Connection) -> None:
    columns = {row[1] for row in conn.execute("PRAGMA table_info(device_settings)")}
    if "label" not in columns:
        conn.execute("ALTER TABLE device_settings ADD COLUMN label TEXT")


MIGRATIONS: List[Tuple[int, Migration]] = [
    (1, _migration_initial_schema),
    (2, _migration_device_labels),
]


def apply_migrations(db_path: Path) -> None:
    """Apply any pending migrations to the SQLite database."""

    logger = get_logger("lifx.db")
    _ensure_parent_dir(db_path)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    _configure_connection(conn)
    try:
        current = _get_schema_version(conn)
        logger.info("Current schema version", extra={"version": current})

        for version, migration in _pending_migrations(current):
            logger.info("Applying migration", extra={"version": version})
            migration(conn)
            _set_schema_version(conn, version)
            conn.commit()
            logger.info("Migration applied", extra={"version": version})
    finally:
        conn.close()


def _pending_migrations(current_version: int) -> Iterable[Tuple[int, Migration]]:
    for version, migration in MIGRATIONS:
        if version > current_version:
            yield version, migration


class DatabaseManager:
    """Serializes access to a shared SQLite connection."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.logger = get_logger("lifx.db")
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()
        self._closed = False

    async def close(self) -> None:
        self._closed = True
        async with self._lock:
            conn = self._conn
            self._conn = None
        if conn is not None:
            await asyncio.to_thread(conn.close)

    async def run(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        """Run an operation with a shared connection, serialized by a lock."""

        if self._closed:
            raise RuntimeError("Database manager is closed")
        async with self._lock:
            try:
                return await asyncio.to_thread(self._run_with_connection, operation)
            except sqlite3.DatabaseError as exc:
                raise self._handle_db_error(exc) from exc

    def _run_with_connection(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        if self._conn is None:
            _ensure_parent_dir(self.db_path)
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            _configure_connection(self._conn)
        return operation(self._conn)

    def _handle_db_error(self, exc: sqlite3.DatabaseError) -> Exception:
        message = str(exc).lower()
        if any(
            key in message
            for key in ("malformed", "corrupt", "file is not a database")
        ):
            backup_path = self._backup_corrupt_db(message)
            return DatabaseCorruptionError(
                f"Database appears to be corrupted ({exc}); copied to {backup_path}. "
                "Restore the database from a backup or remove the corrupted file."
            )
        return exc

    def _backup_corrupt_db(self, reason: str) -> Path:
        timestamp = datetime.now(tz=timezone.utc).strftime("%Y%m%d%H%M%S")
        backup_path = self.db_path.with_suffix(f".corrupt-{timestamp}{self.db_path.suffix}")
        try:
            shutil.copy2(self.db_path, backup_path)
            self.logger.error(
                "Database corruption detected; backup created",
                extra={"reason": reason, "backup_path": str(backup_path)},
            )
        except OSError:
            self.logger.exception(
                "Failed to create corruption backup",
                extra={"reason": reason},
            )
        return backup_path
