"""Entrypoint for the LIFX LAN sync service."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from typing import Iterable, Optional

from .api import ApiService
from .config import Config, load_config
from .controller import Controller
from .db import apply_migrations
from .logging import configure_logging, get_logger
from .settings import SettingsStore
from .transport import LanTransport


async def _run_async(config: Config) -> None:
    logger = get_logger("lifx")
    stop_event = asyncio.Event()
    settings = SettingsStore(config.db_path)
    controller = Controller(config, LanTransport(config), settings)

    def _request_shutdown(sig: Optional[str] = None) -> None:
        if not stop_event.is_set():
            logger.warning("Shutdown requested", extra={"signal": sig})
            stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _request_shutdown, sig.name)

    started = await controller.start()
    api: Optional[ApiService] = None
    if config.api_enabled:
        api = ApiService(config, controller)
        await api.start()
    logger.info(
        "Sync service started",
        extra={
            "lifx_enabled": started,
            "api_port": config.api_port if config.api_enabled else None,
            "db_path": str(config.db_path),
            "dry_run": config.dry_run,
        },
    )

    try:
        await stop_event.wait()
    finally:
        if api is not None:
            await api.stop()
        await controller.cancel_updates()
        if started and config.restore_on_shutdown:
            restored = await controller.restore_all()
            logger.info("Restored bulbs before exit", extra={"restored": restored})
        await controller.stop()
        await settings.close()
        logger.info("Sync service shutdown complete")


def run(cli_args: Optional[Iterable[str]] = None) -> None:
    """Console-script entrypoint."""

    config = load_config(cli_args)
    configure_logging(config)
    logger = get_logger("lifx")
    logger.info("Loaded configuration", extra={"config": config.logging_dict()})

    apply_migrations(config.db_path)
    if config.migrate_only:
        logger.info("Migrations complete; exiting per configuration.")
        return
    try:
        asyncio.run(_run_async(config))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")


if __name__ == "__main__":
    run()
