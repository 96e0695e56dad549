"""In-memory registry of discovered bulbs."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .logging import get_logger
from .protocol import DeviceVersion, LightState
from .transport import DeviceHandle

DEFAULT_MODE = 1
COOL_WHITE_MODE = 10
# Matches every bulb in an update request; never stored as a bulb's mode.
ALL_MODES = 100


def validate_mode(mode: int) -> int:
    """Return ``mode`` if it can be assigned to a bulb, else raise ``ValueError``."""

    if isinstance(mode, bool) or not isinstance(mode, int):
        raise ValueError(f"Mode must be an integer; got {mode!r}.")
    if not 0 <= mode < ALL_MODES:
        raise ValueError(f"Mode must be between 0 and {ALL_MODES - 1}; got {mode}.")
    return mode


def mode_matches(device_mode: int, requested: int) -> bool:
    return requested == ALL_MODES or device_mode == requested


@dataclass(frozen=True)
class DeviceSettings:
    """Per-address preferences that outlive a bulb's presence on the network."""

    mode: int = DEFAULT_MODE
    enabled: bool = True

    def __post_init__(self) -> None:
        validate_mode(self.mode)


@dataclass(frozen=True)
class DeviceRecord:
    """Everything known about a registered bulb."""

    device: DeviceHandle
    restore: LightState
    mode: int
    enabled: bool
    version: Optional[DeviceVersion] = None
    discovered_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @property
    def address(self) -> str:
        return self.device.address

    @property
    def label(self) -> str:
        return self.restore.label

    def as_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "ip": self.device.ip,
            "label": self.label,
            "product": self.version.product_name if self.version else None,
            "mode": self.mode,
            "enabled": self.enabled,
            "restore": self.restore.as_dict(),
            "discovered_at": self.discovered_at.isoformat(),
        }


class DeviceRegistry:
    """Keyed store of registered bulbs.

    A bulb's snapshot, mode and enabled flag live in one record so that
    registering or removing a bulb is a single dictionary operation. The
    active-device count is always ``len(registry)``.
    """

    def __init__(self) -> None:
        self.logger = get_logger("lifx.devices")
        self._records: Dict[str, DeviceRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, address: object) -> bool:
        return address in self._records

    def get(self, address: str) -> Optional[DeviceRecord]:
        return self._records.get(address)

    def records(self) -> List[DeviceRecord]:
        """Return a point-in-time list of records in registration order."""

        return list(self._records.values())

    def register(self, record: DeviceRecord) -> bool:
        """Insert or wholesale-replace a record. Returns ``True`` if it is new."""

        validate_mode(record.mode)
        is_new = record.address not in self._records
        if not is_new:
            self.logger.debug("Replacing existing record", extra={"device": record.address})
        self._records[record.address] = record
        return is_new

    def remove(self, address: str) -> Optional[DeviceRecord]:
        return self._records.pop(address, None)

    def update(self, address: str, **changes: Any) -> Optional[DeviceRecord]:
        """Apply ``mode``/``enabled`` changes to a registered bulb."""

        record = self._records.get(address)
        if record is None:
            return None
        if "mode" in changes:
            validate_mode(changes["mode"])
        updated = replace(record, **changes)
        self._records[address] = updated
        return updated

    def snapshot(self) -> List[Dict[str, Any]]:
        return [record.as_dict() for record in self._records.values()]

    def clear(self) -> None:
        self._records.clear()


ChangeListener = Callable[[], None]
ActivityListener = Callable[[bool], None]


class RegistryEvents:
    """Fan-out of registry notifications to external collaborators."""

    def __init__(self) -> None:
        self.logger = get_logger("lifx.devices")
        self._change_listeners: List[ChangeListener] = []
        self._activity_listeners: List[ActivityListener] = []

    def add_change_listener(self, listener: ChangeListener) -> None:
        self._change_listeners.append(listener)

    def add_activity_listener(self, listener: ActivityListener) -> None:
        self._activity_listeners.append(listener)

    def changed(self) -> None:
        for listener in list(self._change_listeners):
            try:
                listener()
            except Exception:
                self.logger.exception("Registry change listener failed")

    def activity(self, active: bool) -> None:
        for listener in list(self._activity_listeners):
            try:
                listener(active)
            except Exception:
                self.logger.exception("Activity listener failed", extra={"active": active})
