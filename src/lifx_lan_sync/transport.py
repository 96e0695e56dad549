"""Bulb transport interface and the UDP LAN implementation."""

from __future__ import annotations

import asyncio
import contextlib
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .color import Hsbk
from .config import Config
from .logging import get_logger
from .protocol import (
    SERVICE_UDP,
    DeviceVersion,
    LifxCodec,
    LightState,
    MessageType,
    Packet,
    ProtocolError,
)


class TransportError(RuntimeError):
    """Raised when a bulb cannot be reached or answers unexpectedly."""


@dataclass(frozen=True)
class DeviceHandle:
    """Network identity of a bulb as reported by the transport."""

    address: str
    ip: str
    port: int = 56700


DeviceCallback = Callable[[DeviceHandle], None]


class LifxTransport(ABC):
    """Abstract bulb transport.

    Implementations report bulbs appearing and disappearing through the
    callbacks registered with :meth:`set_listeners` and expose async
    request methods that raise :class:`TransportError` on failure.
    """

    def __init__(self) -> None:
        self._on_discovered: Optional[DeviceCallback] = None
        self._on_lost: Optional[DeviceCallback] = None

    def set_listeners(self, discovered: DeviceCallback, lost: DeviceCallback) -> None:
        self._on_discovered = discovered
        self._on_lost = lost

    def _notify_discovered(self, device: DeviceHandle) -> None:
        if self._on_discovered is not None:
            self._on_discovered(device)

    def _notify_lost(self, device: DeviceHandle) -> None:
        if self._on_lost is not None:
            self._on_lost(device)

    @abstractmethod
    async def start(self) -> None:
        """Open the transport and begin discovery."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop discovery and release network resources."""

    @abstractmethod
    async def get_version(self, device: DeviceHandle) -> DeviceVersion:
        """Query the bulb's vendor/product/firmware identity."""

    @abstractmethod
    async def get_light_state(self, device: DeviceHandle) -> LightState:
        """Query the bulb's full light state."""

    @abstractmethod
    async def set_color(self, device: DeviceHandle, color: Hsbk, duration_ms: int) -> None:
        """Set the bulb colour, transitioning over ``duration_ms``."""


class _LanProtocol(asyncio.DatagramProtocol):
    """Asyncio protocol forwarding datagrams to the owning transport."""

    def __init__(self, owner: "LanTransport") -> None:
        self.owner = owner

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.owner.logger.info(
            "LAN transport ready",
            extra={"local": transport.get_extra_info("sockname")},
        )

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self.owner._handle_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        self.owner.logger.warning(
            "LAN transport socket error",
            exc_info=(type(exc), exc, exc.__traceback__),
        )

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc:
            self.owner.logger.error(
                "LAN transport error",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
        self.owner.logger.info("LAN transport closed")


class LanTransport(LifxTransport):
    """LIFX LAN protocol over UDP broadcast/unicast.

    Discovery broadcasts ``GetService`` every ``discovery_interval`` seconds.
    A ``StateService`` reply from an unknown address reports the bulb as
    discovered; a bulb that stays silent for ``discovery_stale_after``
    seconds is reported as lost. Requests are matched to replies by
    ``(address, sequence)``. In dry-run mode discovery and state queries
    still run but ``SetColor`` packets are only logged.
    """

    def __init__(self, config: Config) -> None:
        super().__init__()
        self.config = config
        self.logger = get_logger("lifx.transport")
        self._codec = LifxCodec(source=random.randint(2, 0xFFFFFFFF))
        self._endpoint: Optional[asyncio.DatagramTransport] = None
        self._discovery_task: Optional[asyncio.Task[None]] = None
        self._devices: Dict[str, DeviceHandle] = {}
        self._last_seen: Dict[str, float] = {}
        self._waiters: Dict[Tuple[str, int], asyncio.Future[Packet]] = {}

    async def start(self) -> None:
        if self._endpoint is not None:
            return
        loop = asyncio.get_running_loop()
        transport, _protocol = await loop.create_datagram_endpoint(
            lambda: _LanProtocol(self),
            local_addr=("0.0.0.0", 0),
            allow_broadcast=True,
        )
        self._endpoint = transport  # type: ignore[assignment]
        self._discovery_task = asyncio.create_task(self._discovery_loop(), name="lifx-discovery")
        self.logger.info(
            "LAN transport started",
            extra={
                "broadcast": self.config.discovery_broadcast_address,
                "port": self.config.lifx_port,
                "interval": self.config.discovery_interval,
            },
        )
        if self.config.dry_run:
            self.logger.info("LAN transport started in dry-run mode; colour changes will not be sent.")

    async def stop(self) -> None:
        if self._discovery_task:
            self._discovery_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._discovery_task
            self._discovery_task = None
        for future in self._waiters.values():
            if not future.done():
                future.cancel()
        self._waiters.clear()
        if self._endpoint:
            self._endpoint.close()
        self._endpoint = None
        self._devices.clear()
        self._last_seen.clear()
        self.logger.info("LAN transport stopped")

    async def get_version(self, device: DeviceHandle) -> DeviceVersion:
        packet = await self._request(
            device,
            lambda seq: self._codec.get_version(device.address, seq),
            MessageType.STATE_VERSION,
            attempts=self.config.device_request_retries,
        )
        try:
            return self._codec.parse_state_version(packet.payload)
        except ProtocolError as exc:
            raise TransportError(f"Bad StateVersion from {device.address}: {exc}") from exc

    async def get_light_state(self, device: DeviceHandle) -> LightState:
        packet = await self._request(
            device,
            lambda seq: self._codec.get_light_state(device.address, seq),
            MessageType.LIGHT_STATE,
            attempts=self.config.device_request_retries,
        )
        try:
            return self._codec.parse_light_state(packet.payload)
        except ProtocolError as exc:
            raise TransportError(f"Bad Light::State from {device.address}: {exc}") from exc

    async def set_color(self, device: DeviceHandle, color: Hsbk, duration_ms: int) -> None:
        try:
            if self.config.dry_run:
                self._codec.set_color(device.address, 0, color, duration_ms)
                self.logger.info(
                    "Dry-run: would send SetColor",
                    extra={
                        "device": device.address,
                        "hue": color.hue,
                        "saturation": color.saturation,
                        "brightness": color.brightness,
                        "kelvin": color.kelvin,
                        "duration_ms": duration_ms,
                    },
                )
                return
            await self._request(
                device,
                lambda seq: self._codec.set_color(device.address, seq, color, duration_ms),
                MessageType.ACKNOWLEDGEMENT,
                attempts=1,
            )
        except ProtocolError as exc:
            raise TransportError(f"Cannot encode SetColor for {device.address}: {exc}") from exc

    async def _request(
        self,
        device: DeviceHandle,
        build: Callable[[int], bytes],
        expected: int,
        *,
        attempts: int,
    ) -> Packet:
        if self._endpoint is None:
            raise TransportError("LAN transport is not running")
        target = self._devices.get(device.address, device)
        loop = asyncio.get_running_loop()
        for attempt in range(1, max(1, attempts) + 1):
            sequence = self._codec.next_sequence()
            key = (device.address, sequence)
            future: asyncio.Future[Packet] = loop.create_future()
            self._waiters[key] = future
            try:
                self._endpoint.sendto(build(sequence), (target.ip, target.port))
                packet = await asyncio.wait_for(future, timeout=self.config.device_request_timeout)
            except asyncio.TimeoutError:
                self.logger.debug(
                    "Request timed out",
                    extra={"device": device.address, "attempt": attempt, "expected": expected},
                )
                continue
            except OSError as exc:
                raise TransportError(f"Send to {device.address} failed: {exc}") from exc
            finally:
                self._waiters.pop(key, None)
            if packet.msg_type != expected:
                raise TransportError(
                    f"Unexpected reply type {packet.msg_type} from {device.address}; expected {expected}"
                )
            return packet
        raise TransportError(f"No reply from {device.address} after {attempts} attempt(s)")

    async def _discovery_loop(self) -> None:
        try:
            while True:
                self._broadcast_probe()
                await asyncio.sleep(self.config.discovery_interval)
                self._expire_stale()
        except asyncio.CancelledError:
            self.logger.info("Discovery loop cancelled")
            raise

    def _broadcast_probe(self) -> None:
        if self._endpoint is None:
            return
        target = (self.config.discovery_broadcast_address, self.config.lifx_port)
        try:
            self._endpoint.sendto(self._codec.get_service(), target)
        except OSError as exc:
            self.logger.error(
                "Failed to send discovery probe",
                exc_info=(type(exc), exc, exc.__traceback__),
                extra={"target": target},
            )

    def _expire_stale(self) -> None:
        cutoff = time.monotonic() - self.config.discovery_stale_after
        stale = [address for address, seen in self._last_seen.items() if seen < cutoff]
        for address in stale:
            self._last_seen.pop(address, None)
            device = self._devices.pop(address, None)
            if device is not None:
                self.logger.debug("Bulb went silent", extra={"device": address})
                self._notify_lost(device)

    def _handle_datagram(self, data: bytes, addr: Tuple[str, int]) -> None:
        try:
            packet = self._codec.decode(data)
        except ProtocolError:
            self.logger.debug("Ignoring undecodable datagram", extra={"from": addr})
            return
        if packet.source != self._codec.source:
            return

        if packet.msg_type == MessageType.STATE_SERVICE:
            try:
                service, port = self._codec.parse_state_service(packet.payload)
            except ProtocolError:
                self.logger.debug("Ignoring malformed StateService", extra={"from": addr})
                return
            if service == SERVICE_UDP:
                self._mark_seen(packet.target, addr[0], port)
            return

        if packet.target in self._devices:
            self._last_seen[packet.target] = time.monotonic()
        waiter = self._waiters.get((packet.target, packet.sequence))
        if waiter is not None and not waiter.done():
            waiter.set_result(packet)

    def _mark_seen(self, address: str, ip: str, port: int) -> None:
        self._last_seen[address] = time.monotonic()
        existing = self._devices.get(address)
        if existing is not None and existing.ip == ip and existing.port == port:
            return
        device = DeviceHandle(address=address, ip=ip, port=port)
        self._devices[address] = device
        if existing is None:
            self.logger.debug("Bulb answered discovery", extra={"device": address, "ip": ip})
            self._notify_discovered(device)
        else:
            self.logger.info(
                "Bulb address changed",
                extra={"device": address, "old_ip": existing.ip, "ip": ip},
            )
