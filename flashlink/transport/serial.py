"""Serial device handle built on pyserial-asyncio-fast.

A :class:`DeviceHandle` owns at most one open connection to one serial port.
Reads go through an exclusive read lock and writes through an independent
write lock, both scoped by async context managers so they are released on
every exit path.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, cast

import msgspec
import serial
import serial.tools.list_ports
import serial_asyncio_fast  # type: ignore

from ..config.logging import log_context
from ..config.settings import SessionConfig
from ..errors import ConnectionError, NotConnectedError, PortNotReadableError

logger = logging.getLogger("flashlink.transport")

ConnectionFactory = Callable[..., Awaitable[tuple[asyncio.BaseTransport, asyncio.BaseProtocol]]]
PortSelector = Callable[[], Awaitable["DeviceHandle | None"]]

_OPEN_ERRORS = (serial.SerialException, OSError, ValueError)


class PortInfo(msgspec.Struct, frozen=True):
    """Informational snapshot of the open port."""

    port: str
    baud_rate: int | None = None
    usb_vendor_id: int | None = None
    usb_product_id: int | None = None


class DeviceReadProtocol(asyncio.Protocol):
    """Feeds serial input into a StreamReader and tracks the connection lifetime."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self.reader = asyncio.StreamReader()
        self.transport: asyncio.Transport | None = None
        self.connected_future: asyncio.Future[None] = loop.create_future()
        self.closed_future: asyncio.Future[None] = loop.create_future()

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = cast(asyncio.Transport, transport)
        self.reader.set_transport(self.transport)
        if not self.connected_future.done():
            self.connected_future.set_result(None)

    def data_received(self, data: bytes) -> None:
        self.reader.feed_data(data)

    def eof_received(self) -> bool | None:
        self.reader.feed_eof()
        return None

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is None:
            self.reader.feed_eof()
        else:
            logger.warning("Serial connection lost: %s", exc)
            self.reader.set_exception(exc)
        self.transport = None
        if not self.connected_future.done():
            self.connected_future.set_exception(exc or ConnectionResetError("Closed"))
        if not self.closed_future.done():
            self.closed_future.set_result(None)


class DeviceHandle:
    """Ownership wrapper around one serial port; not reentrant."""

    def __init__(
        self,
        port: str,
        *,
        vendor_id: int | None = None,
        product_id: int | None = None,
        connection_factory: ConnectionFactory | None = None,
    ) -> None:
        self._port = port
        self._vendor_id = vendor_id
        self._product_id = product_id
        self._connection_factory = connection_factory or serial_asyncio_fast.create_serial_connection
        self._protocol: DeviceReadProtocol | None = None
        self._baud_rate: int | None = None
        self._read_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"DeviceHandle(port={self._port!r}, baud_rate={self._baud_rate!r})"

    @property
    def port(self) -> str:
        return self._port

    @property
    def vendor_id(self) -> int | None:
        return self._vendor_id

    @property
    def product_id(self) -> int | None:
        return self._product_id

    @property
    def baud_rate(self) -> int | None:
        return self._baud_rate

    @property
    def _transport(self) -> asyncio.Transport | None:
        if self._protocol is None:
            return None
        return self._protocol.transport

    @property
    def is_open(self) -> bool:
        return self._protocol is not None

    @property
    def readable(self) -> bool:
        transport = self._transport
        if transport is None or transport.is_closing():
            return False
        return not self._protocol.reader.at_eof()  # type: ignore[union-attr]

    @property
    def writable(self) -> bool:
        transport = self._transport
        return transport is not None and not transport.is_closing()

    @property
    def read_locked(self) -> bool:
        return self._read_lock.locked()

    def info(self) -> PortInfo:
        return PortInfo(
            port=self._port,
            baud_rate=self._baud_rate,
            usb_vendor_id=self._vendor_id,
            usb_product_id=self._product_id,
        )

    async def open(self, baudrate: int) -> None:
        """Open the port at *baudrate*; opening an open handle is an error."""
        if self.is_open:
            raise ConnectionError(f"{self._port} is already open; close it first")

        loop = asyncio.get_running_loop()
        logger.info(
            "Opening %s at %d baud", self._port, baudrate, extra=log_context(port=self._port, baud_rate=baudrate)
        )
        try:
            _, proto = await self._connection_factory(
                loop,
                lambda: DeviceReadProtocol(loop),
                self._port,
                baudrate=baudrate,
            )
            protocol = cast(DeviceReadProtocol, proto)
            await protocol.connected_future
        except _OPEN_ERRORS as exc:
            raise ConnectionError(f"Could not open {self._port}: {exc}") from exc

        self._protocol = protocol
        self._baud_rate = baudrate

    async def close(self) -> None:
        """Close the port; a closed handle is left untouched."""
        protocol = self._protocol
        if protocol is None:
            return
        self._protocol = None
        self._baud_rate = None

        transport = protocol.transport
        if transport is not None and not transport.is_closing():
            transport.close()
        if transport is not None:
            await protocol.closed_future
        logger.info("Closed %s", self._port, extra=log_context(port=self._port))

    @contextlib.asynccontextmanager
    async def acquire_reader(self) -> AsyncIterator[asyncio.StreamReader]:
        """Hold the exclusive read lock for the duration of the block."""
        protocol = self._protocol
        if protocol is None or not self.readable:
            raise PortNotReadableError(f"{self._port} is not readable")
        if self._read_lock.locked():
            raise RuntimeError(f"read lock on {self._port} is already held")

        await self._read_lock.acquire()
        try:
            yield protocol.reader
        finally:
            self._read_lock.release()

    async def write(self, data: bytes) -> None:
        """Write *data* under the short-lived write lock."""
        async with self._write_lock:
            transport = self._transport
            if transport is None or transport.is_closing():
                raise NotConnectedError(f"{self._port} is not writable")
            try:
                transport.write(data)
            except _OPEN_ERRORS as exc:
                raise ConnectionError(f"Write to {self._port} failed: {exc}") from exc

    async def set_signals(self, *, dtr: bool | None = None, rts: bool | None = None) -> None:
        """Drive the modem control lines of the open port."""
        transport = self._transport
        if transport is None:
            raise NotConnectedError(f"{self._port} is not open")

        port: Any = getattr(transport, "serial", None)
        if port is None:
            raise ConnectionError(f"{self._port} transport has no control lines")
        try:
            if dtr is not None:
                port.dtr = dtr
            if rts is not None:
                port.rts = rts
        except _OPEN_ERRORS as exc:
            raise ConnectionError(f"Setting control lines on {self._port} failed: {exc}") from exc


def _matches(entry: Any, config: SessionConfig) -> bool:
    if config.usb_vendor_id is not None and entry.vid != config.usb_vendor_id:
        return False
    if config.usb_product_id is not None and entry.pid != config.usb_product_id:
        return False
    return True


async def select_serial_port(config: SessionConfig) -> DeviceHandle | None:
    """Pick the configured port, or the first enumerated port matching the USB ids."""

    entries = await asyncio.to_thread(serial.tools.list_ports.comports)

    if config.serial_port:
        for entry in entries:
            if entry.device == config.serial_port:
                return DeviceHandle(entry.device, vendor_id=entry.vid, product_id=entry.pid)
        logger.info("Configured port %s not enumerated; using it as-is", config.serial_port)
        return DeviceHandle(config.serial_port)

    candidates = sorted((entry for entry in entries if _matches(entry, config)), key=lambda e: e.device)
    if not candidates:
        logger.warning("No serial device matches the configured filters")
        return None

    chosen = candidates[0]
    if len(candidates) > 1:
        logger.info("%d serial devices match; selecting %s", len(candidates), chosen.device)
    return DeviceHandle(chosen.device, vendor_id=chosen.vid, product_id=chosen.pid)


__all__ = [
    "ConnectionFactory",
    "DeviceHandle",
    "DeviceReadProtocol",
    "PortInfo",
    "PortSelector",
    "select_serial_port",
]
