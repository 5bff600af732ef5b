"""Continuous monitor read loop over a :class:`DeviceHandle`.

Exactly one loop holds the device's read lock at a time. Stopping is a
cancellation flag plus ``Task.cancel()``, which unblocks the pending read so
the read lock is released by the context manager on the way out.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import tenacity

from ..config.logging import log_context
from ..const import DEFAULT_READ_CHUNK_SIZE, DEFAULT_READ_SETTLE_DELAY, MONITOR_NOT_READABLE_MESSAGE
from ..errors import PortNotReadableError
from ..sinks import MonitorSink
from ..transport.serial import DeviceHandle
from ..util import log_hexdump

logger = logging.getLogger("flashlink.read_loop")

SleepCallable = Callable[[float], Awaitable[None]]


class _PortNotReady(Exception):
    """Internal retry signal while waiting for the transport to settle."""


@dataclass(slots=True)
class ReadLoopHandle:
    device: DeviceHandle
    cancelled: bool = False
    task: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.task is None or self.task.done()


class ReadLoopController:
    """Starts and stops the monitor read loop for one session."""

    def __init__(
        self,
        monitor: MonitorSink,
        *,
        settle_delay: float = DEFAULT_READ_SETTLE_DELAY,
        chunk_size: int = DEFAULT_READ_CHUNK_SIZE,
        sleep: SleepCallable = asyncio.sleep,
    ) -> None:
        self._monitor = monitor
        self._settle_delay = settle_delay
        self._chunk_size = chunk_size
        self._sleep = sleep
        self._handle: ReadLoopHandle | None = None

    @property
    def handle(self) -> ReadLoopHandle | None:
        return self._handle

    @property
    def is_running(self) -> bool:
        return self._handle is not None and not self._handle.done

    async def start(self, device: DeviceHandle) -> ReadLoopHandle:
        """Start reading from *device*, replacing any loop already running."""
        await self.stop()

        if not await self._wait_until_readable(device):
            logger.error(
                "Port %s not readable after %.2fs settle",
                device.port,
                self._settle_delay,
                extra=log_context(port=device.port, baud_rate=device.baud_rate),
            )
            self._monitor.write_line(MONITOR_NOT_READABLE_MESSAGE)
            raise PortNotReadableError(f"{device.port} is not readable")

        handle = ReadLoopHandle(device=device)
        handle.task = asyncio.get_running_loop().create_task(
            self._run(handle), name=f"flashlink-read-loop:{device.port}"
        )
        self._handle = handle
        logger.debug(
            "Read loop started on %s", device.port, extra=log_context(port=device.port, baud_rate=device.baud_rate)
        )
        return handle

    async def stop(self) -> None:
        """Stop the active loop and wait for it to release the read lock."""
        handle = self._handle
        if handle is None:
            return
        self._handle = None
        handle.cancelled = True

        task = handle.task
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.wait({task})
        logger.debug("Read loop stopped on %s", handle.device.port)

    async def _wait_until_readable(self, device: DeviceHandle) -> bool:
        retryer = tenacity.AsyncRetrying(
            stop=tenacity.stop_after_attempt(2),
            wait=tenacity.wait_fixed(self._settle_delay),
            retry=tenacity.retry_if_exception_type(_PortNotReady),
            sleep=self._sleep,
            reraise=False,
        )
        try:
            async for attempt in retryer:
                with attempt:
                    if not device.readable:
                        raise _PortNotReady(device.port)
        except tenacity.RetryError:
            return False
        return True

    async def _run(self, handle: ReadLoopHandle) -> None:
        device = handle.device
        context = log_context(port=device.port, baud_rate=device.baud_rate)
        try:
            async with device.acquire_reader() as reader:
                while not handle.cancelled:
                    chunk = await reader.read(self._chunk_size)
                    if not chunk:
                        logger.info("End of stream on %s", device.port, extra=context)
                        break
                    log_hexdump(logger, logging.DEBUG, "RX", chunk, extra=context)
                    self._monitor.write(chunk)
        except asyncio.CancelledError:
            logger.debug("Read loop on %s cancelled", device.port)
            raise
        except Exception as exc:
            logger.error("Read loop on %s failed: %s", device.port, exc, extra=context)
            self._monitor.write_line(f"\r\n[ERROR] Read failed: {exc}")


__all__ = ["ReadLoopController", "ReadLoopHandle", "SleepCallable"]
