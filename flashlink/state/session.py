"""Session state machine owning the single serial device.

The session alternates the device between the monitor read loop and a
flashing run. All mode changes go through the ``transitions`` machine below;
outside readers get an immutable :class:`SessionSnapshot`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import msgspec
import serial
from transitions import Machine

from ..config.logging import log_context
from ..config.settings import SessionConfig
from ..const import MAX_BAUDRATE, MIN_BAUDRATE, RESTORE_ADVISORY_MESSAGE
from ..errors import (
    ConnectionError,
    FlashingError,
    NotConnectedError,
    PortNotReadableError,
    RestorationError,
    SessionStateError,
)
from ..services.catalog import DirectoryCatalog, FirmwareCatalog, VersionDescriptor
from ..services.flash import EngineFactory, FlashOrchestrator, FlashReport
from ..services.read_loop import ReadLoopController, SleepCallable
from ..services.reset import HardResetSequencer
from ..sinks import ConsoleSink, LoggingConsole, MonitorBuffer, MonitorSink
from ..transport.serial import DeviceHandle, PortInfo, PortSelector, select_serial_port
from ..util import log_hexdump, to_payload

logger = logging.getLogger("flashlink.session")


@dataclass(slots=True)
class SessionState:
    """Mutable session record; only :class:`Session` transitions touch it."""

    mode: str
    baud_rate: int | None = None
    device: DeviceHandle | None = None
    read_loop_active: bool = False


class SessionSnapshot(msgspec.Struct, frozen=True):
    mode: str
    baud_rate: int | None
    port: str | None
    device_open: bool
    read_loop_active: bool


class Session:
    """Coordinates connect, monitor, baud changes and flashing for one device."""

    if TYPE_CHECKING:
        # FSM generated methods and attributes for static analysis
        fsm_state: str
        begin_connect: Callable[[], None]
        connection_ready: Callable[[], None]
        suspend: Callable[[], None]
        resume: Callable[[], None]
        start_flash: Callable[[], None]
        begin_restore: Callable[[], None]
        restored: Callable[[], None]
        begin_disconnect: Callable[[], None]
        finish_disconnect: Callable[[], None]
        abort: Callable[[], None]

    # FSM States
    STATE_DISCONNECTED = "disconnected"
    STATE_CONNECTING = "connecting"
    STATE_MONITOR_ACTIVE = "monitor_active"
    STATE_SUSPENDED = "suspended"
    STATE_FLASHING = "flashing"
    STATE_RESTORING = "restoring"
    STATE_DISCONNECTING = "disconnecting"

    def __init__(
        self,
        config: SessionConfig | None = None,
        *,
        monitor: MonitorSink | None = None,
        console: ConsoleSink | None = None,
        catalog: FirmwareCatalog | None = None,
        engine_factory: EngineFactory | None = None,
        port_selector: PortSelector | None = None,
        sleep: SleepCallable = asyncio.sleep,
    ) -> None:
        self._config = config or SessionConfig()
        self._monitor = monitor if monitor is not None else MonitorBuffer(max_bytes=self._config.monitor_buffer_bytes)
        self._console = console if console is not None else LoggingConsole()
        if catalog is None and self._config.firmware_root:
            catalog = DirectoryCatalog(self._config.firmware_root)
        self._catalog = catalog
        self._engine_factory = engine_factory
        self._port_selector = port_selector or self._select_configured_port
        self._sleep = sleep
        self._pending_start: asyncio.Task[None] | None = None
        # Held by connect, disconnect, baud changes and flashing for their whole run.
        self._lifecycle = asyncio.Lock()

        self._read_loop = ReadLoopController(
            self._monitor,
            settle_delay=self._config.read_settle_delay,
            chunk_size=self._config.read_chunk_size,
            sleep=sleep,
        )
        self._reset = HardResetSequencer(
            pulse=self._config.reset_pulse,
            boot_wait=self._config.reset_boot_wait,
            console=self._console,
            sleep=sleep,
        )
        self._state = SessionState(mode=self.STATE_DISCONNECTED)

        # FSM Initialization
        self.state_machine = Machine(
            model=self,
            states=[
                self.STATE_DISCONNECTED,
                self.STATE_CONNECTING,
                self.STATE_MONITOR_ACTIVE,
                self.STATE_SUSPENDED,
                self.STATE_FLASHING,
                self.STATE_RESTORING,
                self.STATE_DISCONNECTING,
            ],
            initial=self.STATE_DISCONNECTED,
            ignore_invalid_triggers=True,
            after_state_change="_on_fsm_state_change",
            model_attribute="fsm_state",
        )

        # FSM Transitions
        self.state_machine.add_transition(
            trigger="begin_connect", source=self.STATE_DISCONNECTED, dest=self.STATE_CONNECTING
        )
        self.state_machine.add_transition(
            trigger="connection_ready", source=self.STATE_CONNECTING, dest=self.STATE_MONITOR_ACTIVE
        )
        self.state_machine.add_transition(
            trigger="suspend", source=self.STATE_MONITOR_ACTIVE, dest=self.STATE_SUSPENDED
        )
        self.state_machine.add_transition(
            trigger="resume", source=self.STATE_SUSPENDED, dest=self.STATE_MONITOR_ACTIVE
        )
        self.state_machine.add_transition(
            trigger="start_flash", source=self.STATE_SUSPENDED, dest=self.STATE_FLASHING
        )
        self.state_machine.add_transition(
            trigger="begin_restore",
            source=[self.STATE_SUSPENDED, self.STATE_FLASHING],
            dest=self.STATE_RESTORING,
        )
        self.state_machine.add_transition(
            trigger="restored", source=self.STATE_RESTORING, dest=self.STATE_MONITOR_ACTIVE
        )
        self.state_machine.add_transition(
            trigger="begin_disconnect",
            source=[
                self.STATE_CONNECTING,
                self.STATE_MONITOR_ACTIVE,
                self.STATE_SUSPENDED,
                self.STATE_FLASHING,
                self.STATE_RESTORING,
            ],
            dest=self.STATE_DISCONNECTING,
        )
        self.state_machine.add_transition(
            trigger="finish_disconnect", source=self.STATE_DISCONNECTING, dest=self.STATE_DISCONNECTED
        )
        self.state_machine.add_transition(trigger="abort", source="*", dest=self.STATE_DISCONNECTED)

    def _on_fsm_state_change(self) -> None:
        self._state.mode = self.fsm_state
        logger.debug("Session state -> %s", self.fsm_state, extra=self._log_context())

    def _log_context(self, device: DeviceHandle | None = None) -> dict[str, Any]:
        device = device or self._state.device
        return log_context(
            port=device.port if device is not None else None,
            mode=self._state.mode,
            baud_rate=self._state.baud_rate,
        )

    # --- read-only views -------------------------------------------------

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def mode(self) -> str:
        return self._state.mode

    @property
    def device(self) -> DeviceHandle | None:
        return self._state.device

    @property
    def baud_rate(self) -> int | None:
        return self._state.baud_rate

    @property
    def monitor_active(self) -> bool:
        return self.fsm_state == self.STATE_MONITOR_ACTIVE

    @property
    def monitor(self) -> MonitorSink:
        return self._monitor

    @property
    def console(self) -> ConsoleSink:
        return self._console

    @property
    def read_loop(self) -> ReadLoopController:
        return self._read_loop

    @property
    def busy(self) -> bool:
        """Whether a connect, disconnect, baud change or flash is in progress."""
        return self._lifecycle.locked()

    def snapshot(self) -> SessionSnapshot:
        device = self._state.device
        self._state.read_loop_active = self._read_loop.is_running
        return SessionSnapshot(
            mode=self._state.mode,
            baud_rate=self._state.baud_rate,
            port=device.port if device is not None else None,
            device_open=device is not None and device.is_open,
            read_loop_active=self._state.read_loop_active,
        )

    def get_port_info(self) -> PortInfo | None:
        device = self._state.device
        if device is None:
            return None
        return PortInfo(
            port=device.port,
            baud_rate=self._state.baud_rate,
            usb_vendor_id=device.vendor_id,
            usb_product_id=device.product_id,
        )

    def clear_monitor(self) -> None:
        self._monitor.clear()

    # --- connection lifecycle ---------------------------------------------

    async def _select_configured_port(self) -> DeviceHandle | None:
        return await select_serial_port(self._config)

    async def connect(self, baud_rate: int | None = None) -> None:
        """Open the device and schedule the monitor read loop."""
        async with self._lifecycle:
            await self._connect(baud_rate if baud_rate is not None else self._config.monitor_baud)

    async def _connect(self, baud: int) -> None:
        if self.fsm_state != self.STATE_DISCONNECTED:
            raise SessionStateError(f"Cannot connect while {self.fsm_state}")
        if not MIN_BAUDRATE <= baud <= MAX_BAUDRATE:
            raise ValueError(f"Baud rate {baud} outside {MIN_BAUDRATE}..{MAX_BAUDRATE}")

        self.begin_connect()
        self._console.write_line(f"Connecting to serial port at {baud}...")
        try:
            device = self._state.device
            if device is None:
                device = await self._port_selector()
                if device is None:
                    raise ConnectionError("No serial device selected")
                self._state.device = device
            if device.is_open:
                await device.close()
            await device.open(baud)
        except ConnectionError as exc:
            self._fail_connect(exc)
            raise
        except (OSError, serial.SerialException) as exc:
            self._fail_connect(exc)
            raise ConnectionError(str(exc)) from exc

        self._state.baud_rate = baud
        self.connection_ready()
        logger.info("Connected to %s at %d baud", device.port, baud, extra=self._log_context(device))
        self._schedule_monitor_start(device)

    def _fail_connect(self, exc: Exception) -> None:
        logger.error("Connection failed: %s", exc, extra=self._log_context())
        self._console.write_line(f"Connection failed: {exc}")
        self._state.baud_rate = None
        self.abort()

    def _schedule_monitor_start(self, device: DeviceHandle) -> None:
        self._pending_start = asyncio.get_running_loop().create_task(
            self._delayed_monitor_start(device), name=f"flashlink-monitor-start:{device.port}"
        )

    async def _delayed_monitor_start(self, device: DeviceHandle) -> None:
        await self._sleep(self._config.connect_settle_delay)
        if self.fsm_state != self.STATE_MONITOR_ACTIVE or self._state.device is not device:
            logger.debug("Monitor start skipped while %s", self.fsm_state, extra=self._log_context(device))
            return
        try:
            await self._read_loop.start(device)
        except PortNotReadableError as exc:
            logger.error("Monitor did not start: %s", exc, extra=self._log_context(device))

    async def _cancel_pending_start(self) -> None:
        task, self._pending_start = self._pending_start, None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.wait({task})

    async def wait_for_monitor(self) -> bool:
        """Wait for the scheduled monitor start; returns whether the loop runs."""
        task = self._pending_start
        if task is not None:
            await asyncio.wait({task})
        return self._read_loop.is_running

    async def disconnect(self) -> None:
        """Tear the session down; errors are logged, never raised.

        A disconnect requested while another lifecycle operation runs waits
        for it to finish, then closes whatever that operation left open.
        """
        async with self._lifecycle:
            if self.fsm_state == self.STATE_DISCONNECTED:
                return
            await self._teardown()

    async def _teardown(self) -> None:
        self.begin_disconnect()
        device = self._state.device
        try:
            await self._cancel_pending_start()
            await self._read_loop.stop()
            if device is not None:
                await device.close()
            self._console.write_line("Device disconnected.")
        except Exception as exc:
            logger.warning("Disconnect failed: %s", exc, extra=self._log_context(device))
            self._console.write_line(f"Disconnect failed: {exc}")
        finally:
            self._state.device = None
            self._state.baud_rate = None
            self.finish_disconnect()

    async def handle_device_lost(self) -> None:
        """React to the OS reporting the device as unplugged."""
        async with self._lifecycle:
            if self.fsm_state == self.STATE_DISCONNECTED:
                return
            logger.warning("Device lost; disconnecting", extra=self._log_context())
            await self._teardown()
            self._console.write_line("Device disconnected (Event).")

    async def _close_quietly(self, device: DeviceHandle) -> None:
        try:
            await device.close()
        except Exception as exc:
            logger.warning("Closing %s failed: %s", device.port, exc, extra=self._log_context(device))

    # --- monitor operations ------------------------------------------------

    async def change_baud_rate(self, new_rate: int) -> None:
        """Reopen the device at *new_rate* and restart the monitor."""
        async with self._lifecycle:
            await self._change_baud_rate(new_rate)

    async def _change_baud_rate(self, new_rate: int) -> None:
        device = self._state.device
        if self.fsm_state != self.STATE_MONITOR_ACTIVE or device is None:
            raise NotConnectedError("Device not connected")
        if not MIN_BAUDRATE <= new_rate <= MAX_BAUDRATE:
            raise ValueError(f"Baud rate {new_rate} outside {MIN_BAUDRATE}..{MAX_BAUDRATE}")

        self.suspend()
        try:
            await self._cancel_pending_start()
            await self._read_loop.stop()
            await device.close()
            await device.open(new_rate)
            self._state.baud_rate = new_rate
            self.resume()
            await self._read_loop.start(device)
        except Exception as exc:
            logger.error("Baud rate change to %d failed: %s", new_rate, exc, extra=self._log_context(device))
            await self._read_loop.stop()
            await self._close_quietly(device)
            self._state.baud_rate = None
            self.abort()
            raise
        logger.info("Baud rate changed to %d", new_rate, extra=self._log_context(device))

    async def send_data(self, data: str | bytes) -> bool:
        """Write to the device; returns ``False`` instead of raising."""
        device = self._state.device
        if self.fsm_state != self.STATE_MONITOR_ACTIVE or device is None or not device.writable:
            logger.warning("Cannot send data: serial port not writable", extra=self._log_context())
            return False

        payload = to_payload(data)
        try:
            await device.write(payload)
        except (NotConnectedError, ConnectionError) as exc:
            logger.error("Failed to send data: %s", exc, extra=self._log_context(device))
            return False
        log_hexdump(logger, logging.DEBUG, "TX", payload, extra=self._log_context(device))
        return True

    # --- flashing -------------------------------------------------------------

    async def start_flashing(
        self,
        version: VersionDescriptor,
        erase_requested: bool = False,
        flash_baud_rate: int | None = None,
    ) -> FlashReport:
        """Flash *version* and return the device to the monitor."""
        async with self._lifecycle:
            return await self._start_flashing(version, erase_requested, flash_baud_rate)

    async def _start_flashing(
        self,
        version: VersionDescriptor,
        erase_requested: bool,
        flash_baud_rate: int | None,
    ) -> FlashReport:
        if not self.monitor_active:
            raise NotConnectedError("Device not connected. Connect before flashing.")
        if self._catalog is None or self._engine_factory is None:
            raise FlashingError("No firmware catalog or flash engine configured")

        orchestrator = FlashOrchestrator(
            self,
            catalog=self._catalog,
            engine_factory=self._engine_factory,
            console=self._console,
            progress_bar_width=self._config.progress_bar_width,
        )
        return await orchestrator.run(version, erase_requested, flash_baud_rate or self._config.flash_baud)

    async def suspend_for_flashing(self) -> int:
        """Hand the device over: stop the monitor and close the port.

        Runs inside ``start_flashing``, which already holds the lifecycle lock.
        """
        device = self._state.device
        saved = self._state.baud_rate
        if device is None or saved is None:
            raise NotConnectedError("Device not connected")

        self.suspend()
        await self._cancel_pending_start()
        await self._read_loop.stop()
        await device.close()
        return saved

    def enter_flashing(self) -> None:
        self.start_flash()

    async def restore_after_flashing(self, baud_rate: int) -> bool:
        """Reopen at *baud_rate*, double-reset and restart the monitor."""
        device = self._state.device
        self.begin_restore()
        self._console.write_line("Restoring serial connection...")
        try:
            if device is None:
                raise RestorationError("Device handle lost during flashing")
            # The engine may leave the port open.
            if device.is_open:
                await device.close()
            await device.open(baud_rate)
            self._state.baud_rate = baud_rate
            await self._reset.run(device)
            await self._read_loop.start(device)
        except Exception as exc:
            logger.error("Failed to restore serial connection: %s", exc, extra=self._log_context(device))
            self._console.write_line(RESTORE_ADVISORY_MESSAGE)
            if device is not None:
                await self._close_quietly(device)
            self._state.baud_rate = None
            self.abort()
            return False

        self.restored()
        self._console.write_line("Device ready (Double Reset completed).")
        return True


__all__ = ["Session", "SessionSnapshot", "SessionState"]
