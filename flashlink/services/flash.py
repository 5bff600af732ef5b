"""Flash orchestration around an external bootloader protocol engine.

The orchestrator takes the device away from the monitor, hands it to an
engine for chip detection, optional erase and the write, and always gives it
back to the monitor afterwards, whether or not the write succeeded.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

import msgspec

from ..const import DEFAULT_PROGRESS_BAR_WIDTH, FLASH_FREQ, FLASH_MODE, FLASH_SIZE
from ..errors import FlashingError, NotConnectedError
from ..sinks import ConsoleSink
from ..transport.serial import DeviceHandle
from ..util import md5_hex
from .catalog import FirmwareCatalog, VersionDescriptor, part_location
from .progress import ProgressBarRenderer, ProgressObserver

logger = logging.getLogger("flashlink.flash")


class FirmwareFileEntry(msgspec.Struct, frozen=True):
    data: bytes
    address: int


@dataclass(frozen=True, slots=True, kw_only=True)
class WriteFlashRequest:
    """Parameters handed to :meth:`FlashProtocolEngine.write_flash`."""

    file_entries: tuple[FirmwareFileEntry, ...]
    report_progress: ProgressObserver
    md5: Callable[[bytes], str] = md5_hex
    erase_all: bool = False
    compress: bool = True
    flash_mode: str = FLASH_MODE
    flash_freq: str = FLASH_FREQ
    flash_size: str = FLASH_SIZE


class FlashProtocolEngine(Protocol):
    async def detect_chip(self) -> str: ...

    async def erase_flash(self) -> None: ...

    async def write_flash(self, request: WriteFlashRequest) -> None: ...

    async def disconnect(self) -> None: ...


EngineFactory = Callable[[DeviceHandle, int, ConsoleSink], FlashProtocolEngine]


class FlashReport(msgspec.Struct, frozen=True):
    chip: str
    file_count: int
    bytes_written: int
    monitor_restored: bool


@dataclass(slots=True)
class FlashingSession:
    saved_baud_rate: int
    erase_requested: bool
    flash_baud_rate: int
    file_entries: list[FirmwareFileEntry] = field(default_factory=list)
    engine: FlashProtocolEngine | None = None


class FlashHost(Protocol):
    """Session-side hooks the orchestrator drives."""

    @property
    def device(self) -> DeviceHandle | None: ...

    @property
    def baud_rate(self) -> int | None: ...

    @property
    def monitor_active(self) -> bool: ...

    async def suspend_for_flashing(self) -> int: ...

    def enter_flashing(self) -> None: ...

    async def restore_after_flashing(self, baud_rate: int) -> bool: ...


class FlashOrchestrator:
    """Runs one flashing session against the host's device."""

    def __init__(
        self,
        host: FlashHost,
        *,
        catalog: FirmwareCatalog,
        engine_factory: EngineFactory,
        console: ConsoleSink,
        progress_bar_width: int = DEFAULT_PROGRESS_BAR_WIDTH,
        md5: Callable[[bytes], str] = md5_hex,
    ) -> None:
        self._host = host
        self._catalog = catalog
        self._engine_factory = engine_factory
        self._console = console
        self._progress_bar_width = progress_bar_width
        self._md5 = md5

    async def run(self, version: VersionDescriptor, erase_requested: bool, flash_baud_rate: int) -> FlashReport:
        device = self._host.device
        saved_baud = self._host.baud_rate
        if not self._host.monitor_active or device is None or not device.is_open or saved_baud is None:
            raise NotConnectedError("Device not connected. Connect before flashing.")

        logger.info("Flashing %s (%s) on %s", version.name, version.id, device.port)
        self._console.write_line("Preparing for flashing...")
        session = FlashingSession(
            saved_baud_rate=saved_baud,
            erase_requested=erase_requested,
            flash_baud_rate=flash_baud_rate,
        )

        chip = ""
        failure: Exception | None = None
        restored = False
        try:
            session.saved_baud_rate = await self._host.suspend_for_flashing()
            self._host.enter_flashing()
            chip = await self._flash(device, version, session)
            self._console.write_line("\n\rFlashing complete!")
        except Exception as exc:
            failure = exc
            logger.error("Flashing failed: %s", exc)
            self._console.write_line(f"\n\rFlashing failed: {exc}")
        finally:
            await self._release_engine(session)
            restored = await self._host.restore_after_flashing(session.saved_baud_rate)

        if failure is not None:
            raise FlashingError(f"Flashing failed: {failure}", monitor_restored=restored) from failure

        return FlashReport(
            chip=chip,
            file_count=len(session.file_entries),
            bytes_written=sum(len(entry.data) for entry in session.file_entries),
            monitor_restored=restored,
        )

    async def _flash(self, device: DeviceHandle, version: VersionDescriptor, session: FlashingSession) -> str:
        self._console.write_line(f"Initializing loader at {session.flash_baud_rate} baud...")
        session.engine = engine = self._engine_factory(device, session.flash_baud_rate, self._console)

        chip = await engine.detect_chip()
        self._console.write_line(f"Detected chip: {chip}")

        if session.erase_requested:
            await engine.erase_flash()

        self._console.write_line("Downloading firmware files...")
        session.file_entries = await self._download(version)

        self._console.write_line("Writing to flash...")
        progress = ProgressBarRenderer(
            self._console,
            len(session.file_entries),
            width=self._progress_bar_width,
        )
        await engine.write_flash(
            WriteFlashRequest(
                file_entries=tuple(session.file_entries),
                report_progress=progress,
                md5=self._md5,
            )
        )
        return chip

    async def _download(self, version: VersionDescriptor) -> list[FirmwareFileEntry]:
        manifest = await self._catalog.fetch_manifest(version)
        entries: list[FirmwareFileEntry] = []
        for build in manifest.builds:
            for part in build.parts:
                self._console.write_line(f"Fetching {part.path}...")
                data = await self._catalog.fetch_binary(part_location(version.manifest_path, part.path))
                entries.append(FirmwareFileEntry(data=data, address=part.offset))
        return entries

    async def _release_engine(self, session: FlashingSession) -> None:
        engine, session.engine = session.engine, None
        if engine is None:
            return
        try:
            await engine.disconnect()
        except Exception as exc:
            logger.warning("Flash engine disconnect failed: %s", exc)


__all__ = [
    "EngineFactory",
    "FirmwareFileEntry",
    "FlashHost",
    "FlashOrchestrator",
    "FlashProtocolEngine",
    "FlashReport",
    "FlashingSession",
    "WriteFlashRequest",
]
