"""Tests for flashing through a session."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from flashlink.config.settings import SessionConfig
from flashlink.const import FLASH_FREQ, FLASH_MODE, FLASH_SIZE, RESTORE_ADVISORY_MESSAGE
from flashlink.errors import FlashingError, NotConnectedError
from flashlink.services.catalog import VersionDescriptor
from flashlink.services.flash import FlashReport
from flashlink.state.session import Session
from flashlink.transport.serial import DeviceHandle
from flashlink.util import md5_hex

from .fakes import (
    TEST_PORT,
    FakeCatalog,
    FakeEngine,
    FakeEngineFactory,
    FakeSerialBackend,
    RecordingConsole,
    SleepRecorder,
    drain,
)

SessionFactory = Callable[..., Session]


async def _connected(make_session: SessionFactory, baud: int = 115200, **overrides) -> Session:
    session = make_session(**overrides)
    await session.connect(baud)
    assert await session.wait_for_monitor()
    return session


@pytest.mark.asyncio
async def test_connect_change_baud_flash_end_to_end(
    make_session: SessionFactory,
    serial_backend: FakeSerialBackend,
    device: DeviceHandle,
    engine: FakeEngine,
    engine_factory: FakeEngineFactory,
    catalog: FakeCatalog,
    console: RecordingConsole,
    sleep_recorder: SleepRecorder,
    version: VersionDescriptor,
) -> None:
    session = await _connected(make_session, 115200)
    await session.change_baud_rate(921600)

    report = await session.start_flashing(version, False, 460800)

    assert report == FlashReport(chip="ESP32-S3", file_count=2, bytes_written=32 + 128, monitor_restored=True)
    assert engine.calls == ["detect_chip", "write_flash", "disconnect"]
    assert engine_factory.calls == [(device, 460800, console)]
    assert catalog.fetched == ["firmware/v1.2.0/bootloader.bin", "firmware/v1.2.0/app.bin"]

    request = engine.request
    assert request is not None
    assert [entry.address for entry in request.file_entries] == [0x0, 0x10000]
    assert request.file_entries[0].data == b"\xe9" * 32
    assert request.erase_all is False
    assert request.compress is True
    assert (request.flash_mode, request.flash_freq, request.flash_size) == (FLASH_MODE, FLASH_FREQ, FLASH_SIZE)
    assert request.md5 is md5_hex

    assert serial_backend.opened == [
        (TEST_PORT, 115200),
        (TEST_PORT, 921600),
        (TEST_PORT, 921600),
    ]
    assert serial_backend.current.serial.history == [
        ("dtr", False), ("rts", True),
        ("dtr", False), ("rts", False),
        ("dtr", False), ("rts", True),
        ("dtr", False), ("rts", False),
        ("dtr", False), ("rts", False),
    ]
    assert sleep_recorder.timed == [0.1, 3.0, 0.1]

    assert session.mode == "monitor_active"
    assert session.baud_rate == 921600
    assert session.read_loop.is_running
    assert len(serial_backend.open_transports) == 1

    assert console.lines == [
        "Connecting to serial port at 115200...",
        "Preparing for flashing...",
        "Initializing loader at 460800 baud...",
        "Detected chip: ESP32-S3",
        "Downloading firmware files...",
        "Fetching bootloader.bin...",
        "Fetching app.bin...",
        "Writing to flash...",
        "\n\rFlashing complete!",
        "Restoring serial connection...",
        "Performing 1st Hard Reset...",
        "Device ready (Double Reset completed).",
    ]
    assert console.writes[-1].startswith("\rFile 2/2 [████████████████████] 100%")
    await session.disconnect()


@pytest.mark.asyncio
async def test_flashing_requires_monitor(
    make_session: SessionFactory,
    serial_backend: FakeSerialBackend,
    engine_factory: FakeEngineFactory,
    version: VersionDescriptor,
) -> None:
    session = make_session()

    with pytest.raises(NotConnectedError):
        await session.start_flashing(version, False, 460800)

    assert serial_backend.opened == []
    assert engine_factory.calls == []
    assert session.mode == "disconnected"


@pytest.mark.asyncio
async def test_erase_runs_before_write(
    make_session: SessionFactory,
    engine: FakeEngine,
    version: VersionDescriptor,
) -> None:
    session = await _connected(make_session)

    await session.start_flashing(version, True, 460800)

    assert engine.calls == ["detect_chip", "erase_flash", "write_flash", "disconnect"]
    await session.disconnect()


@pytest.mark.asyncio
async def test_default_flash_baud_comes_from_config(
    make_session: SessionFactory,
    engine_factory: FakeEngineFactory,
    version: VersionDescriptor,
) -> None:
    config = SessionConfig(serial_port=TEST_PORT, connect_settle_delay=0.0, read_settle_delay=0.0, flash_baud=230400)
    session = await _connected(make_session, config=config)

    await session.start_flashing(version)

    assert engine_factory.calls[0][1] == 230400
    await session.disconnect()


@pytest.mark.asyncio
async def test_write_failure_restores_monitor(
    make_session: SessionFactory,
    serial_backend: FakeSerialBackend,
    engine: FakeEngine,
    console: RecordingConsole,
    version: VersionDescriptor,
) -> None:
    engine.fail_on = "write_flash"
    session = await _connected(make_session)

    with pytest.raises(FlashingError) as excinfo:
        await session.start_flashing(version, False, 460800)

    assert excinfo.value.monitor_restored is True
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert "write_flash failed" in str(excinfo.value)
    assert "\n\rFlashing failed: write_flash failed" in console.lines
    assert "\n\rFlashing complete!" not in console.lines
    assert engine.calls[-1] == "disconnect"

    assert session.mode == "monitor_active"
    assert session.baud_rate == 115200
    assert session.read_loop.is_running
    assert len(serial_backend.open_transports) == 1
    await session.disconnect()


@pytest.mark.asyncio
async def test_catalog_failure_is_flashing_error(
    make_session: SessionFactory,
    catalog: FakeCatalog,
    engine: FakeEngine,
    version: VersionDescriptor,
) -> None:
    catalog.binaries.pop("firmware/v1.2.0/app.bin")
    session = await _connected(make_session)

    with pytest.raises(FlashingError) as excinfo:
        await session.start_flashing(version, False, 460800)

    assert isinstance(excinfo.value.__cause__, KeyError)
    assert "write_flash" not in engine.calls
    assert session.mode == "monitor_active"
    await session.disconnect()


@pytest.mark.asyncio
async def test_engine_disconnect_failure_is_swallowed(
    make_session: SessionFactory,
    engine: FakeEngine,
    version: VersionDescriptor,
) -> None:
    engine.fail_on = "disconnect"
    session = await _connected(make_session)

    report = await session.start_flashing(version, False, 460800)

    assert report.monitor_restored is True
    assert session.mode == "monitor_active"
    await session.disconnect()


@pytest.mark.asyncio
async def test_restoration_failure_is_advisory(
    make_session: SessionFactory,
    serial_backend: FakeSerialBackend,
    device: DeviceHandle,
    console: RecordingConsole,
    version: VersionDescriptor,
) -> None:
    session = await _connected(make_session)
    serial_backend.fail_next_opens = 1

    report = await session.start_flashing(version, False, 460800)

    assert report.monitor_restored is False
    assert console.lines[-1] == RESTORE_ADVISORY_MESSAGE
    assert session.mode == "disconnected"
    assert session.device is device
    assert not device.is_open
    assert not session.read_loop.is_running


@pytest.mark.asyncio
async def test_flash_failure_and_restoration_failure(
    make_session: SessionFactory,
    serial_backend: FakeSerialBackend,
    engine: FakeEngine,
    version: VersionDescriptor,
) -> None:
    engine.fail_on = "detect_chip"
    session = await _connected(make_session)
    serial_backend.fail_next_opens = 1

    with pytest.raises(FlashingError) as excinfo:
        await session.start_flashing(version, False, 460800)

    assert excinfo.value.monitor_restored is False
    assert session.mode == "disconnected"


@pytest.mark.asyncio
async def test_monitor_receives_output_after_flashing(
    make_session: SessionFactory,
    serial_backend: FakeSerialBackend,
    monitor,
    version: VersionDescriptor,
) -> None:
    session = await _connected(make_session)
    await session.start_flashing(version, False, 460800)
    monitor.clear()

    serial_backend.current.feed(b"ESP-ROM:esp32s3\r\n")
    await drain()

    assert monitor.getvalue() == b"ESP-ROM:esp32s3\r\n"
    await session.disconnect()


@pytest.mark.asyncio
async def test_flashing_without_engine_configured(
    make_session: SessionFactory,
    version: VersionDescriptor,
) -> None:
    session = await _connected(make_session, engine_factory=None)

    with pytest.raises(FlashingError):
        await session.start_flashing(version, False, 460800)

    assert session.mode == "monitor_active"
    await session.disconnect()


@pytest.mark.asyncio
async def test_disconnect_waits_for_flashing(
    make_session: SessionFactory,
    serial_backend: FakeSerialBackend,
    device: DeviceHandle,
    engine: FakeEngine,
    version: VersionDescriptor,
) -> None:
    session = await _connected(make_session)

    flash_task = asyncio.create_task(session.start_flashing(version, False, 460800))
    await asyncio.sleep(0)
    assert session.busy
    await session.disconnect()
    report = await flash_task

    assert report.monitor_restored is True
    assert engine.calls == ["detect_chip", "write_flash", "disconnect"]
    assert session.mode == "disconnected"
    assert not device.is_open
    assert not session.read_loop.is_running
    assert serial_backend.open_transports == []
