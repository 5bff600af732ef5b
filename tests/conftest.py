"""Pytest configuration for FlashLink tests."""

from __future__ import annotations

import asyncio
import importlib.util
import inspect
import logging
from collections.abc import Callable
from typing import Any

import pytest

from flashlink.config.settings import SessionConfig
from flashlink.services.catalog import FirmwareManifest, ManifestBuild, ManifestPart, VersionDescriptor
from flashlink.sinks import MonitorBuffer
from flashlink.state.session import Session
from flashlink.transport.serial import DeviceHandle

from .fakes import (
    TEST_PID,
    TEST_PORT,
    TEST_VID,
    FakeCatalog,
    FakeEngine,
    FakeEngineFactory,
    FakeSerialBackend,
    RecordingConsole,
    SleepRecorder,
)

_HAS_PYTEST_ASYNCIO = importlib.util.find_spec("pytest_asyncio") is not None


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "asyncio: mark test to run on asyncio loop")


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Fallback asyncio runner when pytest-asyncio is unavailable."""
    if _HAS_PYTEST_ASYNCIO:
        return None
    if "asyncio" not in pyfuncitem.keywords:
        return None
    test_function = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_function):
        return None

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        kwargs = {name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames}
        loop.run_until_complete(test_function(**kwargs))
    finally:
        try:
            loop.run_until_complete(loop.shutdown_asyncgens())
        except (RuntimeError, ValueError):
            pass
        loop.close()
        asyncio.set_event_loop(None)
    return True


@pytest.fixture(autouse=True)
def reset_logging_handlers():
    """Close and remove all logging handlers after each test to prevent ResourceWarnings."""
    yield
    root = logging.getLogger()
    for handler in root.handlers[:]:
        try:
            handler.close()
        except (OSError, RuntimeError):
            pass
        root.removeHandler(handler)


@pytest.fixture(autouse=True)
def isolated_config_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("FLASHLINK_CONFIG", raising=False)
    monkeypatch.delenv("FLASHLINK_LOG_STREAM", raising=False)


@pytest.fixture
def serial_backend() -> FakeSerialBackend:
    return FakeSerialBackend()


@pytest.fixture
def device(serial_backend: FakeSerialBackend) -> DeviceHandle:
    return DeviceHandle(TEST_PORT, vendor_id=TEST_VID, product_id=TEST_PID, connection_factory=serial_backend)


@pytest.fixture
def fast_config() -> SessionConfig:
    return SessionConfig(
        serial_port=TEST_PORT,
        connect_settle_delay=0.0,
        read_settle_delay=0.0,
    )


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def console() -> RecordingConsole:
    return RecordingConsole()


@pytest.fixture
def monitor() -> MonitorBuffer:
    return MonitorBuffer()


@pytest.fixture
def version() -> VersionDescriptor:
    return VersionDescriptor(id="v1.2.0", name="Release 1.2.0", manifest_path="firmware/v1.2.0/manifest.json")


@pytest.fixture
def catalog() -> FakeCatalog:
    manifest = FirmwareManifest(
        name="Demo",
        version="1.2.0",
        builds=[
            ManifestBuild(
                chip_family="ESP32-S3",
                parts=[
                    ManifestPart(path="bootloader.bin", offset=0x0),
                    ManifestPart(path="app.bin", offset=0x10000),
                ],
            )
        ],
    )
    binaries = {
        "firmware/v1.2.0/bootloader.bin": b"\xe9" * 32,
        "firmware/v1.2.0/app.bin": b"\xaa\x55" * 64,
    }
    return FakeCatalog(manifest, binaries)


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def engine_factory(engine: FakeEngine) -> FakeEngineFactory:
    return FakeEngineFactory(engine)


@pytest.fixture
def make_session(
    fast_config: SessionConfig,
    device: DeviceHandle,
    monitor: MonitorBuffer,
    console: RecordingConsole,
    catalog: FakeCatalog,
    engine_factory: FakeEngineFactory,
    sleep_recorder: SleepRecorder,
) -> Callable[..., Session]:
    def _factory(config: SessionConfig | None = None, **overrides: Any) -> Session:
        async def _select() -> DeviceHandle | None:
            return device

        kwargs: dict[str, Any] = {
            "monitor": monitor,
            "console": console,
            "catalog": catalog,
            "engine_factory": engine_factory,
            "port_selector": _select,
            "sleep": sleep_recorder,
        }
        kwargs.update(overrides)
        return Session(config or fast_config, **kwargs)

    return _factory
