"""Tests for session configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from flashlink.config.settings import SessionConfig, build_session_config, load_session_config
from flashlink.const import DEFAULT_FLASH_BAUDRATE, DEFAULT_MONITOR_BAUDRATE


def test_defaults_without_file() -> None:
    config = load_session_config()

    assert config == SessionConfig()
    assert config.monitor_baud == DEFAULT_MONITOR_BAUDRATE
    assert config.flash_baud == DEFAULT_FLASH_BAUDRATE
    assert config.connect_settle_delay == pytest.approx(0.2)
    assert config.read_settle_delay == pytest.approx(0.1)
    assert config.reset_pulse == pytest.approx(0.1)
    assert config.reset_boot_wait == pytest.approx(3.0)
    assert config.progress_bar_width == 20


def test_toml_table_is_loaded(tmp_path: Path) -> None:
    path = tmp_path / "flashlink.toml"
    path.write_text(
        """
[flashlink]
serial_port = "/dev/ttyACM0"
monitor_baud = 921600
reset_boot_wait = 1.5
usb_vendor_id = 0x303A
debug_logging = true

[other]
ignored = 1
""",
        encoding="utf-8",
    )

    config = load_session_config(path)

    assert config.serial_port == "/dev/ttyACM0"
    assert config.monitor_baud == 921600
    assert config.reset_boot_wait == pytest.approx(1.5)
    assert config.usb_vendor_id == 0x303A
    assert config.debug_logging is True


def test_environment_variable_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "env.toml"
    path.write_text('[flashlink]\nflash_baud = 230400\n', encoding="utf-8")
    monkeypatch.setenv("FLASHLINK_CONFIG", str(path))

    assert load_session_config().flash_baud == 230400


def test_missing_table_uses_defaults(tmp_path: Path) -> None:
    path = tmp_path / "empty.toml"
    path.write_text("[unrelated]\nvalue = 1\n", encoding="utf-8")

    assert load_session_config(path) == SessionConfig()


@pytest.mark.parametrize(
    "raw",
    [
        {"monitor_baud": 100},
        {"flash_baud": 10_000_000},
        {"connect_settle_delay": -0.5},
        {"reset_boot_wait": 120.0},
        {"read_chunk_size": 0},
        {"usb_product_id": 0x1_0000},
        {"serial_port": "   "},
        {"unknown_key": True},
    ],
)
def test_invalid_values_are_rejected(raw: dict) -> None:
    with pytest.raises(ValueError):
        build_session_config(raw)


def test_error_names_offending_field() -> None:
    with pytest.raises(ValueError) as excinfo:
        build_session_config({"monitor_baud": 1})
    assert "monitor_baud" in str(excinfo.value)


def test_lenient_string_numbers_are_accepted() -> None:
    config = build_session_config({"monitor_baud": "57600", "read_settle_delay": "0.25"})
    assert config.monitor_baud == 57600
    assert config.read_settle_delay == pytest.approx(0.25)


def test_unreadable_or_malformed_file(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="Cannot read"):
        load_session_config(tmp_path / "missing.toml")

    broken = tmp_path / "broken.toml"
    broken.write_text("[flashlink\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Malformed"):
        load_session_config(broken)

    scalar = tmp_path / "scalar.toml"
    scalar.write_text('flashlink = "oops"\n', encoding="utf-8")
    with pytest.raises(ValueError, match="must be a table"):
        load_session_config(scalar)
