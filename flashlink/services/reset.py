"""Double hardware-reset sequence run after flashing.

DTR is held low throughout; RTS drives the reset line.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from ..const import DEFAULT_RESET_BOOT_WAIT, DEFAULT_RESET_PULSE
from ..sinks import ConsoleSink
from .read_loop import SleepCallable

logger = logging.getLogger("flashlink.reset")


class ControlSignalSink(Protocol):
    async def set_signals(self, *, dtr: bool | None = None, rts: bool | None = None) -> None: ...


class HardResetSequencer:
    """Drives the assert/release/wait/assert/release reset pattern."""

    def __init__(
        self,
        *,
        pulse: float = DEFAULT_RESET_PULSE,
        boot_wait: float = DEFAULT_RESET_BOOT_WAIT,
        console: ConsoleSink | None = None,
        sleep: SleepCallable = asyncio.sleep,
    ) -> None:
        self._pulse = pulse
        self._boot_wait = boot_wait
        self._console = console
        self._sleep = sleep

    def _say(self, text: str) -> None:
        if self._console is not None:
            self._console.write_line(text)

    async def run(self, sink: ControlSignalSink) -> bool:
        """Run the sequence; failures are logged and reported as ``False``."""
        try:
            self._say("Performing 1st Hard Reset...")
            await sink.set_signals(dtr=False, rts=True)
            await self._sleep(self._pulse)
            await sink.set_signals(dtr=False, rts=False)

            await self._sleep(self._boot_wait)

            await sink.set_signals(dtr=False, rts=True)
            await self._sleep(self._pulse)
            await sink.set_signals(dtr=False, rts=False)
            # RTS is released twice.
            await sink.set_signals(dtr=False, rts=False)
        except Exception as exc:
            logger.warning("Hard reset sequence failed: %s", exc)
            return False

        return True


__all__ = ["ControlSignalSink", "HardResetSequencer"]
