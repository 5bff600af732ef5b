"""Console progress bar for flash writes."""

from __future__ import annotations

import math
from typing import Protocol

from ..const import DEFAULT_PROGRESS_BAR_WIDTH, PROGRESS_EMPTY_CHAR, PROGRESS_FILLED_CHAR
from ..sinks import ConsoleSink


class ProgressObserver(Protocol):
    def __call__(self, file_index: int, written: int, total: int) -> None: ...


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


class ProgressBarRenderer:
    """Renders ``File i/n [███---] pct%`` lines, skipping repeats."""

    def __init__(self, console: ConsoleSink, total_files: int, *, width: int = DEFAULT_PROGRESS_BAR_WIDTH) -> None:
        if width < 1:
            raise ValueError("progress bar width must be positive")
        self._console = console
        self._total_files = total_files
        self._width = width
        self._last_line = ""

    @property
    def last_line(self) -> str:
        return self._last_line

    def render(self, file_index: int, written: int, total: int) -> str:
        ratio = 1.0 if total <= 0 else min(1.0, max(0.0, written / total))
        filled = _round_half_up(self._width * ratio)
        percentage = _round_half_up(100 * ratio)
        bar = PROGRESS_FILLED_CHAR * filled + PROGRESS_EMPTY_CHAR * (self._width - filled)
        return f"File {file_index + 1}/{self._total_files} [{bar}] {percentage}% "

    def on_progress(self, file_index: int, written: int, total: int) -> None:
        line = self.render(file_index, written, total)
        if line == self._last_line:
            return
        padding = " " * max(0, len(self._last_line) - len(line))
        self._console.write(f"\r{line}{padding}")
        self._last_line = line

    __call__ = on_progress


__all__ = ["ProgressBarRenderer", "ProgressObserver"]
