"""Service components coordinated by :class:`flashlink.state.session.Session`."""

from .catalog import DirectoryCatalog, FirmwareCatalog, FirmwareManifest, VersionDescriptor
from .flash import FlashOrchestrator, FlashProtocolEngine, FlashReport, WriteFlashRequest
from .progress import ProgressBarRenderer
from .read_loop import ReadLoopController
from .reset import HardResetSequencer

__all__ = [
    "DirectoryCatalog",
    "FirmwareCatalog",
    "FirmwareManifest",
    "FlashOrchestrator",
    "FlashProtocolEngine",
    "FlashReport",
    "HardResetSequencer",
    "ProgressBarRenderer",
    "ReadLoopController",
    "VersionDescriptor",
    "WriteFlashRequest",
]
