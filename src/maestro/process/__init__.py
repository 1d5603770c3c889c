"""Process tracking — OS processes spawned on behalf of sessions."""

from maestro.process.managed import ManagedProcess, ManagedProcessStatus, ProcessSource
from maestro.process.registry import ProcessRegistry

__all__ = [
    "ManagedProcess",
    "ManagedProcessStatus",
    "ProcessSource",
    "ProcessRegistry",
]
