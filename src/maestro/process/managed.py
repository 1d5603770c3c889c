"""ManagedProcess — one OS process tracked on behalf of a session."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class ManagedProcessStatus(enum.StrEnum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class ProcessSource(enum.StrEnum):
    """What kind of process this is, relative to its session."""

    TERMINAL = "terminal"
    DEV_SERVER = "devServer"
    BACKGROUND = "background"
    SYSTEM = "system"


ACTIVE_STATUSES = frozenset({ManagedProcessStatus.STARTING, ManagedProcessStatus.RUNNING})


@dataclass
class ManagedProcess:
    """A process tracked by the registry.

    Holds the owning session id only as a key; the registry does not keep
    sessions alive. ``pgid`` defaults to the pid.
    """

    session_id: str
    pid: int
    source: ProcessSource
    command: str
    pgid: int = field(default=0)
    status: ManagedProcessStatus = ManagedProcessStatus.STARTING
    port: int | None = None
    server_url: str | None = None

    def __post_init__(self) -> None:
        if not self.pgid:
            self.pgid = self.pid

    @property
    def active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def set_server(self, port: int, url: str) -> None:
        self.port = port
        self.server_url = url

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "pid": self.pid,
            "pgid": self.pgid,
            "source": str(self.source),
            "command": self.command,
            "status": str(self.status),
            "port": self.port,
            "serverUrl": self.server_url,
        }
