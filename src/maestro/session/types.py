"""Session, SessionStatus, TerminalMode and SessionUpdate."""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _gen_id() -> str:
    return str(uuid.uuid4())


class SessionStatus(enum.StrEnum):
    """Lifecycle status of a session."""

    INITIALIZING = "initializing"
    IDLE = "idle"
    WORKING = "working"
    WAITING = "waiting"
    DONE = "done"
    ERROR = "error"


class TerminalMode(enum.StrEnum):
    """Which CLI tool a session runs."""

    CLAUDE_CODE = "claudeCode"
    GEMINI_CLI = "geminiCli"
    OPENAI_CODEX = "openAiCodex"
    PLAIN_TERMINAL = "plainTerminal"

    @property
    def command(self) -> str | None:
        """Launch command for the mode, or None for a plain shell."""
        return _MODE_COMMANDS[self]

    @property
    def display_name(self) -> str:
        return _MODE_NAMES[self]


_MODE_COMMANDS: dict[TerminalMode, str | None] = {
    TerminalMode.CLAUDE_CODE: "claude",
    TerminalMode.GEMINI_CLI: "gemini",
    TerminalMode.OPENAI_CODEX: "codex",
    TerminalMode.PLAIN_TERMINAL: None,
}

_MODE_NAMES: dict[TerminalMode, str] = {
    TerminalMode.CLAUDE_CODE: "Claude Code",
    TerminalMode.GEMINI_CLI: "Gemini CLI",
    TerminalMode.OPENAI_CODEX: "OpenAI Codex",
    TerminalMode.PLAIN_TERMINAL: "Terminal",
}


@dataclass
class Session:
    """A single terminal/agent workspace.

    ``numeric_id`` is the display ordinal shown in the UI (1, 2, 3...);
    ``id`` is the internal unique key.
    """

    numeric_id: int
    id: str = field(default_factory=_gen_id)
    status: SessionStatus = SessionStatus.INITIALIZING
    mode: TerminalMode = TerminalMode.CLAUDE_CODE
    working_directory: str | None = None
    assigned_branch: str | None = None
    terminal_pid: int | None = None
    is_terminal_launched: bool = False
    is_cli_running: bool = False
    assigned_port: int | None = None
    server_url: str | None = None
    custom_run_command: str | None = None
    created_at: datetime = field(default_factory=_now)
    last_activity: datetime = field(default_factory=_now)

    def touch(self) -> None:
        """Advance ``last_activity``; never leaves it equal to the old value."""
        now = _now()
        if now <= self.last_activity:
            now = self.last_activity + timedelta(microseconds=1)
        self.last_activity = now

    def to_dict(self) -> dict[str, Any]:
        """Wire form: camelCase keys, enums as strings, ISO timestamps."""
        return {
            "id": self.id,
            "numericId": self.numeric_id,
            "status": str(self.status),
            "mode": str(self.mode),
            "workingDirectory": self.working_directory,
            "assignedBranch": self.assigned_branch,
            "terminalPid": self.terminal_pid,
            "isTerminalLaunched": self.is_terminal_launched,
            "isCliRunning": self.is_cli_running,
            "assignedPort": self.assigned_port,
            "serverUrl": self.server_url,
            "customRunCommand": self.custom_run_command,
            "createdAt": self.created_at.isoformat(),
            "lastActivity": self.last_activity.isoformat(),
        }


@dataclass
class SessionUpdate:
    """Partial update for a session. ``None`` means "leave unchanged"."""

    status: SessionStatus | None = None
    mode: TerminalMode | None = None
    working_directory: str | None = None
    assigned_branch: str | None = None
    terminal_pid: int | None = None
    is_terminal_launched: bool | None = None
    is_cli_running: bool | None = None
    assigned_port: int | None = None
    server_url: str | None = None
    custom_run_command: str | None = None

    def apply_to(self, session: Session) -> list[str]:
        """Apply the present fields and return the changed field names.

        Enum and flag fields only count as changed when the value differs.
        Optional string/number fields count as changed whenever supplied,
        even if equal to the current value.
        """
        changed: list[str] = []

        if self.status is not None and session.status != self.status:
            session.status = self.status
            changed.append("status")
        if self.mode is not None and session.mode != self.mode:
            session.mode = self.mode
            changed.append("mode")
        if self.working_directory is not None:
            session.working_directory = self.working_directory
            changed.append("workingDirectory")
        if self.assigned_branch is not None:
            session.assigned_branch = self.assigned_branch
            changed.append("assignedBranch")
        if self.terminal_pid is not None:
            session.terminal_pid = self.terminal_pid
            changed.append("terminalPid")
        if (
            self.is_terminal_launched is not None
            and session.is_terminal_launched != self.is_terminal_launched
        ):
            session.is_terminal_launched = self.is_terminal_launched
            changed.append("isTerminalLaunched")
        if (
            self.is_cli_running is not None
            and session.is_cli_running != self.is_cli_running
        ):
            session.is_cli_running = self.is_cli_running
            changed.append("isCliRunning")
        if self.assigned_port is not None:
            session.assigned_port = self.assigned_port
            changed.append("assignedPort")
        if self.server_url is not None:
            session.server_url = self.server_url
            changed.append("serverUrl")
        if self.custom_run_command is not None:
            session.custom_run_command = self.custom_run_command
            changed.append("customRunCommand")

        if changed:
            session.touch()
        return changed
