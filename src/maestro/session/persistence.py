"""Session snapshot persistence.

Only the fields that mean something after a restart are stored: ids,
mode, working directory, branch and custom run command. Pids, status,
server URLs and ports are runtime state and are dropped.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import aiofiles
import aiofiles.os
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from maestro.errors import PersistenceError
from maestro.session.types import Session, TerminalMode

logger = logging.getLogger(__name__)

SESSIONS_KEY = "sessions"


class PersistedSession(BaseModel):
    """Minimal session record as stored on disk (camelCase keys)."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    numeric_id: int = Field(alias="numericId")
    mode: TerminalMode = TerminalMode.CLAUDE_CODE
    working_directory: str | None = Field(default=None, alias="workingDirectory")
    assigned_branch: str | None = Field(default=None, alias="assignedBranch")
    custom_run_command: str | None = Field(default=None, alias="customRunCommand")

    @classmethod
    def from_session(cls, session: Session) -> PersistedSession:
        return cls(
            id=session.id,
            numeric_id=session.numeric_id,
            mode=session.mode,
            working_directory=session.working_directory,
            assigned_branch=session.assigned_branch,
            custom_run_command=session.custom_run_command,
        )

    def into_session(self) -> Session:
        """Rebuild a session with fresh timestamps and default runtime state."""
        return Session(
            id=self.id,
            numeric_id=self.numeric_id,
            mode=self.mode,
            working_directory=self.working_directory,
            assigned_branch=self.assigned_branch,
            custom_run_command=self.custom_run_command,
        )


_RECORDS = TypeAdapter(list[PersistedSession])


@runtime_checkable
class PersistenceGateway(Protocol):
    """External store for session snapshots."""

    async def load(self) -> list[Session]: ...

    async def save(self, sessions: list[Session]) -> None: ...

    async def clear(self) -> None: ...


def serialize_sessions(sessions: list[Session]) -> dict[str, Any]:
    return {
        SESSIONS_KEY: [
            PersistedSession.from_session(s).model_dump(mode="json", by_alias=True)
            for s in sessions
        ]
    }


def deserialize_sessions(data: dict[str, Any]) -> list[Session]:
    """Parse a snapshot document.

    Raises ValidationError when the record list or any record is malformed.
    """
    records = _RECORDS.validate_python(data.get(SESSIONS_KEY) or [])
    return [r.into_session() for r in records]


class JsonSessionStore:
    """Session snapshots in a single JSON file.

    Writes go to a temp file that is fsynced and renamed over the target,
    so a crash never leaves a half-written snapshot. Saves are
    serialized and transient OS errors are retried.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self._write_lock = asyncio.Lock()

    async def load(self) -> list[Session]:
        """Load the snapshot; a missing or unreadable file yields no sessions."""
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning("Failed to open session store %s: %s", self.path, e)
            return []

        try:
            data = json.loads(content)
            if not isinstance(data, dict):
                raise ValueError("snapshot is not a JSON object")
            return deserialize_sessions(data)
        except (ValueError, ValidationError) as e:
            logger.warning("Failed to deserialize sessions from %s: %s", self.path, e)
            return []

    async def save(self, sessions: list[Session]) -> None:
        try:
            async with self._write_lock:
                await self._atomic_write(serialize_sessions(sessions))
        except OSError as e:
            raise PersistenceError(
                code="WRITE_FAILED",
                message=f"Failed to write {self.path}: {e}",
                details={"path": str(self.path), "error": str(e)},
            ) from e

    async def clear(self) -> None:
        try:
            await aiofiles.os.remove(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise PersistenceError(
                code="CLEAR_FAILED",
                message=f"Failed to remove {self.path}: {e}",
                details={"path": str(self.path), "error": str(e)},
            ) from e

    @retry(
        retry=retry_if_exception_type(OSError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _atomic_write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        content = json.dumps(data, indent=2)
        try:
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(content)
                await f.flush()
                os.fsync(f.fileno())
            await aiofiles.os.rename(temp_path, self.path)
        except OSError:
            with contextlib.suppress(FileNotFoundError):
                await aiofiles.os.remove(temp_path)
            raise
