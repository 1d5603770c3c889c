"""PTY Manager — one live pseudo-terminal per session id."""

from __future__ import annotations

import codecs
import logging
import os
import threading
from typing import Protocol, runtime_checkable

from maestro.config import PtyConfig
from maestro.pty.session import PtySession, resolve_cwd, resolve_shell
from maestro.session import events
from maestro.session.events import EventSink

logger = logging.getLogger(__name__)


@runtime_checkable
class OutputListener(Protocol):
    """Receives each decoded chunk of a session's pty output."""

    def on_chunk(self, text: str) -> None: ...


class PtyManager:
    """Owns live pty handles keyed by session id.

    - ``spawn`` launches a shell and starts one reader thread for it.
    - ``write``/``resize``/``kill`` on an unknown id are silent no-ops.
    - The manager never marks session status when a shell exits; callers
      reconcile that explicitly.

    Spawning onto an id that still has a live pty replaces the entry
    without killing the old process. The old shell and its reader keep
    running, unreachable from here. Callers must ``kill`` first.
    """

    def __init__(
        self,
        sink: EventSink | None = None,
        config: PtyConfig | None = None,
    ) -> None:
        self._sessions: dict[str, PtySession] = {}
        self._lock = threading.Lock()
        self._sink = sink
        self._config = config or PtyConfig()

    def spawn(
        self,
        session_id: str,
        working_directory: str | None = None,
        listener: OutputListener | None = None,
    ) -> int:
        """Launch a shell for ``session_id`` and return its pid.

        Raises:
            SpawnError: the pty or shell could not be started.
        """
        shell = resolve_shell(self._config.shell)
        cwd = resolve_cwd(working_directory)
        session = PtySession.open(
            session_id,
            [shell],
            cwd=cwd,
            env={"TERM": self._config.term},
            cols=self._config.cols,
            rows=self._config.rows,
        )
        reader_fd = session.clone_reader()

        with self._lock:
            previous = self._sessions.get(session_id)
            self._sessions[session_id] = session

        if previous is not None and previous.alive:
            logger.warning(
                "Session %s respawned without kill; pid %d is orphaned",
                session_id,
                previous.pid,
            )

        reader = threading.Thread(
            target=self._read_loop,
            args=(session_id, reader_fd, listener),
            name=f"pty-reader-{session_id}",
            daemon=True,
        )
        reader.start()

        logger.info(
            "PTY for session %s started: pid=%d pgid=%d shell=%s cwd=%s",
            session_id,
            session.pid,
            session.pgid,
            shell,
            cwd,
        )
        return session.pid

    def _read_loop(
        self, session_id: str, fd: int, listener: OutputListener | None
    ) -> None:
        """Read until EOF or error, forwarding each chunk to the listener and sink."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        chunk_size = self._config.read_chunk_size
        try:
            while True:
                try:
                    data = os.read(fd, chunk_size)
                except OSError:
                    break
                if not data:
                    break
                self._forward(session_id, decoder.decode(data), listener)
            # A multi-byte sequence cut off by EOF becomes U+FFFD.
            self._forward(session_id, decoder.decode(b"", final=True), listener)
        finally:
            try:
                os.close(fd)
            except OSError:
                pass
            logger.info("PTY reader exited for session %s", session_id)

    def _forward(
        self, session_id: str, text: str, listener: OutputListener | None
    ) -> None:
        if not text:
            return
        if listener is not None:
            try:
                listener.on_chunk(text)
            except Exception:
                logger.exception("Output listener failed for session %s", session_id)
        events.publish(self._sink, events.pty_output(session_id, text))

    def write(self, session_id: str, data: bytes | str) -> None:
        """Write input to a session's terminal. No-op without a live pty."""
        session = self._get(session_id)
        if session is None:
            return
        if isinstance(data, str):
            data = data.encode("utf-8")
        try:
            session.write_all(data)
        except OSError as e:
            logger.debug("Write to PTY %s failed: %s", session_id, e)

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        """Resize a session's terminal. No-op without a live pty."""
        session = self._get(session_id)
        if session is None:
            return
        try:
            session.resize(cols, rows)
        except OSError as e:
            logger.debug("Resize of PTY %s failed: %s", session_id, e)

    def kill(self, session_id: str) -> None:
        """Forget a session's pty and terminate its shell. Idempotent."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            session.kill()

    def kill_all(self) -> None:
        """Kill every tracked pty. Called on shutdown."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.kill()
        if sessions:
            logger.info("Killed %d PTY session(s)", len(sessions))

    def is_running(self, session_id: str) -> bool:
        session = self._get(session_id)
        return session is not None and session.alive

    def get_pid(self, session_id: str) -> int | None:
        session = self._get(session_id)
        return session.pid if session else None

    def get_pgid(self, session_id: str) -> int | None:
        session = self._get(session_id)
        return session.pgid if session else None

    def exit_code(self, session_id: str) -> int | None:
        """Exit status of a session's shell, or None while running/unknown."""
        session = self._get(session_id)
        return session.exit_code if session else None

    def session_ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def _get(self, session_id: str) -> PtySession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions
