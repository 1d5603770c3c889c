"""Session store — the authoritative set of sessions."""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Iterable

from maestro.process.registry import ProcessRegistry
from maestro.session import events
from maestro.session.events import EventSink
from maestro.session.types import Session, SessionStatus, SessionUpdate, TerminalMode

logger = logging.getLogger(__name__)


class SessionStore:
    """Owns session records, numeric-id allocation and field-diffing updates.

    - All map access goes through one lock; events are published after
      the lock is released.
    - Callers always receive copies, never the stored records.
    - Unknown ids are not errors: methods return ``None``.
    """

    def __init__(
        self,
        sink: EventSink | None = None,
        process_registry: ProcessRegistry | None = None,
    ) -> None:
        self._sessions: dict[str, Session] = {}
        self._next_numeric_id = 1
        self._lock = threading.Lock()
        self._sink = sink
        self._process_registry = process_registry or ProcessRegistry()

    @property
    def process_registry(self) -> ProcessRegistry:
        return self._process_registry

    def create(
        self,
        mode: TerminalMode | None = None,
        working_directory: str | None = None,
    ) -> Session:
        """Create a session with the next numeric id and publish it."""
        with self._lock:
            session = Session(numeric_id=self._next_numeric_id)
            self._next_numeric_id += 1
            if mode is not None:
                session.mode = mode
            if working_directory is not None:
                session.working_directory = working_directory
            self._sessions[session.id] = session
            snapshot = replace(session)

        logger.info(
            "Created session %s (#%d, %s)",
            snapshot.id,
            snapshot.numeric_id,
            snapshot.mode.display_name,
        )
        events.publish(self._sink, events.session_created(snapshot))
        return replace(snapshot)

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            return replace(session) if session else None

    def list(self) -> list[Session]:
        """All sessions ordered by numeric id."""
        with self._lock:
            sessions = [replace(s) for s in self._sessions.values()]
        sessions.sort(key=lambda s: s.numeric_id)
        return sessions

    def update(self, session_id: str, update: SessionUpdate) -> Session | None:
        """Apply a partial update and publish the resulting diff.

        Nothing is published when no field changed.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            old_status = session.status
            changed = update.apply_to(session)
            snapshot = replace(session)

        if changed:
            events.publish(self._sink, events.session_updated(snapshot, changed))
        if "status" in changed:
            logger.debug(
                "Session %s status %s -> %s", session_id, old_status, snapshot.status
            )
            events.publish(
                self._sink,
                events.session_status_changed(session_id, old_status, snapshot.status),
            )
        return replace(snapshot)

    def update_status(self, session_id: str, status: SessionStatus) -> Session | None:
        return self.update(session_id, SessionUpdate(status=status))

    def set_terminal_pid(self, session_id: str, pid: int) -> Session | None:
        return self.update(
            session_id, SessionUpdate(terminal_pid=pid, is_terminal_launched=True)
        )

    def set_server_url(self, session_id: str, url: str, port: int) -> Session | None:
        """Record a detected dev server for a session."""
        events.publish(self._sink, events.session_server_detected(session_id, url, port))
        return self.update(session_id, SessionUpdate(server_url=url, assigned_port=port))

    def session_stopped(
        self, session_id: str, exit_code: int | None, reason: str
    ) -> Session | None:
        """Mark a session's terminal as stopped.

        ``terminal_pid`` is left as-is; only the running flags and status
        change.
        """
        events.publish(self._sink, events.session_stopped(session_id, exit_code, reason))
        return self.update(
            session_id,
            SessionUpdate(
                status=SessionStatus.DONE,
                is_terminal_launched=False,
                is_cli_running=False,
            ),
        )

    def delete(self, session_id: str) -> Session | None:
        """Remove a session and every process tracked for it."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return None

        removed = self._process_registry.remove_all_for_session(session_id)
        logger.info(
            "Deleted session %s (#%d, %d process(es) dropped)",
            session_id,
            session.numeric_id,
            len(removed),
        )
        events.publish(self._sink, events.session_deleted(session_id))
        return session

    def restore(self, sessions: Iterable[Session]) -> None:
        """Insert previously persisted sessions (called at startup).

        The numeric-id counter continues after the highest restored id;
        an empty snapshot leaves it untouched.
        """
        restored: list[Session] = []
        with self._lock:
            for session in sessions:
                stored = replace(session)
                self._sessions[stored.id] = stored
                restored.append(replace(stored))
            if restored:
                max_numeric_id = max(s.numeric_id for s in restored)
                # Never move the counter backwards past ids already handed out.
                self._next_numeric_id = max(self._next_numeric_id, max_numeric_id + 1)

        for session in restored:
            events.publish(self._sink, events.session_created(session))
        if restored:
            logger.info("Restored %d session(s)", len(restored))

    def get_persistable_sessions(self) -> list[Session]:
        """Sessions to snapshot; the persistence layer picks the fields."""
        return self.list()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions
