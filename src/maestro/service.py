"""Maestro service — the operations exposed to the UI command layer.

Every mutating operation schedules a snapshot write and returns without
waiting for it. A failed write is logged and never undoes the mutation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from pathlib import Path

from maestro.config import MaestroConfig
from maestro.errors import PersistenceError
from maestro.process.managed import ManagedProcess, ManagedProcessStatus, ProcessSource
from maestro.pty.manager import PtyManager
from maestro.pty.session import resolve_shell
from maestro.session.events import EventSink
from maestro.session.manager import SessionStore
from maestro.session.persistence import JsonSessionStore, PersistenceGateway
from maestro.session.types import Session, SessionUpdate, TerminalMode
from maestro.url_detection import DetectedServer, UrlWatcher

logger = logging.getLogger(__name__)


def _canonical(path: str) -> str:
    return str(Path(path).expanduser().resolve())


class MaestroService:
    """Session, process and pty operations behind one facade."""

    def __init__(
        self,
        config: MaestroConfig | None = None,
        sink: EventSink | None = None,
        gateway: PersistenceGateway | None = None,
        store: SessionStore | None = None,
        pty_manager: PtyManager | None = None,
    ) -> None:
        self.config = config or MaestroConfig()
        self.store = store or SessionStore(sink=sink)
        self.pty = pty_manager or PtyManager(sink=sink, config=self.config.pty)
        self.gateway: PersistenceGateway = gateway or JsonSessionStore(
            self.config.store_path
        )
        self._pending: set[asyncio.Task[None]] = set()

    # -- persistence -------------------------------------------------------

    async def restore(self) -> list[Session]:
        """Load the persisted snapshot into the store (startup)."""
        try:
            sessions = await self.gateway.load()
        except PersistenceError as e:
            logger.warning("Failed to load sessions: %s", e.message)
            return []
        self.store.restore(sessions)
        return self.store.list()

    def _persist(self) -> None:
        sessions = self.store.get_persistable_sessions()
        task = asyncio.get_running_loop().create_task(self._save(sessions))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _save(self, sessions: list[Session]) -> None:
        try:
            await self.gateway.save(sessions)
        except PersistenceError as e:
            logger.warning("Failed to persist sessions (%s): %s", e.code, e.message)
        except Exception:
            logger.exception("Failed to persist sessions")

    async def flush(self) -> None:
        """Wait for every scheduled snapshot write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # -- sessions ----------------------------------------------------------

    async def create_session(
        self,
        mode: TerminalMode | None = None,
        working_directory: str | None = None,
    ) -> Session:
        session = self.store.create(mode, working_directory)
        self._persist()
        return session

    async def list_sessions(self) -> list[Session]:
        return self.store.list()

    async def get_session(self, session_id: str) -> Session | None:
        return self.store.get(session_id)

    async def update_session(
        self, session_id: str, update: SessionUpdate
    ) -> Session | None:
        """Apply a client update. The terminal pid and launch flag are not client-settable."""
        update = replace(update, terminal_pid=None, is_terminal_launched=None)
        session = self.store.update(session_id, update)
        self._persist()
        return session

    async def delete_session(self, session_id: str) -> None:
        self._kill_pty(session_id)
        self.store.delete(session_id)
        self._persist()

    async def remove_sessions_for_project(self, project_path: str) -> list[Session]:
        """Delete every session working in ``project_path``, killing its pty."""
        target = _canonical(project_path)
        removed: list[Session] = []
        for session in self.store.list():
            if session.working_directory is None:
                continue
            if _canonical(session.working_directory) != target:
                continue
            self._kill_pty(session.id)
            deleted = self.store.delete(session.id)
            if deleted is not None:
                removed.append(deleted)
        if removed:
            logger.info("Removed %d session(s) for %s", len(removed), target)
            self._persist()
        return removed

    async def get_session_processes(self, session_id: str) -> list[ManagedProcess]:
        return self.store.process_registry.list_for_session(session_id)

    async def session_stopped(
        self,
        session_id: str,
        exit_code: int | None = None,
        reason: str = "exited",
    ) -> Session | None:
        """Reconcile a session after its shell exited."""
        self._forget_terminal(session_id)
        session = self.store.session_stopped(session_id, exit_code, reason)
        self._persist()
        return session

    # -- pty ---------------------------------------------------------------

    async def spawn_session_pty(
        self, session_id: str, working_directory: str | None = None
    ) -> int:
        """Spawn a shell for a session, with dev-server detection on its output.

        Raises:
            SpawnError: the pty or shell could not be started.
        """
        session = self.store.get(session_id)
        if working_directory is None and session is not None:
            working_directory = session.working_directory

        def _on_detect(server: DetectedServer) -> None:
            self.store.set_server_url(session_id, server.url, server.port)

        watcher = UrlWatcher(_on_detect, window_chars=self.config.detection.window_chars)
        pid = await asyncio.to_thread(
            self.pty.spawn, session_id, working_directory, watcher
        )

        if session is None:
            logger.warning(
                "Spawned PTY for unknown session %s; pid %d is not tracked",
                session_id,
                pid,
            )
            return pid

        # A respawn without kill replaces the terminal record.
        self._forget_terminal(session_id)
        registry = self.store.process_registry
        registry.register(
            session_id,
            pid,
            ProcessSource.TERMINAL,
            resolve_shell(self.config.pty.shell),
            pgid=self.pty.get_pgid(session_id),
        )
        registry.update_status(pid, ManagedProcessStatus.RUNNING)
        self.store.set_terminal_pid(session_id, pid)

        if self.config.auto_launch_cli:
            self._launch_cli(session)

        self._persist()
        return pid

    def _launch_cli(self, session: Session) -> None:
        command = session.mode.command
        if not command:
            return
        self.pty.write(session.id, f"{command}\n")
        self.store.update(session.id, SessionUpdate(is_cli_running=True))

    async def write_pty(self, session_id: str, data: bytes | str) -> None:
        await asyncio.to_thread(self.pty.write, session_id, data)

    async def resize_pty(self, session_id: str, cols: int, rows: int) -> None:
        self.pty.resize(session_id, cols, rows)

    async def kill_pty(self, session_id: str) -> None:
        self._kill_pty(session_id)

    def _kill_pty(self, session_id: str) -> None:
        self.pty.kill(session_id)
        self._forget_terminal(session_id)

    def _forget_terminal(self, session_id: str) -> None:
        registry = self.store.process_registry
        for process in registry.list_for_session(session_id):
            if process.source == ProcessSource.TERMINAL:
                registry.remove(process.pid)

    async def shutdown(self) -> None:
        """Kill every pty and wait for pending snapshot writes."""
        for session_id in self.pty.session_ids():
            self._kill_pty(session_id)
        await self.flush()
