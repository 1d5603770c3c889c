"""Process registry — OS processes indexed by pid and by owning session."""

from __future__ import annotations

import logging
import threading
from dataclasses import replace

from maestro.process.managed import ManagedProcess, ManagedProcessStatus, ProcessSource

logger = logging.getLogger(__name__)


class ProcessRegistry:
    """Registry tracking managed processes across all sessions.

    Two indices are kept: pid -> process, and session id -> pids. Every
    operation updates both under the same lock, so a pid is never listed
    for a session without a matching process record.

    OS pids are reused after exit, so callers must ``remove()`` an entry
    as soon as its process exits or is killed.
    """

    def __init__(self) -> None:
        self._processes: dict[int, ManagedProcess] = {}
        self._session_pids: dict[str, list[int]] = {}
        self._lock = threading.Lock()

    def register(
        self,
        session_id: str,
        pid: int,
        source: ProcessSource,
        command: str,
        pgid: int | None = None,
    ) -> ManagedProcess:
        """Start tracking a process. A stale record for the same pid is replaced."""
        process = ManagedProcess(
            session_id=session_id,
            pid=pid,
            source=source,
            command=command,
            pgid=pgid or pid,
        )
        with self._lock:
            stale = self._processes.get(pid)
            if stale is not None:
                logger.warning(
                    "pid %d re-registered (was session %s, now %s)",
                    pid,
                    stale.session_id,
                    session_id,
                )
                self._unindex(stale.session_id, pid)
            self._processes[pid] = process
            self._session_pids.setdefault(session_id, []).append(pid)
            return replace(process)

    def get(self, pid: int) -> ManagedProcess | None:
        with self._lock:
            process = self._processes.get(pid)
            return replace(process) if process else None

    def list_for_session(self, session_id: str) -> list[ManagedProcess]:
        """All processes belonging to a session, in registration order."""
        with self._lock:
            return [
                replace(self._processes[pid])
                for pid in self._session_pids.get(session_id, [])
                if pid in self._processes
            ]

    def pids_for_session(self, session_id: str) -> list[int]:
        with self._lock:
            return list(self._session_pids.get(session_id, []))

    def update_status(
        self, pid: int, status: ManagedProcessStatus
    ) -> ManagedProcess | None:
        with self._lock:
            process = self._processes.get(pid)
            if process is None:
                return None
            process.status = status
            return replace(process)

    def update_server_info(self, pid: int, port: int, url: str) -> ManagedProcess | None:
        with self._lock:
            process = self._processes.get(pid)
            if process is None:
                return None
            process.set_server(port, url)
            return replace(process)

    def remove(self, pid: int) -> ManagedProcess | None:
        """Stop tracking a process. Removes it from both indices."""
        with self._lock:
            process = self._processes.pop(pid, None)
            if process is not None:
                self._unindex(process.session_id, pid)
            return process

    def remove_all_for_session(self, session_id: str) -> list[ManagedProcess]:
        """Stop tracking every process of a session."""
        with self._lock:
            pids = self._session_pids.pop(session_id, [])
            removed = [
                self._processes.pop(pid) for pid in pids if pid in self._processes
            ]
        if removed:
            logger.debug(
                "Removed %d process(es) for session %s", len(removed), session_id
            )
        return removed

    def active_count(self, session_id: str) -> int:
        """Number of a session's processes that are starting or running."""
        return sum(1 for p in self.list_for_session(session_id) if p.active)

    def _unindex(self, session_id: str, pid: int) -> None:
        pids = self._session_pids.get(session_id)
        if pids is None:
            return
        pids[:] = [p for p in pids if p != pid]
        if not pids:
            del self._session_pids[session_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._processes)

    def __contains__(self, pid: int) -> bool:
        with self._lock:
            return pid in self._processes
