"""PTY session — the live handles behind one session's terminal."""

from __future__ import annotations

import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
import threading
from dataclasses import dataclass, field
from pathlib import Path

from maestro.errors import SpawnError

logger = logging.getLogger(__name__)

DEFAULT_SHELL = "/bin/bash"


def resolve_shell(override: str | None = None) -> str:
    """Shell to launch: explicit override, then $SHELL, then /bin/bash."""
    return override or os.environ.get("SHELL") or DEFAULT_SHELL


def resolve_cwd(working_directory: str | None) -> str | None:
    """Working directory: the argument, else the user's home, else unset."""
    if working_directory:
        return working_directory
    try:
        return str(Path.home())
    except RuntimeError:
        return None


def set_window_size(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(): make the pty slave (stdin) the
    # controlling terminal so job control and ^C reach the foreground group.
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


@dataclass
class PtySession:
    """Master/write handles and the child process for one session id.

    Runtime only; never persisted. The reader thread works on its own
    duplicate of the master fd, so closing these handles does not race
    with reads.
    """

    session_id: str
    command: list[str]
    master_fd: int
    write_fd: int
    proc: subprocess.Popen
    pid: int
    pgid: int
    _io_lock: threading.Lock = field(default_factory=threading.Lock, init=False)
    _closed: bool = field(default=False, init=False)

    @classmethod
    def open(
        cls,
        session_id: str,
        command: list[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        cols: int = 80,
        rows: int = 24,
    ) -> PtySession:
        """Open a pty pair and launch ``command`` on its slave side.

        The child gets its own session and process group so ``kill()`` can
        take down the whole tree.

        Raises:
            SpawnError: the pty could not be allocated or the command
                could not be started.
        """
        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise SpawnError(
                f"Failed to allocate pty for session {session_id}: {e}",
                details={"session_id": session_id},
            ) from e

        try:
            set_window_size(slave_fd, cols, rows)
            proc = subprocess.Popen(
                command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
                env={**os.environ, **(env or {})},
                cwd=cwd,
                close_fds=True,
            )
        except (OSError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            raise SpawnError(
                f"Failed to launch {' '.join(command)} for session {session_id}: {e}",
                details={"session_id": session_id, "command": command, "cwd": cwd},
            ) from e
        finally:
            # Parent always closes the slave side
            os.close(slave_fd)

        try:
            pgid = os.getpgid(proc.pid)
        except ProcessLookupError:
            pgid = proc.pid

        return cls(
            session_id=session_id,
            command=command,
            master_fd=master_fd,
            write_fd=os.dup(master_fd),
            proc=proc,
            pid=proc.pid,
            pgid=pgid,
        )

    def clone_reader(self) -> int:
        """A duplicate of the master fd, owned (and closed) by the reader."""
        return os.dup(self.master_fd)

    def write_all(self, data: bytes) -> None:
        """Write every byte before returning."""
        with self._io_lock:
            if self._closed:
                return
            view = memoryview(data)
            while view:
                written = os.write(self.write_fd, view)
                view = view[written:]

    def resize(self, cols: int, rows: int) -> None:
        with self._io_lock:
            if self._closed:
                return
            set_window_size(self.master_fd, cols, rows)

    def kill(self) -> None:
        """Request termination of the process group and release the handles.

        Does not wait for the process to exit.
        """
        with self._io_lock:
            if self._closed:
                return
            self._closed = True
            try:
                os.killpg(self.pgid, signal.SIGKILL)
            except ProcessLookupError:
                logger.debug("Process group already gone: %d", self.pgid)
            except PermissionError:
                self.proc.kill()
            for fd in (self.write_fd, self.master_fd):
                try:
                    os.close(fd)
                except OSError:
                    pass
        logger.info("Killed PTY for session %s (pgid=%d)", self.session_id, self.pgid)

    @property
    def alive(self) -> bool:
        return not self._closed and self.proc.poll() is None

    @property
    def exit_code(self) -> int | None:
        return self.proc.poll()
