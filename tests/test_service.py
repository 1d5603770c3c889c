"""Tests for maestro.service.MaestroService."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from pathlib import Path

import pytest
from conftest import RecordingSink, posix_only, wait_until

from maestro.config import MaestroConfig, PtyConfig
from maestro.errors import PersistenceError
from maestro.process import ManagedProcessStatus, ProcessSource
from maestro.service import MaestroService
from maestro.session.events import EventType
from maestro.session.persistence import JsonSessionStore
from maestro.session.types import Session, SessionStatus, SessionUpdate, TerminalMode


class MemoryGateway:
    """In-memory snapshot store that records every save."""

    def __init__(self, sessions: list[Session] | None = None) -> None:
        self.sessions = list(sessions or [])
        self.saves: list[list[Session]] = []

    async def load(self) -> list[Session]:
        return list(self.sessions)

    async def save(self, sessions: list[Session]) -> None:
        self.saves.append(list(sessions))
        self.sessions = list(sessions)

    async def clear(self) -> None:
        self.sessions = []


class FailingGateway(MemoryGateway):
    async def save(self, sessions: list[Session]) -> None:
        raise PersistenceError(code="WRITE_FAILED", message="disk full")


def _config(tmp_path: Path, **overrides) -> MaestroConfig:
    return MaestroConfig(
        pty=PtyConfig(shell="/bin/sh"),
        store_path=str(tmp_path / "sessions.json"),
        **overrides,
    )


@pytest.fixture
async def service(tmp_path: Path, sink: RecordingSink):
    svc = MaestroService(config=_config(tmp_path), sink=sink, gateway=MemoryGateway())
    yield svc
    await svc.shutdown()


# ---------------------------------------------------------------------------
# sessions
# ---------------------------------------------------------------------------


class TestSessions:
    async def test_create_and_list(self, service: MaestroService) -> None:
        a = await service.create_session()
        b = await service.create_session(TerminalMode.GEMINI_CLI, "/work/b")
        listed = await service.list_sessions()
        assert [s.id for s in listed] == [a.id, b.id]
        assert listed[1].mode == TerminalMode.GEMINI_CLI
        assert (await service.get_session(b.id)).working_directory == "/work/b"

    async def test_get_unknown(self, service: MaestroService) -> None:
        assert await service.get_session("nope") is None

    async def test_update_strips_terminal_fields(self, service: MaestroService) -> None:
        s = await service.create_session()
        update = SessionUpdate(
            status=SessionStatus.WORKING, terminal_pid=999, is_terminal_launched=True
        )
        updated = await service.update_session(s.id, update)
        assert updated.status == SessionStatus.WORKING
        assert updated.terminal_pid is None
        assert updated.is_terminal_launched is False
        # The caller's update is left untouched.
        assert update.terminal_pid == 999

    async def test_update_unknown(self, service: MaestroService) -> None:
        assert await service.update_session("nope", SessionUpdate()) is None

    async def test_delete_cascades(self, service: MaestroService, sink: RecordingSink) -> None:
        s = await service.create_session()
        registry = service.store.process_registry
        registry.register(s.id, 4001, ProcessSource.DEV_SERVER, "npm run dev")
        registry.register(s.id, 4002, ProcessSource.BACKGROUND, "tsc --watch")

        await service.delete_session(s.id)

        assert await service.get_session(s.id) is None
        assert await service.get_session_processes(s.id) == []
        assert registry.get(4001) is None
        assert len(sink.of_type(EventType.SESSION_DELETED)) == 1

    async def test_delete_unknown(self, service: MaestroService) -> None:
        await service.delete_session("nope")

    async def test_session_stopped(self, service: MaestroService, sink: RecordingSink) -> None:
        s = await service.create_session()
        service.store.set_terminal_pid(s.id, 4242)
        registry = service.store.process_registry
        registry.register(s.id, 4242, ProcessSource.TERMINAL, "/bin/sh")
        registry.register(s.id, 4243, ProcessSource.DEV_SERVER, "vite")

        stopped = await service.session_stopped(s.id, 0, "exited")

        assert stopped.status == SessionStatus.DONE
        assert stopped.is_terminal_launched is False
        assert [p.pid for p in await service.get_session_processes(s.id)] == [4243]
        assert sink.of_type(EventType.SESSION_STOPPED)[0].data["exitCode"] == 0


class TestRemoveSessionsForProject:
    async def test_removes_matching(self, service: MaestroService, tmp_path: Path) -> None:
        project = tmp_path / "proj"
        project.mkdir()
        other = tmp_path / "other"
        other.mkdir()
        a = await service.create_session(working_directory=str(project))
        b = await service.create_session(
            working_directory=str(project / ".." / "proj")
        )
        keep = await service.create_session(working_directory=str(other))
        no_dir = await service.create_session()

        removed = await service.remove_sessions_for_project(str(project) + "/")

        assert sorted(s.id for s in removed) == sorted([a.id, b.id])
        remaining = [s.id for s in await service.list_sessions()]
        assert remaining == [keep.id, no_dir.id]

    async def test_no_match(self, service: MaestroService, tmp_path: Path) -> None:
        await service.create_session(working_directory=str(tmp_path))
        assert await service.remove_sessions_for_project("/nowhere/at/all") == []
        assert len(await service.list_sessions()) == 1


# ---------------------------------------------------------------------------
# persistence
# ---------------------------------------------------------------------------


class TestPersistence:
    async def test_mutations_schedule_saves(self, service: MaestroService) -> None:
        s = await service.create_session()
        await service.update_session(s.id, SessionUpdate(assigned_branch="main"))
        await service.flush()
        gateway = service.gateway
        assert len(gateway.saves) == 2
        assert gateway.saves[-1][0].assigned_branch == "main"

    async def test_flush_writes_json_snapshot(self, tmp_path: Path) -> None:
        config = _config(tmp_path)
        service = MaestroService(config=config)
        await service.create_session(TerminalMode.OPENAI_CODEX, "/work/x")
        await service.create_session()
        await service.flush()

        loaded = await JsonSessionStore(config.store_path).load()
        assert [s.numeric_id for s in loaded] == [1, 2]
        assert loaded[0].mode == TerminalMode.OPENAI_CODEX

    async def test_restore_continues_numbering(self, tmp_path: Path) -> None:
        gateway = MemoryGateway([Session(numeric_id=3), Session(numeric_id=8)])
        service = MaestroService(config=_config(tmp_path), gateway=gateway)
        restored = await service.restore()
        assert [s.numeric_id for s in restored] == [3, 8]
        created = await service.create_session()
        assert created.numeric_id == 9

    async def test_restore_from_malformed_snapshot(self, tmp_path: Path) -> None:
        config = _config(tmp_path)
        Path(config.store_path).write_text('{"sessions": 5}')
        service = MaestroService(config=config)
        assert await service.restore() == []
        assert (await service.create_session()).numeric_id == 1

    async def test_restart_round_trip(self, tmp_path: Path) -> None:
        config = _config(tmp_path)
        first = MaestroService(config=config)
        s = await first.create_session(TerminalMode.GEMINI_CLI, "/work/app")
        await first.update_session(s.id, SessionUpdate(status=SessionStatus.WORKING))
        await first.shutdown()

        second = MaestroService(config=config)
        restored = await second.restore()
        assert [r.id for r in restored] == [s.id]
        assert restored[0].status == SessionStatus.INITIALIZING
        assert restored[0].mode == TerminalMode.GEMINI_CLI

    async def test_save_failure_keeps_mutation(self, tmp_path: Path, caplog) -> None:
        service = MaestroService(config=_config(tmp_path), gateway=FailingGateway())
        with caplog.at_level(logging.WARNING):
            s = await service.create_session()
            await service.flush()
        assert await service.get_session(s.id) is not None
        assert "disk full" in caplog.text


# ---------------------------------------------------------------------------
# pty
# ---------------------------------------------------------------------------


@posix_only
class TestPty:
    async def test_spawn_registers_terminal(self, service: MaestroService) -> None:
        s = await service.create_session(TerminalMode.PLAIN_TERMINAL)
        pid = await service.spawn_session_pty(s.id)

        session = await service.get_session(s.id)
        assert session.terminal_pid == pid
        assert session.is_terminal_launched is True

        processes = await service.get_session_processes(s.id)
        assert len(processes) == 1
        assert processes[0].pid == pid
        assert processes[0].source == ProcessSource.TERMINAL
        assert processes[0].status == ManagedProcessStatus.RUNNING
        assert processes[0].command == "/bin/sh"

    async def test_kill_pty_forgets_terminal(self, service: MaestroService) -> None:
        s = await service.create_session()
        await service.spawn_session_pty(s.id)
        await service.kill_pty(s.id)
        assert not service.pty.is_running(s.id)
        assert await service.get_session_processes(s.id) == []

    async def test_output_and_server_detection(
        self, service: MaestroService, sink: RecordingSink
    ) -> None:
        s = await service.create_session()
        await service.spawn_session_pty(s.id)
        await service.write_pty(s.id, 'echo "listening on port $((4000 + 321))"\n')

        assert await asyncio.to_thread(
            wait_until,
            lambda: service.store.get(s.id).server_url == "http://localhost:4321",
        )
        session = await service.get_session(s.id)
        assert session.assigned_port == 4321
        detected = sink.of_type(EventType.SESSION_SERVER_DETECTED)
        assert detected[0].data["port"] == 4321
        assert "listening on port 4321" in sink.output(s.id)

    async def test_spawn_uses_session_directory(
        self, service: MaestroService, sink: RecordingSink, tmp_path: Path
    ) -> None:
        s = await service.create_session(working_directory=str(tmp_path))
        await service.spawn_session_pty(s.id)
        await service.write_pty(s.id, "pwd\n")
        resolved = str(tmp_path.resolve())
        assert await asyncio.to_thread(
            wait_until, lambda: resolved in sink.output(s.id)
        )

    async def test_delete_kills_pty(self, service: MaestroService) -> None:
        s = await service.create_session()
        await service.spawn_session_pty(s.id)
        await service.delete_session(s.id)
        assert s.id not in service.pty
        assert service.store.process_registry.list_for_session(s.id) == []

    async def test_resize_unknown_is_noop(self, service: MaestroService) -> None:
        await service.resize_pty("ghost", 100, 30)
        await service.write_pty("ghost", "ls\n")
        await service.kill_pty("ghost")

    async def test_auto_launch_cli(self, tmp_path: Path, sink: RecordingSink) -> None:
        service = MaestroService(
            config=_config(tmp_path, auto_launch_cli=True),
            sink=sink,
            gateway=MemoryGateway(),
        )
        try:
            s = await service.create_session(TerminalMode.CLAUDE_CODE)
            await service.spawn_session_pty(s.id)
            assert (await service.get_session(s.id)).is_cli_running is True
            assert await asyncio.to_thread(
                wait_until, lambda: "claude" in sink.output(s.id)
            )
        finally:
            await service.shutdown()

    async def test_auto_launch_skips_plain_terminal(self, tmp_path: Path) -> None:
        service = MaestroService(
            config=_config(tmp_path, auto_launch_cli=True), gateway=MemoryGateway()
        )
        try:
            s = await service.create_session(TerminalMode.PLAIN_TERMINAL)
            await service.spawn_session_pty(s.id)
            assert (await service.get_session(s.id)).is_cli_running is False
        finally:
            await service.shutdown()

    async def test_shutdown_kills_all(self, tmp_path: Path) -> None:
        service = MaestroService(config=_config(tmp_path), gateway=MemoryGateway())
        a = await service.create_session()
        b = await service.create_session()
        await service.spawn_session_pty(a.id)
        await service.spawn_session_pty(b.id)
        await service.shutdown()
        assert len(service.pty) == 0

    async def test_spawn_unknown_session_not_tracked(self, service: MaestroService) -> None:
        pid = await service.spawn_session_pty("ghost")
        assert pid > 0
        assert service.store.process_registry.get(pid) is None
        assert await service.get_session_processes("ghost") == []
        assert await service.get_session("ghost") is None

    async def test_respawn_replaces_terminal_record(self, service: MaestroService) -> None:
        s = await service.create_session()
        first = await service.spawn_session_pty(s.id)
        try:
            second = await service.spawn_session_pty(s.id)
            processes = await service.get_session_processes(s.id)
            assert [p.pid for p in processes] == [second]
            assert service.store.process_registry.get(first) is None
            assert (await service.get_session(s.id)).terminal_pid == second
        finally:
            os.killpg(first, signal.SIGKILL)
