"""CLI entry point for maestro."""

from __future__ import annotations

import asyncio
import logging
import sys

import typer
from rich.console import Console
from rich.table import Table

from maestro.config import MaestroConfig
from maestro.errors import PersistenceError, SpawnError
from maestro.session.events import EventType, Wire
from maestro.session.persistence import JsonSessionStore
from maestro.session.types import TerminalMode

app = typer.Typer(
    name="maestro",
    help="Run and track concurrent AI-agent terminal sessions.",
    no_args_is_help=True,
)

POLL_INTERVAL = 0.2


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _load_config(config_file: str | None, store: str | None = None) -> MaestroConfig:
    config = MaestroConfig.load(config_file)
    if store:
        config.store_path = store
    return config


@app.command()
def run(
    mode: TerminalMode = typer.Option(
        TerminalMode.PLAIN_TERMINAL, "--mode", "-m", help="Session terminal mode."
    ),
    cwd: str | None = typer.Option(
        None, "--cwd", "-d", help="Working directory (default: home)."
    ),
    exec_cmd: str | None = typer.Option(
        None,
        "--exec",
        "-e",
        help="Command to run in the session's shell; the session ends with it.",
    ),
    keep: bool = typer.Option(
        False, "--keep", "-k", help="Keep the session in the snapshot afterwards."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Start a session, stream its terminal output and report dev servers."""
    setup_logging(verbose)
    config = _load_config(config_file)
    try:
        asyncio.run(_run_session(config, mode, cwd, exec_cmd, keep))
    except SpawnError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(1)
    except KeyboardInterrupt:
        pass


async def _run_session(
    config: MaestroConfig,
    mode: TerminalMode,
    cwd: str | None,
    exec_cmd: str | None,
    keep: bool,
) -> None:
    from maestro.service import MaestroService

    wire = Wire()
    service = MaestroService(config=config, sink=wire)
    await service.restore()

    session = await service.create_session(mode, cwd)
    queue = wire.subscribe()
    typer.secho(
        f"Session #{session.numeric_id} ({mode.display_name})",
        fg=typer.colors.CYAN,
        err=True,
    )

    exit_code: int | None = None
    reason = "killed"
    try:
        pid = await service.spawn_session_pty(session.id)
        typer.secho(f"Shell pid {pid}", fg=typer.colors.CYAN, err=True)
        if exec_cmd:
            await service.write_pty(session.id, f"exec {exec_cmd}\n")

        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=POLL_INTERVAL)
            except asyncio.TimeoutError:
                if not service.pty.is_running(session.id):
                    exit_code = service.pty.exit_code(session.id)
                    reason = "exited"
                    break
                continue
            if event is None:
                break
            if event.type == EventType.PTY_OUTPUT:
                sys.stdout.write(event.data.get("data", ""))
                sys.stdout.flush()
            elif event.type == EventType.SESSION_SERVER_DETECTED:
                typer.secho(
                    f"\n[server] {event.data['url']}", fg=typer.colors.GREEN, err=True
                )
    finally:
        await service.kill_pty(session.id)
        await service.session_stopped(session.id, exit_code, reason)
        if not keep:
            await service.delete_session(session.id)
        wire.close()
        await service.shutdown()
        typer.secho(
            f"\nSession #{session.numeric_id} {reason} (code={exit_code})",
            fg=typer.colors.CYAN,
            err=True,
        )


@app.command("list")
def list_sessions(
    store: str | None = typer.Option(None, "--store", "-s", help="Snapshot file."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Show the persisted sessions."""
    config = _load_config(config_file, store)
    sessions = asyncio.run(JsonSessionStore(config.store_path).load())
    if not sessions:
        typer.echo("No saved sessions.")
        return

    table = Table(title="Sessions")
    table.add_column("#", justify="right")
    table.add_column("ID")
    table.add_column("Mode")
    table.add_column("Directory")
    table.add_column("Branch")
    for s in sorted(sessions, key=lambda s: s.numeric_id):
        table.add_row(
            str(s.numeric_id),
            s.id,
            s.mode.display_name,
            s.working_directory or "-",
            s.assigned_branch or "-",
        )
    Console().print(table)


@app.command()
def forget(
    store: str | None = typer.Option(None, "--store", "-s", help="Snapshot file."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Delete the persisted session snapshot."""
    config = _load_config(config_file, store)
    try:
        asyncio.run(JsonSessionStore(config.store_path).clear())
    except PersistenceError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(1)
    typer.echo("Session snapshot cleared.")


if __name__ == "__main__":
    app()
