from __future__ import annotations

import asyncio
import os
import shlex
import signal
import tempfile
from typing import Callable

from .backend import Backend, BackendState
from .config import AppConfig
from .events import log_event
from .ports import allocate_port
from .settings import settings

ExitCallback = Callable[[Backend], None]


class SpawnError(Exception):
    pass


class ShutdownError(Exception):
    pass


def render_command(app: AppConfig, port: int, pidfile: str | None) -> str | list[str]:
    """Substitute {port} and {pidfile} into the app's command.

    Placeholders that do not appear are appended positionally (port, then
    pidfile), the calling convention older backends rely on.
    Returns a string for shell mode and an argv list otherwise.
    """
    subs = {"{port}": str(port), "{pidfile}": pidfile or ""}

    def _sub(s: str) -> str:
        for k, v in subs.items():
            s = s.replace(k, v)
        return s

    if app.shell:
        cmd = app.command if isinstance(app.command, str) else shlex.join(app.command)
        tail = []
        if "{port}" not in cmd:
            tail.append(str(port))
        if pidfile and "{pidfile}" not in cmd:
            tail.append(shlex.quote(pidfile))
        return " ".join([_sub(cmd), *tail])

    argv = shlex.split(app.command) if isinstance(app.command, str) else list(app.command)
    has_port = any("{port}" in a for a in argv)
    has_pidfile = any("{pidfile}" in a for a in argv)
    argv = [_sub(a) for a in argv]
    if not has_port:
        argv.append(str(port))
    if pidfile and not has_pidfile:
        argv.append(pidfile)
    return argv


def _make_pidfile() -> str:
    fd, path = tempfile.mkstemp(prefix="rainbowd-", suffix=".pid")
    os.close(fd)
    return path


def _read_pid(path: str) -> int:
    with open(path, "r", encoding="utf-8") as f:
        raw = f.read().strip()
    if not raw:
        raise ShutdownError(f"pidfile {path} is empty")
    return int(raw)


def _remove_quietly(path: str | None) -> None:
    if not path:
        return
    try:
        os.unlink(path)
    except OSError:
        pass


class ProcessSupervisor:
    """Starts backend processes and reports when they exit.

    Each backend runs in its own session, so its pid is also its process group
    id and a shutdown reaches any children it started (e.g. behind a shell).
    In pidfile mode the pid the backend wrote itself is signalled instead.
    """

    def __init__(
        self,
        port_allocator: Callable[[str], int] = allocate_port,
        output_limit: int | None = None,
    ) -> None:
        self.port_allocator = port_allocator
        self.output_limit = max(1, output_limit or settings.output_tail_bytes)
        self._tracked: dict[str, Backend] = {}
        self._watchers: dict[str, asyncio.Task[None]] = {}
        self._closing = False

    @property
    def tracked(self) -> list[Backend]:
        return list(self._tracked.values())

    def spawn(self, app: AppConfig, port: int | None = None, on_exit: ExitCallback | None = None) -> Backend:
        """Start a backend for app and return it in LAUNCHING state.

        The process is started in the background; its exit (or failure to
        start) is reported through on_exit after the backend is marked DEAD.
        """
        if self._closing:
            raise SpawnError("supervisor is shutting down")
        if port is None:
            try:
                port = self.port_allocator(app.bind_address)
            except OSError as e:
                raise SpawnError(f"Couldn't find a port: {e}") from e

        pidfile = _make_pidfile() if app.pidfile else None
        backend = Backend(app=app.name, port=port, pidfile=pidfile)
        cmd = render_command(app, port, pidfile)

        self._tracked[backend.id] = backend
        self._watchers[backend.id] = asyncio.get_running_loop().create_task(
            self._run(app, backend, cmd, on_exit)
        )
        return backend

    async def _start(self, app: AppConfig, cmd: str | list[str]) -> asyncio.subprocess.Process:
        pipe = asyncio.subprocess.PIPE if app.capture_output else None
        stderr = asyncio.subprocess.STDOUT if app.capture_output else None
        if isinstance(cmd, str):
            return await asyncio.create_subprocess_shell(
                cmd, stdout=pipe, stderr=stderr, start_new_session=True
            )
        return await asyncio.create_subprocess_exec(
            *cmd, stdout=pipe, stderr=stderr, start_new_session=True
        )

    async def _run(self, app: AppConfig, backend: Backend, cmd: str | list[str], on_exit: ExitCallback | None) -> None:
        try:
            try:
                process = await self._start(app, cmd)
            except OSError as e:
                backend.last_error = f"Error running the backend: {e}"
                log_event("ERROR", backend.last_error, app=backend.app, backend=backend.id)
                return

            backend.process = process
            log_event(
                "INFO",
                f"Started backend on port {backend.port} (pid {process.pid})",
                app=backend.app,
                backend=backend.id,
            )
            if self._closing:
                try:
                    self._signal(backend, signal.SIGTERM, fallback=True)
                except (OSError, ValueError, ShutdownError):
                    pass

            if app.capture_output and process.stdout is not None:
                tail = await self._read_tail(process.stdout)
                await process.wait()
                backend.output = tail.decode("utf-8", errors="replace")
            else:
                await process.wait()
            backend.returncode = process.returncode
        finally:
            self._mark_dead(backend, on_exit)

    async def _read_tail(self, stream: asyncio.StreamReader) -> bytes:
        """Drain stream to EOF, keeping only the last output_limit bytes."""
        tail = bytearray()
        while True:
            chunk = await stream.read(65536)
            if not chunk:
                return bytes(tail)
            tail += chunk
            if len(tail) > self.output_limit:
                del tail[: len(tail) - self.output_limit]

    def _mark_dead(self, backend: Backend, on_exit: ExitCallback | None) -> None:
        self._tracked.pop(backend.id, None)
        self._watchers.pop(backend.id, None)
        _remove_quietly(backend.pidfile)
        if backend.state is not BackendState.DEAD:
            backend.transition(BackendState.DEAD)
        if on_exit is not None:
            on_exit(backend)

    def _signal(self, backend: Backend, sig: signal.Signals, fallback: bool = False) -> int:
        """Send sig to the backend and return the pid that was signalled.

        With fallback, an unreadable pidfile falls back to the process group
        we started.
        """
        if backend.pidfile:
            try:
                pid = _read_pid(backend.pidfile)
                os.kill(pid, sig)
                return pid
            except (OSError, ValueError, ShutdownError):
                if not fallback or backend.process is None:
                    raise
        if backend.process is None:
            raise ShutdownError("process has not started yet")
        pid = backend.process.pid
        os.killpg(pid, sig)
        return pid

    async def shutdown(self, backend: Backend, sig: signal.Signals = signal.SIGTERM) -> bool:
        """Ask a backend to terminate. Failures are logged, never raised."""
        if not backend.alive:
            return False
        try:
            if backend.pidfile:
                # The file read is the only blocking step; keep it off the loop.
                pid = await asyncio.to_thread(_read_pid, backend.pidfile)
                os.kill(pid, sig)
            else:
                pid = self._signal(backend, sig)
        except (OSError, ValueError, ShutdownError) as e:
            backend.last_error = f"Couldn't signal backend: {e}"
            log_event("ERROR", backend.last_error, app=backend.app, backend=backend.id)
            return False
        log_event("INFO", f"Sent {sig.name} to pid {pid}", app=backend.app, backend=backend.id)
        return True

    def kill_all(self) -> None:
        """Best-effort SIGTERM to every tracked backend; errors are ignored."""
        self._closing = True
        for backend in self.tracked:
            if not backend.alive:
                continue
            try:
                self._signal(backend, signal.SIGTERM, fallback=True)
            except (OSError, ValueError, ShutdownError):
                continue

    async def wait_closed(self, timeout_s: float = 5.0) -> None:
        watchers = list(self._watchers.values())
        if not watchers:
            return
        _done, pending = await asyncio.wait(watchers, timeout=timeout_s)
        for backend in self.tracked:
            if backend.process is not None and backend.process.returncode is None:
                try:
                    self._signal(backend, signal.SIGKILL, fallback=True)
                except (OSError, ValueError, ShutdownError):
                    continue
        if pending:
            await asyncio.wait(pending, timeout=1.0)
