import asyncio
import os
import sys

import pytest

from conftest import make_app

from rainbowd.backend import BackendState
from rainbowd.supervisor import ProcessSupervisor, SpawnError, render_command

SLEEPER = "import sys, time; time.sleep(30)"
PID_WRITER = "import os, sys, time; open(sys.argv[2], 'w').write(str(os.getpid())); time.sleep(30)"


def _fixed_port(host):
    return 9555


async def _wait_for(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


def test_render_command_appends_port_and_pidfile():
    app = make_app(command="./server --verbose")
    assert render_command(app, 9000, None) == ["./server", "--verbose", "9000"]
    app = make_app(command=["./server"], pidfile=True)
    assert render_command(app, 9000, "/tmp/x.pid") == ["./server", "9000", "/tmp/x.pid"]


def test_render_command_substitutes_placeholders():
    app = make_app(command=["./server", "--port={port}", "--pidfile", "{pidfile}"], pidfile=True)
    assert render_command(app, 9000, "/tmp/x.pid") == ["./server", "--port=9000", "--pidfile", "/tmp/x.pid"]


def test_render_command_shell_mode():
    app = make_app(command="cd /srv && exec ./server", shell=True)
    assert render_command(app, 9000, None) == "cd /srv && exec ./server 9000"
    app = make_app(command="./server --port {port}", shell=True, pidfile=True)
    assert render_command(app, 9000, "/tmp/a b.pid") == "./server --port 9000 '/tmp/a b.pid'"


def test_spawn_and_shutdown_process_group():
    exits = []

    async def scenario():
        sup = ProcessSupervisor(port_allocator=_fixed_port)
        app = make_app(command=[sys.executable, "-c", SLEEPER])
        backend = sup.spawn(app, on_exit=exits.append)
        assert backend.state is BackendState.LAUNCHING
        assert backend.port == 9555
        await _wait_for(lambda: backend.process is not None)
        assert sup.tracked == [backend]

        assert await sup.shutdown(backend) is True
        await _wait_for(lambda: exits)
        return sup, backend

    sup, backend = asyncio.run(scenario())
    assert exits == [backend]
    assert backend.state is BackendState.DEAD
    assert backend.returncode == -15
    assert sup.tracked == []


def test_pidfile_mode_signals_pid_written_by_backend():
    exits = []

    async def scenario():
        sup = ProcessSupervisor(port_allocator=_fixed_port)
        app = make_app(command=[sys.executable, "-c", PID_WRITER], pidfile=True)
        backend = sup.spawn(app, on_exit=exits.append)
        assert backend.pidfile and os.path.exists(backend.pidfile)
        await _wait_for(lambda: os.path.getsize(backend.pidfile) > 0)
        with open(backend.pidfile) as f:
            assert int(f.read()) == backend.pid

        assert await sup.shutdown(backend) is True
        await _wait_for(lambda: exits)
        return backend

    backend = asyncio.run(scenario())
    assert backend.state is BackendState.DEAD
    assert not os.path.exists(backend.pidfile)


def test_unexpected_exit_is_reported_with_output():
    exits = []

    async def scenario():
        sup = ProcessSupervisor(port_allocator=_fixed_port)
        app = make_app(command=[sys.executable, "-c", "print('boom'); raise SystemExit(3)"], captureOutput=True)
        backend = sup.spawn(app, on_exit=exits.append)
        await _wait_for(lambda: exits)
        return backend

    backend = asyncio.run(scenario())
    assert backend.state is BackendState.DEAD
    assert backend.returncode == 3
    assert "boom" in backend.output


def test_spawn_failure_reports_dead_backend():
    exits = []

    async def scenario():
        sup = ProcessSupervisor(port_allocator=_fixed_port)
        backend = sup.spawn(make_app(command=["/nonexistent/rainbowd-backend"]), on_exit=exits.append)
        await _wait_for(lambda: exits)
        return backend

    backend = asyncio.run(scenario())
    assert backend.state is BackendState.DEAD
    assert backend.process is None
    assert "Error running the backend" in backend.last_error


def test_port_allocation_failure_raises_spawn_error():
    def no_ports(host):
        raise OSError("no ports left")

    async def scenario():
        sup = ProcessSupervisor(port_allocator=no_ports)
        with pytest.raises(SpawnError):
            sup.spawn(make_app())
        return sup

    assert asyncio.run(scenario()).tracked == []


def test_shutdown_with_missing_pidfile_is_logged_not_raised():
    async def scenario():
        sup = ProcessSupervisor(port_allocator=_fixed_port)
        app = make_app(command=[sys.executable, "-c", SLEEPER], pidfile=True)
        backend = sup.spawn(app)
        await _wait_for(lambda: backend.process is not None)
        # backend never writes its pid, so the file stays empty
        ok = await sup.shutdown(backend)
        err = backend.last_error
        sup.kill_all()
        await sup.wait_closed(timeout_s=2)
        return ok, err, backend

    ok, err, backend = asyncio.run(scenario())
    assert ok is False
    assert "Couldn't signal backend" in err
    assert backend.state is BackendState.DEAD


def test_kill_all_stops_every_tracked_backend():
    exits = []

    async def scenario():
        sup = ProcessSupervisor(port_allocator=_fixed_port)
        app = make_app(command=[sys.executable, "-c", SLEEPER])
        backends = [sup.spawn(app, port=9600 + i, on_exit=exits.append) for i in range(3)]
        await _wait_for(lambda: all(b.process is not None for b in backends))
        sup.kill_all()
        await sup.wait_closed(timeout_s=5)
        with pytest.raises(SpawnError):
            sup.spawn(app)
        return backends

    backends = asyncio.run(scenario())
    assert all(b.state is BackendState.DEAD for b in backends)
    assert len(exits) == 3


def test_captured_output_keeps_only_the_tail():
    exits = []
    noisy = "import sys; sys.stdout.write('x' * 200000); print('last words'); raise SystemExit(1)"

    async def scenario():
        sup = ProcessSupervisor(port_allocator=_fixed_port, output_limit=1000)
        app = make_app(command=[sys.executable, "-c", noisy], captureOutput=True)
        backend = sup.spawn(app, on_exit=exits.append)
        await _wait_for(lambda: exits)
        return backend

    backend = asyncio.run(scenario())
    assert backend.returncode == 1
    assert len(backend.output) == 1000
    assert backend.output.endswith("last words\n")
