"""
rainbowd daemon entry point.

Loads the JSON config, starts one router per app plus the control API on a
single event loop, and deploys every app once at startup.
"""

from __future__ import annotations

import argparse
import asyncio
import atexit
import contextlib
import logging
import signal
import sys
from typing import Iterator

import uvicorn

from .config import AppConfig, ConfigError, load_config
from .control import create_control_app
from .events import configure_logging, log_event
from .gateway import create_gateway_app
from .registry import AppRegistry
from .settings import settings

logger = logging.getLogger(__name__)

STOP_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class Server(uvicorn.Server):
    """uvicorn server that leaves SIGTERM/SIGINT to the daemon.

    Several servers share one loop; if each installed (and later re-raised)
    its own handler, the last one to stop would restore the default action
    and kill the process before the backends are stopped.
    """

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    def install_signal_handlers(self) -> None:
        return None


def build_servers(registry: AppRegistry) -> list[uvicorn.Server]:
    servers: list[uvicorn.Server] = []
    for orch in registry.orchestrators():
        config = uvicorn.Config(
            create_gateway_app(orch),
            host=settings.router_host,
            port=orch.app.port,
            log_level="warning",
            access_log=False,
            loop="asyncio",
        )
        servers.append(Server(config))

    first = registry.orchestrators()[0].app
    control = uvicorn.Config(
        create_control_app(registry),
        host=settings.control_host,
        port=settings.control_port or first.control_port,
        log_level="warning",
        loop="asyncio",
    )
    servers.append(Server(control))
    return servers


async def run(apps: list[AppConfig]) -> None:
    registry = AppRegistry(apps)
    # Last resort if the loop dies without reaching the shutdown below.
    atexit.register(registry.supervisor.kill_all)

    servers = build_servers(registry)
    loop = asyncio.get_running_loop()

    def _stop(signame: str) -> None:
        log_event("INFO", f"Received {signame}, stopping")
        for s in servers:
            s.should_exit = True

    for sig in STOP_SIGNALS:
        loop.add_signal_handler(sig, _stop, sig.name)

    if settings.deploy_on_start:
        registry.start()
    log_event("INFO", f"Managing {len(apps)} app(s): {', '.join(registry.names())}")

    tasks = [asyncio.create_task(s.serve()) for s in servers]
    try:
        _done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for s in servers:
            s.should_exit = True
        if pending:
            await asyncio.wait(pending)
    finally:
        await registry.shutdown()
        for sig in STOP_SIGNALS:
            loop.remove_signal_handler(sig)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="rainbowd - zero-downtime redeploys for a single-host backend",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with the config in the current directory
  rainbowd

  # Explicit config and verbose logging
  rainbowd --config /etc/rainbowd/rainbow.conf.json --log-level DEBUG
        """,
    )
    parser.add_argument(
        "--config",
        default=settings.config_path,
        help=f"Path to the JSON config (default: {settings.config_path})",
    )
    parser.add_argument("--log-level", default=settings.log_level, help="DEBUG, INFO, WARN or ERROR")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    try:
        apps = load_config(args.config)
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        return 1

    try:
        asyncio.run(run(apps))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())
