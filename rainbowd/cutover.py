"""Cutover strategies: decide when a candidate backend may take traffic.

Every strategy hands back a CutoverAttempt whose future resolves exactly once,
to READY. There is no failure value: a candidate that never becomes ready just
never resolves, until the attempt is cancelled (or, for health checks, until
the fail-open deadline passes).
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable

import httpx

from .backend import BackendState
from .config import HealthCheckConfig, WarmupTimerConfig
from .events import log_event
from .health import check_health

logger = logging.getLogger(__name__)

READY = "ready"

REQUIRED_CONSECUTIVE_SUCCESSES = 3


class CutoverAttempt:
    """Cancellable handle on one pending cutover."""

    def __init__(self, port: int) -> None:
        self.port = port
        self.future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._cleanups: list[Callable[[], None]] = []
        self.poller: asyncio.Task[None] | None = None

    @property
    def cancelled(self) -> bool:
        return self.future.cancelled()

    @property
    def done(self) -> bool:
        return self.future.done()

    def on_finish(self, fn: Callable[[], None]) -> None:
        self._cleanups.append(fn)

    def resolve(self) -> bool:
        """Resolve READY. Returns False if already resolved or cancelled."""
        if self.future.done():
            return False
        self.future.set_result(READY)
        self._finish()
        return True

    def cancel(self) -> bool:
        if self.future.done():
            return False
        self.future.cancel()
        self._finish()
        return True

    def _finish(self) -> None:
        cleanups, self._cleanups = self._cleanups, []
        for fn in cleanups:
            fn()

    async def wait(self) -> str:
        # shield: cancelling the waiter must not cancel the attempt itself
        return await asyncio.shield(self.future)


class CutoverStrategy(ABC):
    #: state a candidate sits in while this strategy is running
    waiting_state: BackendState

    @abstractmethod
    def begin_cutover(self, port: int) -> CutoverAttempt:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class WarmupTimerCutover(CutoverStrategy):
    waiting_state = BackendState.WARMING

    def __init__(self, duration_ms: int) -> None:
        self.duration_ms = max(0, int(duration_ms))

    def begin_cutover(self, port: int) -> CutoverAttempt:
        attempt = CutoverAttempt(port)
        handle = asyncio.get_running_loop().call_later(self.duration_ms / 1000.0, attempt.resolve)
        attempt.on_finish(handle.cancel)
        return attempt


class HealthCheckCutover(CutoverStrategy):
    """Poll the candidate until REQUIRED_CONSECUTIVE_SUCCESSES probes pass in a row.

    Probes go out back to back with no delay. A failure resets the streak. The
    timeout is a hard ceiling: when it passes the attempt resolves READY anyway.
    """

    waiting_state = BackendState.HEALTH_CHECKING

    def __init__(
        self,
        path: str,
        host: str = "localhost",
        port: int | None = None,
        timeout_ms: int = 15000,
        client: httpx.AsyncClient | None = None,
        probe_timeout_s: float | None = None,
        app: str | None = None,
    ) -> None:
        self.path = path
        self.app = app
        self.host = host
        self.port = port
        self.timeout_ms = int(timeout_ms)
        self.probe_timeout_s = probe_timeout_s
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=False)
        return self._client

    def url_for(self, candidate_port: int) -> str:
        return f"http://{self.host}:{self.port or candidate_port}{self.path}"

    def begin_cutover(self, port: int) -> CutoverAttempt:
        attempt = CutoverAttempt(port)
        loop = asyncio.get_running_loop()

        def _deadline() -> None:
            if attempt.resolve():
                log_event(
                    "WARN",
                    f"Timeout ({self.timeout_ms}ms) passed for checks on port {port}, cutting over anyway",
                    app=self.app,
                )

        handle = loop.call_later(self.timeout_ms / 1000.0, _deadline)
        attempt.on_finish(handle.cancel)
        # Not cancelled on finish: an in-flight probe runs to completion and is ignored.
        attempt.poller = loop.create_task(self._poll(attempt, self.url_for(port)))
        return attempt

    async def _poll(self, attempt: CutoverAttempt, url: str) -> None:
        successes = 0
        attempted = 0
        while not attempt.done:
            ok, msg, _latency = await check_health(self.client, url, self.probe_timeout_s)
            if attempt.done:
                return
            attempted += 1
            if ok:
                successes += 1
                if successes >= REQUIRED_CONSECUTIVE_SUCCESSES:
                    log_event("INFO", f"{successes} checks passed ({attempted} checks made) for {url}", app=self.app)
                    attempt.resolve()
                    return
            else:
                if successes:
                    logger.debug("Health check failed for %s after %s passes: %s", url, successes, msg)
                successes = 0
            # Yield so a burst of instant connection failures cannot starve the loop.
            await asyncio.sleep(0)

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


def build_strategy(
    cfg: HealthCheckConfig | WarmupTimerConfig,
    bind_address: str = "localhost",
    client: httpx.AsyncClient | None = None,
    app: str | None = None,
) -> CutoverStrategy:
    if isinstance(cfg, HealthCheckConfig):
        return HealthCheckCutover(
            path=cfg.path,
            host=cfg.host or bind_address,
            port=cfg.port,
            timeout_ms=cfg.timeout,
            client=client,
            app=app,
        )
    if isinstance(cfg, WarmupTimerConfig):
        return WarmupTimerCutover(cfg.duration_ms)
    raise TypeError(f"Unknown cutover config: {cfg!r}")
