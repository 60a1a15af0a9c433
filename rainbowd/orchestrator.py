from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass, field
from typing import Any, Coroutine

from .backend import Backend, BackendState
from .config import AppConfig
from .cutover import CutoverAttempt, CutoverStrategy, build_strategy
from .events import log_event, utc_now
from .supervisor import ProcessSupervisor, SpawnError


@dataclass
class Deployment:
    """One deploy() call: a candidate backend and its pending cutover.

    `result` resolves True once the candidate is active, False if the deploy
    was abandoned (candidate died, orchestrator closed).
    """

    app: str
    candidate: Backend
    attempt: CutoverAttempt
    result: asyncio.Future[bool]
    id: str = field(default_factory=lambda: secrets.token_hex(6))
    state: str = "running"  # running|done|failed
    message: str = ""
    started_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @property
    def finished(self) -> bool:
        return self.state != "running"

    def finish(self, ok: bool, message: str) -> None:
        if self.finished:
            return
        self.state = "done" if ok else "failed"
        self.message = message
        self.updated_at = utc_now()
        if not self.result.done():
            self.result.set_result(ok)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "backend": self.candidate.id,
            "port": self.candidate.port,
            "state": self.state,
            "message": self.message,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
        }


class Orchestrator:
    """Drives redeploys of one application.

    All state (roster, active pointer, pending deployments) is touched only from
    the event loop, so the single assignment to `self.active` is what the
    router relies on: a request sees either the old backend or the new one.

    Overlapping deploys are not ordered. If an older candidate's cutover
    resolves after a newer one's, the older candidate becomes active and the
    newer one is drained.
    """

    def __init__(
        self,
        app: AppConfig,
        supervisor: ProcessSupervisor,
        strategy: CutoverStrategy | None = None,
    ) -> None:
        self.app = app
        self.supervisor = supervisor
        self.strategy = strategy or build_strategy(app.cutover, app.bind_address, app=app.name)
        self.backends: list[Backend] = []
        self.active: Backend | None = None
        self._deployments: dict[str, Deployment] = {}  # candidate id -> deployment
        self._drain_timers: dict[str, asyncio.TimerHandle] = {}
        self._retiring: set[str] = set()
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def name(self) -> str:
        return self.app.name

    @property
    def live_count(self) -> int:
        return sum(1 for b in self.backends if b.alive)

    @property
    def deployments(self) -> list[Deployment]:
        return list(self._deployments.values())

    def _spawn_task(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def deploy(self) -> Deployment | None:
        """Launch a candidate backend and cut over to it once it is ready.

        Returns immediately. None means nothing was started (backend limit
        reached or the spawn failed); otherwise await `Deployment.result`.
        """
        live = self.live_count
        if live >= self.app.backend_limit:
            log_event(
                "WARN",
                f"Not deploying: {live} live backends, limit is {self.app.backend_limit}",
                app=self.name,
            )
            return None

        try:
            candidate = self.supervisor.spawn(self.app, on_exit=self._on_backend_exit)
        except SpawnError as e:
            log_event("ERROR", f"Deploy aborted: {e}", app=self.name)
            return None

        self.backends.append(candidate)
        candidate.transition(self.strategy.waiting_state)
        attempt = self.strategy.begin_cutover(candidate.port)
        dep = Deployment(
            app=self.name,
            candidate=candidate,
            attempt=attempt,
            result=asyncio.get_running_loop().create_future(),
            message=f"Waiting for backend on port {candidate.port} ({candidate.state.value})",
        )
        self._deployments[candidate.id] = dep
        log_event("INFO", f"Deploy {dep.id}: launching backend on port {candidate.port}", app=self.name, backend=candidate.id)
        self._spawn_task(self._await_cutover(dep))
        return dep

    async def _await_cutover(self, dep: Deployment) -> None:
        try:
            await dep.attempt.wait()
        except asyncio.CancelledError:
            self._deployments.pop(dep.candidate.id, None)
            dep.finish(False, "Cutover cancelled")
            if not dep.attempt.cancelled:
                raise
            return
        self._activate(dep)

    def _activate(self, dep: Deployment) -> None:
        candidate = dep.candidate
        self._deployments.pop(candidate.id, None)
        if not candidate.alive:
            # Exited between the cutover resolving and this continuation running.
            dep.finish(False, "Backend exited before cutover")
            return

        old = self.active
        candidate.transition(BackendState.ACTIVE)
        self.active = candidate
        log_event(
            "INFO",
            f"Switching to backend at port {candidate.port}, pid {candidate.pid}",
            app=self.name,
            backend=candidate.id,
        )

        if old is not None and old is not candidate:
            old.transition(BackendState.DRAINING)
            self._retiring.add(old.id)
            self._schedule_shutdown(old)
        dep.finish(True, f"Backend on port {candidate.port} is active")

    def _schedule_shutdown(self, old: Backend) -> None:
        delay_s = self.app.drain_delay_ms / 1000.0
        if delay_s <= 0:
            self._spawn_task(self.supervisor.shutdown(old))
            return
        log_event("INFO", f"Draining backend on port {old.port} for {delay_s:g}s", app=self.name, backend=old.id)
        self._drain_timers[old.id] = asyncio.get_running_loop().call_later(delay_s, self._drain_elapsed, old)

    def _drain_elapsed(self, old: Backend) -> None:
        self._drain_timers.pop(old.id, None)
        if old.alive:
            self._spawn_task(self.supervisor.shutdown(old))

    def _on_backend_exit(self, backend: Backend) -> None:
        """Exit notification from the supervisor; backend is already DEAD."""
        timer = self._drain_timers.pop(backend.id, None)
        if timer is not None:
            timer.cancel()
        expected = backend.id in self._retiring
        self._retiring.discard(backend.id)
        detail = f"code {backend.returncode}" if backend.last_error is None else backend.last_error

        if self.active is backend:
            self.active = None
            log_event("ERROR", f"Active backend on port {backend.port} exited ({detail}); no backend is serving", app=self.name, backend=backend.id)
        elif expected:
            log_event("INFO", f"Backend on port {backend.port} stopped ({detail})", app=self.name, backend=backend.id)

        dep = self._deployments.pop(backend.id, None)
        if dep is not None:
            dep.attempt.cancel()
            msg = f"Deploy {dep.id} failed: backend exited before cutover ({detail})"
            dep.finish(False, msg)
            log_event("ERROR", msg, app=self.name, backend=backend.id)

        if not expected and backend.output:
            log_event("ERROR", f"Backend output:\n{backend.output}", app=self.name, backend=backend.id)

        self.backends = [b for b in self.backends if b.alive]

    def status(self) -> dict[str, Any]:
        active = self.active
        return {
            "app": self.name,
            "port": self.app.port,
            "activePort": active.port if active is not None else None,
            "activeBackend": active.id if active is not None else None,
            "liveBackendCount": self.live_count,
            "backendLimit": self.app.backend_limit,
            "backends": [b.to_dict() for b in self.backends],
            "deployments": [d.to_dict() for d in self._deployments.values()],
        }

    async def close(self) -> None:
        for dep in list(self._deployments.values()):
            dep.attempt.cancel()
            dep.finish(False, "Orchestrator closed")
        self._deployments.clear()
        for timer in self._drain_timers.values():
            timer.cancel()
        self._drain_timers.clear()
        await self.strategy.aclose()
