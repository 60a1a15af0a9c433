from __future__ import annotations

from typing import Any, Iterable

from .config import AppConfig
from .events import log_event
from .orchestrator import Deployment, Orchestrator
from .supervisor import ProcessSupervisor


class AppNotFound(KeyError):
    pass


class AppRegistry:
    """The set of managed apps, built once at startup and passed around explicitly."""

    def __init__(self, apps: Iterable[AppConfig], supervisor: ProcessSupervisor | None = None) -> None:
        self.supervisor = supervisor or ProcessSupervisor()
        self._apps: dict[str, Orchestrator] = {}
        for cfg in apps:
            self.add(Orchestrator(cfg, self.supervisor))

    def add(self, orchestrator: Orchestrator) -> Orchestrator:
        if orchestrator.name in self._apps:
            raise ValueError(f"Duplicate app name '{orchestrator.name}'")
        self._apps[orchestrator.name] = orchestrator
        return orchestrator

    def names(self) -> list[str]:
        return sorted(self._apps)

    def orchestrators(self) -> list[Orchestrator]:
        return [self._apps[n] for n in self.names()]

    def lookup(self, name: str) -> Orchestrator:
        try:
            return self._apps[name]
        except KeyError:
            raise AppNotFound(name) from None

    def deploy(self, name: str) -> Deployment | None:
        """Start a redeploy and return without waiting for the cutover."""
        return self.lookup(name).deploy()

    def status(self, name: str) -> dict[str, Any]:
        return self.lookup(name).status()

    def start(self) -> None:
        for orch in self.orchestrators():
            orch.deploy()

    async def shutdown(self) -> None:
        log_event("INFO", "Shutting down: stopping all backends")
        for orch in self.orchestrators():
            await orch.close()
        self.supervisor.kill_all()
        await self.supervisor.wait_closed()
