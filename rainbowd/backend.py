from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass, field
from enum import Enum

from .events import utc_now


class BackendState(str, Enum):
    LAUNCHING = "launching"
    HEALTH_CHECKING = "health_checking"
    WARMING = "warming"
    ACTIVE = "active"
    DRAINING = "draining"
    DEAD = "dead"


_TRANSITIONS: dict[BackendState, set[BackendState]] = {
    BackendState.LAUNCHING: {BackendState.HEALTH_CHECKING, BackendState.WARMING, BackendState.DEAD},
    BackendState.HEALTH_CHECKING: {BackendState.ACTIVE, BackendState.DEAD},
    BackendState.WARMING: {BackendState.ACTIVE, BackendState.DEAD},
    BackendState.ACTIVE: {BackendState.DRAINING, BackendState.DEAD},
    BackendState.DRAINING: {BackendState.DEAD},
    BackendState.DEAD: set(),
}


class InvalidTransition(Exception):
    pass


@dataclass(eq=False)
class Backend:
    """One spawned backend process.

    Owned by the app's Orchestrator. The supervisor only records the spawn
    result and the exit; every other state change goes through the Orchestrator.
    """

    app: str
    port: int
    pidfile: str | None = None
    id: str = field(default_factory=lambda: secrets.token_hex(4))
    state: BackendState = BackendState.LAUNCHING
    process: asyncio.subprocess.Process | None = None
    created_at: str = field(default_factory=utc_now)
    last_error: str | None = None
    returncode: int | None = None
    output: str | None = None  # captured stdout/stderr, when captureOutput is set

    @property
    def alive(self) -> bool:
        return self.state is not BackendState.DEAD

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    def can_transition(self, new_state: BackendState) -> bool:
        return new_state in _TRANSITIONS[self.state]

    def transition(self, new_state: BackendState) -> BackendState:
        """Move to new_state, returning the previous state."""
        if not self.can_transition(new_state):
            raise InvalidTransition(f"backend {self.id}: {self.state.value} -> {new_state.value}")
        prev = self.state
        self.state = new_state
        return prev

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "port": self.port,
            "pid": self.pid,
            "pidfile": self.pidfile,
            "state": self.state.value,
            "created_at": self.created_at,
            "last_error": self.last_error,
            "returncode": self.returncode,
        }
