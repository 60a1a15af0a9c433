from __future__ import annotations

from pydantic import BaseModel, Field


class BackendInfo(BaseModel):
    id: str
    port: int = Field(..., ge=1, le=65535)
    pid: int | None = None
    pidfile: str | None = None
    state: str = Field(..., description="launching|health_checking|warming|active|draining|dead")
    created_at: str
    last_error: str | None = None
    returncode: int | None = None


class DeploymentInfo(BaseModel):
    id: str
    backend: str
    port: int
    state: str = Field(..., description="running|done|failed")
    message: str
    started_at: str
    updated_at: str


class AppStatus(BaseModel):
    app: str
    port: int = Field(..., description="External port the router listens on")
    activePort: int | None = Field(None, description="Port of the backend currently taking traffic")
    activeBackend: str | None = None
    liveBackendCount: int = Field(..., ge=0)
    backendLimit: int = Field(..., ge=1)
    backends: list[BackendInfo] = []
    deployments: list[DeploymentInfo] = []


class AppList(BaseModel):
    apps: list[str]


class RedeployResponse(BaseModel):
    app: str
    message: str
    deployment: str | None = Field(None, description="Deployment id, or null if nothing was started")
