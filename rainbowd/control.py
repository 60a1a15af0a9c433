from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, Query, status

from . import __version__
from .api_models import AppList, AppStatus, RedeployResponse
from .events import latest_events
from .registry import AppNotFound, AppRegistry


def create_control_app(registry: AppRegistry) -> FastAPI:
    """Operator API: list apps, show status, trigger redeploys."""
    app = FastAPI(title="rainbowd control", version=__version__)

    def _lookup(name: str) -> None:
        try:
            registry.lookup(name)
        except AppNotFound:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown app '{name}'") from None

    @app.get("/", response_model=AppList)
    async def list_apps() -> dict[str, Any]:
        return {"apps": registry.names()}

    # Registered before /{name} so "events" is not taken for an app name.
    @app.get("/events")
    async def events(limit: int = Query(100, ge=1, le=1000), app_name: str | None = Query(None, alias="app")) -> list[dict[str, Any]]:
        return latest_events(limit=limit, app=app_name)

    @app.get("/{name}", response_model=AppStatus)
    async def app_status(name: str) -> dict[str, Any]:
        _lookup(name)
        return registry.status(name)

    @app.post("/{name}/redeploy", response_model=RedeployResponse, status_code=status.HTTP_202_ACCEPTED)
    async def redeploy(name: str) -> dict[str, Any]:
        _lookup(name)
        dep = registry.deploy(name)
        return {
            "app": name,
            "message": "Redeploying..." if dep is not None else "Redeploy not started (see events)",
            "deployment": dep.id if dep is not None else None,
        }

    return app
