from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

APP_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9\-_.]{0,62}$")

# Control API paths that would shadow an app's status route.
RESERVED_APP_NAMES = {"events"}

DEFAULT_HEALTH_TIMEOUT_MS = 15000


class ConfigError(Exception):
    """Raised for a missing, contradictory or unparsable config file."""


def validate_health_path(path: str) -> str:
    # Keep it a path (not a full URL) so the prober only ever talks to the backend.
    if not path.startswith("/"):
        raise ValueError("path must start with '/'.")
    if "://" in path or ".." in path:
        raise ValueError("path must be a simple absolute path (no scheme, no '..').")
    return path


class HealthCheckConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    type: Literal["HealthCheck"] = "HealthCheck"
    path: str = Field(..., description="Health endpoint path on the candidate backend")
    host: str | None = Field(None, description="Probe this host instead of the bind address")
    port: int | None = Field(None, ge=1, le=65535, description="Probe this port instead of the candidate's")
    timeout: int = Field(DEFAULT_HEALTH_TIMEOUT_MS, ge=1, description="Fail-open deadline in ms")

    @field_validator("path")
    @classmethod
    def _check_path(cls, v: str) -> str:
        return validate_health_path(v)


class WarmupTimerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    type: Literal["WarmupTimer"] = "WarmupTimer"
    duration_ms: int = Field(..., alias="durationMs", ge=0)


CutoverConfig = Annotated[Union[HealthCheckConfig, WarmupTimerConfig], Field(discriminator="type")]


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str = "default"
    command: str | list[str] = Field(..., description="Backend command; {port} and {pidfile} are substituted")
    bind_address: str = Field("localhost", alias="bindAddress")
    port: int = Field(7000, ge=1, le=65535, description="External listen port of the router")
    control_port: int | None = Field(None, alias="controlPort", ge=1, le=65535)
    backend_limit: int = Field(10, alias="backendLimit", ge=1)
    drain_delay_ms: int = Field(5000, alias="drainDelayMs", ge=0)
    pidfile: bool = Field(False, description="Backend writes its own pid to a file passed on the command line")
    shell: bool = Field(False, description="Run the command through /bin/sh")
    capture_output: bool = Field(False, alias="captureOutput")
    cutover: CutoverConfig

    @model_validator(mode="before")
    @classmethod
    def _legacy_fields(cls, data: Any) -> Any:
        """Accept the flat single-app format: run / healthCheckPath / warmupTime."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "run" in data:
            if "command" in data:
                raise ValueError("Set either command or run, not both")
            data["command"] = data.pop("run")

        # {"HealthCheck": {...}} is the same as {"type": "HealthCheck", ...}
        cutover = data.get("cutover")
        if isinstance(cutover, dict) and "type" not in cutover and len(cutover) == 1:
            kind, body = next(iter(cutover.items()))
            if isinstance(body, dict):
                data["cutover"] = {"type": kind, **body}

        health_path = data.pop("healthCheckPath", None)
        warmup = data.pop("warmupTime", None)
        # A falsy legacy value counts as unset, as it always has.
        health_path = health_path or None
        warmup = warmup or None
        given = [x for x in (data.get("cutover"), health_path, warmup) if x is not None]
        if len(given) > 1:
            raise ValueError("Set either warmupTime or healthCheckPath (or cutover), not both")
        if not given:
            raise ValueError("Need a cutover strategy: warmupTime, healthCheckPath or cutover")
        if health_path is not None:
            data["cutover"] = {"type": "HealthCheck", "path": health_path, "timeout": DEFAULT_HEALTH_TIMEOUT_MS}
        elif warmup is not None:
            data["cutover"] = {"type": "WarmupTimer", "durationMs": warmup}
        return data

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        if not APP_NAME_RE.match(v):
            raise ValueError("Invalid app name. Use letters/numbers and -._ (max 63 chars).")
        if v in RESERVED_APP_NAMES:
            raise ValueError(f"App name '{v}' is reserved.")
        return v

    @field_validator("command")
    @classmethod
    def _check_command(cls, v: str | list[str]) -> str | list[str]:
        if not v or (isinstance(v, str) and not v.strip()):
            raise ValueError("command must not be empty")
        return v

    @model_validator(mode="after")
    def _default_control_port(self) -> "AppConfig":
        if self.control_port is None:
            if self.port >= 65535:
                raise ValueError("controlPort must be set when port is 65535")
            self.control_port = self.port + 1
        return self


def parse_config(data: Any) -> list[AppConfig]:
    """Build AppConfigs from decoded JSON.

    Two shapes are accepted: {"apps": {"<name>": {...}}} or a single app object.
    """
    if not isinstance(data, dict):
        raise ConfigError("Config must be a JSON object")
    explicit_control: set[str] = set()
    try:
        if "apps" in data:
            apps_raw = data["apps"]
            if not isinstance(apps_raw, dict) or not apps_raw:
                raise ConfigError("'apps' must be a non-empty object keyed by app name")
            for name, raw in apps_raw.items():
                if not isinstance(raw, dict):
                    raise ConfigError(f"App '{name}' must be a JSON object")
                if "controlPort" in raw or "control_port" in raw:
                    explicit_control.add(name)
            apps = [AppConfig.model_validate({**raw, "name": name}) for name, raw in apps_raw.items()]
        else:
            apps = [AppConfig.model_validate(data)]
    except ValidationError as e:
        raise ConfigError(str(e)) from e
    except ValueError as e:
        raise ConfigError(str(e)) from e

    # One control API serves every app, on the first app's (by name) controlPort.
    first = min(apps, key=lambda a: a.name)
    for app in apps:
        if app is not first and app.name in explicit_control:
            raise ConfigError(
                f"App '{app.name}' sets controlPort, but only the first app ('{first.name}') has one"
            )

    seen: dict[int, str] = {}
    for app in apps:
        ports = (app.port, app.control_port) if app is first else (app.port,)
        for p in ports:
            if p in seen:
                raise ConfigError(f"Port {p} used twice (apps '{seen[p]}' and '{app.name}')")
            seen[p] = app.name
    return apps


def load_config(path: str | Path) -> list[AppConfig]:
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Couldn't read {path}: {e}") from e
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Couldn't parse {path}: {e}") from e
    return parse_config(data)
