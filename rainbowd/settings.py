from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    config_path: str = os.getenv("RAINBOWD_CONFIG", "rainbow.conf.json")
    log_level: str = os.getenv("RAINBOWD_LOG_LEVEL", "INFO")
    event_buffer: int = _env_int("RAINBOWD_EVENT_BUFFER", 500)

    # Health probes: per-request ceiling, independent of the cutover deadline.
    probe_timeout_s: float = _env_float("RAINBOWD_PROBE_TIMEOUT_S", 2.0)

    # Router
    router_host: str = os.getenv("RAINBOWD_ROUTER_HOST", "0.0.0.0")
    proxy_timeout_s: float = _env_float("RAINBOWD_PROXY_TIMEOUT_S", 60.0)

    # Control surface
    control_host: str = os.getenv("RAINBOWD_CONTROL_HOST", "127.0.0.1")
    control_port: int = _env_int("RAINBOWD_CONTROL_PORT", 0)  # 0 -> first app's controlPort

    # captureOutput keeps only this many trailing bytes of backend output.
    output_tail_bytes: int = _env_int("RAINBOWD_OUTPUT_TAIL_BYTES", 64 * 1024)

    # Start every configured app as soon as the daemon is up.
    deploy_on_start: bool = _env_bool("RAINBOWD_DEPLOY_ON_START", True)


settings = Settings()
