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
    db_path: str = os.getenv("MESHGATE_DB_PATH", "meshgate.db")
    project: str = os.getenv("MESHGATE_PROJECT", "meshgate")

    # Supervisor
    probe_interval_s: float = _env_float("MESHGATE_PROBE_INTERVAL_S", 5.0)
    probe_timeout_s: float = _env_float("MESHGATE_PROBE_TIMEOUT_S", 2.0)
    fail_threshold: int = _env_int("MESHGATE_FAIL_THRESHOLD", 3)
    max_failures: int = _env_int("MESHGATE_MAX_FAILURES", 10)
    dependency_wait_s: float = _env_float("MESHGATE_DEPENDENCY_WAIT_S", 300.0)
    stop_timeout_s: int = _env_int("MESHGATE_STOP_TIMEOUT_S", 10)

    # Gateway. Slow backends (build log streams) need minutes, not seconds.
    gateway_host: str = os.getenv("MESHGATE_GATEWAY_HOST", "0.0.0.0")
    connect_timeout_s: float = _env_float("MESHGATE_CONNECT_TIMEOUT_S", 90.0)
    send_timeout_s: float = _env_float("MESHGATE_SEND_TIMEOUT_S", 600.0)
    read_timeout_s: float = _env_float("MESHGATE_READ_TIMEOUT_S", 600.0)
    idle_timeout_s: float = _env_float("MESHGATE_IDLE_TIMEOUT_S", 600.0)
    max_backend_connections: int = _env_int("MESHGATE_MAX_BACKEND_CONNECTIONS", 200)

    # Status API
    api_host: str = os.getenv("MESHGATE_API_HOST", "127.0.0.1")
    api_port: int = _env_int("MESHGATE_API_PORT", 8700)
    admin_user: str | None = os.getenv("MESHGATE_ADMIN_USER")
    admin_password: str | None = os.getenv("MESHGATE_ADMIN_PASSWORD")

    log_level: str = os.getenv("MESHGATE_LOG_LEVEL", "INFO")
    verbose_events: bool = _env_bool("MESHGATE_VERBOSE_EVENTS", False)


settings = Settings()
