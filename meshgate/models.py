from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from .errors import InvalidSpec


SERVICE_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_.\-]{0,62}$")


def validate_service_name(name: str) -> None:
    if not isinstance(name, str) or not SERVICE_NAME_RE.match(name):
        raise InvalidSpec(
            f"Invalid service name {name!r}. Use lowercase letters, digits, '_', '.', '-' (max 63 chars)."
        )


class InstanceState(str, Enum):
    PENDING = "pending"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def running(self) -> bool:
        return self in {InstanceState.STARTING, InstanceState.HEALTHY, InstanceState.UNHEALTHY}


class Health(str, Enum):
    UNKNOWN = "unknown"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class PortBinding:
    container_port: int
    host_port: int | None = None
    protocol: str = "tcp"


@dataclass(frozen=True)
class VolumeBinding:
    source: str  # volume name, or a host path for bind mounts
    target: str
    read_only: bool = False
    bind: bool = False


@dataclass(frozen=True)
class ProbeSpec:
    """How to decide that a service is healthy.

    kind: "http" (GET path, expect 2xx), "tcp" (connect succeeds) or
    "running" (the backend reports itself running).
    """

    kind: str = "running"
    port: int | None = None
    path: str = "/"


@dataclass(frozen=True)
class ServiceSpec:
    name: str
    image: str = ""
    ports: tuple[PortBinding, ...] = ()
    volumes: tuple[VolumeBinding, ...] = ()
    environment: dict[str, str] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    network: str = ""
    probe: ProbeSpec = ProbeSpec()
    runtime: str = "container"  # container|gateway
    container_name: str | None = None
    command: tuple[str, ...] | str | None = None
    privileged: bool = False
    user: str | None = None
    routes_file: str | None = None

    def named_volumes(self) -> list[str]:
        return [v.source for v in self.volumes if not v.bind]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ServiceSpec":
        data = dict(data)
        data["ports"] = tuple(PortBinding(**p) for p in data.get("ports", ()))
        data["volumes"] = tuple(VolumeBinding(**v) for v in data.get("volumes", ()))
        data["depends_on"] = tuple(data.get("depends_on", ()))
        data["probe"] = ProbeSpec(**data.get("probe", {}))
        if isinstance(data.get("command"), list):
            data["command"] = tuple(data["command"])
        return cls(**data)


@dataclass(frozen=True)
class ServiceStatus:
    """Read-only snapshot of a ServiceInstance as published in the registry."""

    name: str
    state: InstanceState = InstanceState.PENDING
    health: Health = Health.UNKNOWN
    address: str | None = None
    detail: str | None = None
    blocked_by: str | None = None
    consecutive_failures: int = 0
    updated_at: float = 0.0


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    message: str = ""
    latency_ms: float | None = None


@dataclass(frozen=True)
class Timeouts:
    connect: float = 90.0
    send: float = 600.0
    read: float = 600.0  # until the first response byte
    idle: float = 600.0  # between response body chunks


FORWARDED_HEADERS = frozenset({"x-real-ip", "x-forwarded-for", "x-forwarded-proto", "host"})


@dataclass(frozen=True)
class TLSCredential:
    name: str
    cert_file: str
    key_file: str


@dataclass(frozen=True)
class RouteRule:
    hostname: str
    port: int
    backend_host: str
    backend_port: int
    tls: bool = False
    credential: str | None = None
    timeouts: Timeouts = Timeouts()
    forwarded_headers: frozenset[str] = FORWARDED_HEADERS

    @property
    def scheme(self) -> str:
        return "https" if self.tls else "http"

    @property
    def key(self) -> tuple[str, int]:
        return self.hostname, self.port
