from __future__ import annotations

from pydantic import BaseModel, Field

from .gateway import RouteStatus
from .models import ServiceStatus


class ServiceOut(BaseModel):
    name: str
    state: str = Field(..., description="pending|starting|healthy|unhealthy|stopping|stopped|failed")
    health: str = Field(..., description="unknown|starting|healthy|unhealthy")
    address: str | None = None
    detail: str | None = None
    blocked_by: str | None = None
    consecutive_failures: int = 0

    @classmethod
    def from_status(cls, st: ServiceStatus) -> "ServiceOut":
        return cls(
            name=st.name,
            state=st.state.value,
            health=st.health.value,
            address=st.address,
            detail=st.detail,
            blocked_by=st.blocked_by,
            consecutive_failures=st.consecutive_failures,
        )


class RouteOut(BaseModel):
    hostname: str
    port: int
    scheme: str
    backend: str
    state: str = Field(..., description="healthy|degraded|down|unmanaged|tls_error")
    detail: str | None = None

    @classmethod
    def from_status(cls, rs: RouteStatus) -> "RouteOut":
        r = rs.rule
        return cls(
            hostname=r.hostname,
            port=r.port,
            scheme=r.scheme,
            backend=f"{r.backend_host}:{r.backend_port}",
            state=rs.state,
            detail=rs.detail,
        )


class StatusOut(BaseModel):
    services: list[ServiceOut]
    routes: list[RouteOut]


class ReloadRequest(BaseModel):
    path: str | None = Field(None, description="Route file; defaults to the one loaded last")


class ReloadOut(BaseModel):
    routes: int
    listeners: list[int]
