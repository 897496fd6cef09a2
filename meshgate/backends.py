from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Protocol

from docker.errors import DockerException

from . import docker_ops
from .errors import LaunchError
from .fabric import Fabric
from .health import check_http, check_tcp
from .models import ProbeResult, ServiceSpec
from .settings import settings

if TYPE_CHECKING:
    from .gateway import Gateway


class ServiceBackend(Protocol):
    """What the supervisor needs from anything it runs."""

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def health_check(self) -> ProbeResult: ...

    def address(self) -> str | None: ...


BackendFactory = Callable[[ServiceSpec], ServiceBackend]


class ContainerBackend:
    """A service realised as one labelled Docker container on the fabric network."""

    def __init__(self, spec: ServiceSpec, fabric: Fabric, project: str | None = None,
                 probe_timeout_s: float | None = None, stop_timeout_s: int | None = None):
        self.spec = spec
        self.fabric = fabric
        self.project = project or settings.project
        self.probe_timeout_s = probe_timeout_s or settings.probe_timeout_s
        self.stop_timeout_s = stop_timeout_s if stop_timeout_s is not None else settings.stop_timeout_s
        self._ref: docker_ops.ContainerRef | None = None

    def start(self) -> None:
        if not self.spec.image:
            raise LaunchError(f"Service '{self.spec.name}' has no image reference.")
        try:
            self.fabric.attach(self.spec)
            stale = docker_ops.find_container(self.project, self.spec.name)
            if stale:
                docker_ops.stop_container(stale.id, timeout=self.stop_timeout_s)
            self._ref = docker_ops.run_container(self.spec, self.fabric.network, self.project)
        except DockerException as e:
            self.fabric.detach(self.spec.name)
            raise LaunchError(f"Docker refused to start '{self.spec.name}': {e}") from e

    def stop(self) -> None:
        ref = self._ref or docker_ops.find_container(self.project, self.spec.name)
        try:
            if ref:
                docker_ops.stop_container(ref.id, timeout=self.stop_timeout_s)
        finally:
            self._ref = None
            self.fabric.detach(self.spec.name)

    def address(self) -> str | None:
        if not self._ref:
            return None
        return docker_ops.container_ip(self._ref.id, self.fabric.network)

    def health_check(self) -> ProbeResult:
        if not self._ref:
            return ProbeResult(False, "Not started")
        try:
            if not docker_ops.container_is_running(self._ref.id):
                return ProbeResult(False, "Container not running")
            probe = self.spec.probe
            if probe.kind == "running":
                return ProbeResult(True, "Container running")
            host = self.address()
            if not host:
                return ProbeResult(False, "No address on fabric network")
            if probe.kind == "tcp":
                return check_tcp(host, int(probe.port or 0), timeout_s=self.probe_timeout_s)
            return check_http(f"http://{host}:{probe.port}{probe.path}", timeout_s=self.probe_timeout_s)
        except DockerException as e:
            return ProbeResult(False, f"Docker error: {e}")


class GatewayBackend:
    """Runs the in-process routing gateway as a supervised service."""

    def __init__(self, spec: ServiceSpec, gateway: "Gateway", host: str | None = None):
        self.spec = spec
        self.gateway = gateway
        self.host = host or settings.gateway_host

    def start(self) -> None:
        if self.spec.routes_file:
            self.gateway.reload(self.spec.routes_file)
        self.gateway.start(self.host)

    def stop(self) -> None:
        self.gateway.stop()

    def address(self) -> str | None:
        return self.host if self.gateway.serving else None

    def health_check(self) -> ProbeResult:
        if self.gateway.serving:
            return ProbeResult(True, f"Listening on {', '.join(str(p) for p in self.gateway.listen_ports)}")
        return ProbeResult(False, "Listeners not running")


def default_backend_factory(fabric: Fabric, gateway: "Gateway", project: str | None = None) -> BackendFactory:
    def factory(spec: ServiceSpec) -> ServiceBackend:
        if spec.runtime == "gateway":
            return GatewayBackend(spec, gateway)
        return ContainerBackend(spec, fabric, project=project)

    return factory
