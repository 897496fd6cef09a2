from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from typing import Iterable, Protocol

from . import db, docker_ops
from .errors import InvalidSpec, MeshgateError
from .models import ServiceSpec
from .settings import settings


class FabricDriver(Protocol):
    def ensure_network(self, name: str) -> bool: ...

    def ensure_volume(self, name: str) -> bool: ...

    def remove_volume(self, name: str) -> None: ...


class DockerFabricDriver:
    def __init__(self, project: str | None = None):
        self.project = project or settings.project

    def ensure_network(self, name: str) -> bool:
        return docker_ops.ensure_network(name, self.project)

    def ensure_volume(self, name: str) -> bool:
        return docker_ops.ensure_volume(name, self.project)

    def remove_volume(self, name: str) -> None:
        docker_ops.remove_volume(name)


@dataclass(frozen=True)
class Volume:
    name: str
    created: bool
    attached: frozenset[str]


@dataclass(frozen=True)
class Attachment:
    network: str
    alias: str
    volumes: tuple[str, ...]


class VolumeInUse(MeshgateError):
    pass


class Fabric:
    """The single service network plus the named volume set.

    Volumes are created lazily the first time a service binds them and
    outlive every service; only remove_volume() destroys one.
    """

    def __init__(self, network: str, volumes: Iterable[str] = (), driver: FabricDriver | None = None):
        self.network = network
        self.driver: FabricDriver = driver or DockerFabricDriver()
        self._lock = Lock()
        self._declared = set(volumes)
        self._created: set[str] = set(db.list_volumes())
        self._attached: dict[str, set[str]] = {v: set() for v in self._declared}
        self._network_ready = False

    def ensure_network(self) -> None:
        with self._lock:
            if self._network_ready:
                return
            self.driver.ensure_network(self.network)
            self._network_ready = True

    def attach(self, spec: ServiceSpec) -> Attachment:
        if spec.network and spec.network != self.network:
            raise InvalidSpec(f"Service '{spec.name}' is on network '{spec.network}', fabric is '{self.network}'.")
        self.ensure_network()
        names = spec.named_volumes()
        with self._lock:
            for vol in names:
                if vol not in self._declared:
                    raise InvalidSpec(f"Service '{spec.name}' binds undeclared volume '{vol}'.")
            for vol in names:
                if vol not in self._created:
                    self.driver.ensure_volume(vol)
                    self._created.add(vol)
                    db.record_volume(vol)
                self._attached[vol].add(spec.name)
        return Attachment(network=self.network, alias=spec.name, volumes=tuple(names))

    def detach(self, service: str) -> None:
        with self._lock:
            for users in self._attached.values():
                users.discard(service)

    def remove_volume(self, name: str) -> None:
        with self._lock:
            users = self._attached.get(name, set())
            if users:
                raise VolumeInUse(f"Volume '{name}' is still used by: {', '.join(sorted(users))}")
            self.driver.remove_volume(name)
            self._created.discard(name)
            db.forget_volume(name)
        db.log_event("INFO", f"Removed volume '{name}'.")

    def volumes(self) -> list[Volume]:
        with self._lock:
            names = sorted(self._declared | self._created)
            return [
                Volume(name=n, created=n in self._created, attached=frozenset(self._attached.get(n, ())))
                for n in names
            ]
