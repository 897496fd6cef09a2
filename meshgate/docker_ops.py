from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterator

import docker
from docker.errors import APIError, NotFound

from .db import log_event
from .models import ServiceSpec


LABEL_PROJECT = "meshgate.project"
LABEL_SERVICE = "meshgate.service"


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str


def _client() -> docker.DockerClient:
    return docker.from_env()


def ensure_network(name: str, project: str) -> bool:
    """Create the bridge network if missing. Returns True when created."""
    c = _client()
    try:
        c.networks.get(name)
        return False
    except NotFound:
        c.networks.create(name, driver="bridge", labels={LABEL_PROJECT: project})
        log_event("INFO", f"Created docker network '{name}'.")
        return True


def ensure_volume(name: str, project: str) -> bool:
    c = _client()
    try:
        c.volumes.get(name)
        return False
    except NotFound:
        c.volumes.create(name=name, labels={LABEL_PROJECT: project})
        log_event("INFO", f"Created docker volume '{name}'.")
        return True


def remove_volume(name: str) -> None:
    c = _client()
    try:
        c.volumes.get(name).remove()
    except NotFound:
        return


def _port_map(spec: ServiceSpec) -> dict[str, Any]:
    ports: dict[str, Any] = {}
    for p in spec.ports:
        ports[f"{p.container_port}/{p.protocol}"] = p.host_port
    return ports


def _volume_map(spec: ServiceSpec) -> dict[str, dict[str, str]]:
    return {v.source: {"bind": v.target, "mode": "ro" if v.read_only else "rw"} for v in spec.volumes}


def run_container(spec: ServiceSpec, network: str, project: str) -> ContainerRef:
    """Create and start the container for a service on the fabric network.

    The service name is registered as a network alias, so peers reach it by
    name. Containers are labelled so a later `down` can find them.
    """
    name = spec.container_name or f"{project}-{spec.name}"
    labels = {LABEL_PROJECT: project, LABEL_SERVICE: spec.name}

    c = _client()
    kwargs: dict[str, Any] = {}
    if spec.user:
        kwargs["user"] = spec.user
    container = c.containers.create(
        spec.image,
        command=list(spec.command) if isinstance(spec.command, tuple) else spec.command,
        name=name,
        environment=dict(spec.environment),
        ports=_port_map(spec),
        volumes=_volume_map(spec),
        labels=labels,
        privileged=spec.privileged,
        network=network,
        # Restarts are the supervisor's decision, not Docker's.
        restart_policy={"Name": "no"},
        **kwargs,
    )
    # Reconnect with the service name as alias; the container stays on this network only.
    net = c.networks.get(network)
    net.disconnect(container)
    net.connect(container, aliases=[spec.name])
    container.start()

    log_event("INFO", f"Started container {name} from image {spec.image}", service_name=spec.name)
    return ContainerRef(id=container.id, name=name)


def find_container(project: str, service: str) -> ContainerRef | None:
    c = _client()
    filters = {"label": [f"{LABEL_PROJECT}={project}", f"{LABEL_SERVICE}={service}"]}
    found = c.containers.list(all=True, filters=filters)
    if not found:
        return None
    return ContainerRef(id=found[0].id, name=found[0].name)


def stop_container(container_id: str, timeout: int) -> None:
    """Stop and remove; a container that is already gone counts as stopped."""
    c = _client()
    try:
        cont = c.containers.get(container_id)
    except NotFound:
        return
    try:
        cont.stop(timeout=timeout)
    except APIError as e:
        # remove(force=True) below kills it if needed.
        log_event("WARN", f"Graceful stop of {cont.name} failed: {e}")
    try:
        cont.remove(force=True)
    except NotFound:
        return


def container_is_running(container_id: str) -> bool:
    c = _client()
    try:
        cont = c.containers.get(container_id)
        cont.reload()
        return cont.status == "running"
    except NotFound:
        return False


def container_ip(container_id: str, network: str) -> str | None:
    c = _client()
    try:
        cont = c.containers.get(container_id)
    except NotFound:
        return None
    cont.reload()
    nets = cont.attrs.get("NetworkSettings", {}).get("Networks", {})
    ip = (nets.get(network) or {}).get("IPAddress")
    return ip or None


def container_logs(container_id: str, tail: int = 100, follow: bool = False) -> Iterator[bytes]:
    c = _client()
    cont = c.containers.get(container_id)
    if follow:
        yield from cont.logs(stream=True, follow=True, tail=tail)
        return
    yield cont.logs(tail=tail)
