"""Compose document -> ServiceSpec list.

Only the subset a single-network deployment needs is understood; anything
else in a service block is ignored.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Any

import yaml

from .errors import InvalidSpec
from .models import PortBinding, ProbeSpec, ServiceSpec, VolumeBinding, validate_service_name


PORT_RE = re.compile(r"^(?:\d+\.\d+\.\d+\.\d+:)?(?:(\d+):)?(\d+)(?:/(tcp|udp))?$")


@dataclass(frozen=True)
class ComposeProject:
    network: str
    volumes: tuple[str, ...]
    services: tuple[ServiceSpec, ...]
    base_dir: str


def parse_port(raw: Any) -> PortBinding:
    if isinstance(raw, int):
        return PortBinding(container_port=raw)
    if isinstance(raw, dict):
        return PortBinding(
            container_port=int(raw["target"]),
            host_port=int(raw["published"]) if raw.get("published") else None,
            protocol=raw.get("protocol", "tcp"),
        )
    m = PORT_RE.match(str(raw).strip())
    if not m:
        raise InvalidSpec(f"Unsupported port binding {raw!r}.")
    host, container, proto = m.group(1), m.group(2), m.group(3) or "tcp"
    return PortBinding(container_port=int(container), host_port=int(host) if host else None, protocol=proto)


def parse_volume(raw: Any, base_dir: str) -> VolumeBinding:
    if isinstance(raw, dict):
        source, target = raw.get("source", ""), raw["target"]
        read_only = bool(raw.get("read_only", False))
    else:
        parts = str(raw).split(":")
        if len(parts) == 1:
            raise InvalidSpec(f"Anonymous volumes are not supported: {raw!r}.")
        source, target = parts[0], parts[1]
        mode = parts[2] if len(parts) > 2 else "rw"
        read_only = "ro" in mode.split(",")
    bind = source.startswith(("/", ".", "~"))
    if bind:
        source = os.path.normpath(os.path.join(base_dir, os.path.expanduser(source)))
    return VolumeBinding(source=source, target=target, read_only=read_only, bind=bind)


def _parse_env(raw: Any) -> dict[str, str]:
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return {str(k): "" if v is None else str(v) for k, v in raw.items()}
    env: dict[str, str] = {}
    for item in raw:
        key, _, value = str(item).partition("=")
        env[key] = value
    return env


def _names(raw: Any) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, dict):
        return tuple(raw)
    if isinstance(raw, str):
        return (raw,)
    return tuple(raw)


def _parse_probe(raw: Any) -> ProbeSpec:
    if not raw:
        return ProbeSpec()
    if "tcp" in raw:
        return ProbeSpec(kind="tcp", port=int(raw["tcp"]))
    if "http" in raw:
        if "port" not in raw:
            raise InvalidSpec("An http probe needs a port.")
        return ProbeSpec(kind="http", port=int(raw["port"]), path=str(raw["http"]))
    raise InvalidSpec(f"Unsupported probe {raw!r}; use {{http: /path, port: N}} or {{tcp: N}}.")


def _image_ref(name: str, svc: dict[str, Any]) -> str:
    if svc.get("image"):
        return str(svc["image"])
    build = svc.get("build")
    if build:
        # Building is the operator's job; the image is expected under this tag.
        return f"{name}:latest"
    return ""


def _mapping(raw: Any, what: str) -> dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise InvalidSpec(f"{what} must be a mapping, got {raw!r}.")
    return raw


def _sequence(raw: Any, what: str) -> list[Any]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise InvalidSpec(f"{what} must be a list, got {raw!r}.")
    return raw


def parse_service(name: str, svc: dict[str, Any], network: str, base_dir: str) -> ServiceSpec:
    validate_service_name(name)
    svc = _mapping(svc, f"Service '{name}'")
    ext = _mapping(svc.get("x-meshgate"), f"Service '{name}' x-meshgate")

    nets = _names(svc.get("networks"))
    if len(nets) > 1 or (nets and nets[0] != network):
        raise InvalidSpec(f"Service '{name}' must join exactly the fabric network '{network}', got {list(nets)}.")

    routes_file = ext.get("routes")
    if routes_file:
        routes_file = os.path.normpath(os.path.join(base_dir, str(routes_file)))

    command = svc.get("command")
    if isinstance(command, list):
        command = tuple(str(c) for c in command)
    elif command is not None:
        command = str(command)

    try:
        return ServiceSpec(
            name=name,
            image=_image_ref(name, svc),
            ports=tuple(parse_port(p) for p in _sequence(svc.get("ports"), f"Service '{name}' ports")),
            volumes=tuple(parse_volume(v, base_dir) for v in _sequence(svc.get("volumes"), f"Service '{name}' volumes")),
            environment=_parse_env(svc.get("environment")),
            depends_on=_names(svc.get("depends_on")),
            network=network,
            probe=_parse_probe(_mapping(ext.get("probe"), f"Service '{name}' probe")),
            runtime=str(ext.get("runtime", "container")),
            container_name=svc.get("container_name"),
            command=command,
            privileged=bool(svc.get("privileged", False)),
            user=str(svc["user"]) if svc.get("user") is not None else None,
            routes_file=routes_file,
        )
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        # bad values inside individual entries
        raise InvalidSpec(f"Service '{name}' is malformed: {type(e).__name__}: {e}") from None


def parse_compose(doc: dict[str, Any], base_dir: str = ".", default_network: str = "default") -> ComposeProject:
    if not isinstance(doc, dict) or not isinstance(doc.get("services"), dict):
        raise InvalidSpec("Compose document needs a 'services' mapping.")

    networks = list(_mapping(doc.get("networks"), "'networks'"))
    if len(networks) > 1:
        raise InvalidSpec(f"Exactly one network is supported, got {networks}.")
    network = networks[0] if networks else default_network

    volumes = tuple(_mapping(doc.get("volumes"), "'volumes'"))
    services = tuple(parse_service(str(n), s, network, base_dir) for n, s in doc["services"].items())

    for spec in services:
        if spec.runtime not in {"container", "gateway"}:
            raise InvalidSpec(f"Service '{spec.name}' has unknown runtime '{spec.runtime}'.")
        for vol in spec.named_volumes():
            if vol not in volumes:
                raise InvalidSpec(f"Service '{spec.name}' uses undeclared volume '{vol}'.")

    return ComposeProject(network=network, volumes=volumes, services=services, base_dir=base_dir)


def load_compose(path: str, default_network: str = "default") -> ComposeProject:
    with open(path, "r", encoding="utf-8") as f:
        try:
            doc = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise InvalidSpec(f"{path} is not valid YAML: {e}") from e
    return parse_compose(doc, base_dir=os.path.dirname(os.path.abspath(path)), default_network=default_network)
