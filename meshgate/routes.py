from __future__ import annotations

import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping

import yaml

from .errors import (
    CredentialError,
    DuplicateHostBinding,
    InvalidRoute,
    ListenerConflict,
    MissingCredential,
    NoRouteMatch,
)
from .models import FORWARDED_HEADERS, RouteRule, Timeouts, TLSCredential
from .settings import settings
from .tls import LoadedCredential, load_credential


def normalize_host(raw: str | None) -> str:
    """Lower-case, strip a port and a trailing dot: 'Jenkins.Local.:443' -> 'jenkins.local'."""
    host = (raw or "").strip().lower()
    if host.startswith("["):
        end = host.find("]")
        host = host[1:end] if end != -1 else host[1:]
    elif host.count(":") == 1:
        host = host.split(":", 1)[0]
    return host.rstrip(".")


def default_timeouts() -> Timeouts:
    return Timeouts(
        connect=settings.connect_timeout_s,
        send=settings.send_timeout_s,
        read=settings.read_timeout_s,
        idle=settings.idle_timeout_s,
    )


def parse_listen(raw: Any) -> tuple[int, bool]:
    """`80`, `"443 ssl"` or `{port: 443, tls: true}` -> (port, tls)."""
    if isinstance(raw, dict):
        port, tls = raw.get("port"), bool(raw.get("tls", False))
    else:
        parts = str(raw).split()
        port, tls = parts[0] if parts else None, "ssl" in parts[1:]
    try:
        port = int(port)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise InvalidRoute(f"Bad listen entry {raw!r}.") from None
    if not 0 < port < 65536:
        raise InvalidRoute(f"Listen port out of range: {port}.")
    return port, tls


def parse_backend(raw: Any) -> tuple[str, int]:
    if isinstance(raw, dict):
        host, port = raw.get("host"), raw.get("port")
    else:
        text = str(raw)
        if "://" in text:
            scheme, text = text.split("://", 1)
            if scheme != "http":
                raise InvalidRoute(f"Backends are plain HTTP, got {raw!r}.")
        host, _, port = text.rstrip("/").rpartition(":")
    if not host:
        raise InvalidRoute(f"Backend needs host:port, got {raw!r}.")
    try:
        return str(host), int(port)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise InvalidRoute(f"Bad backend port in {raw!r}.") from None


def parse_timeouts(raw: Any, base: Timeouts) -> Timeouts:
    if not raw:
        return base
    if not isinstance(raw, dict):
        raise InvalidRoute(f"Timeouts must be a mapping of phase to seconds, got {raw!r}.")
    unknown = set(raw) - {"connect", "send", "read", "idle"}
    if unknown:
        raise InvalidRoute(f"Unknown timeout phase(s): {sorted(unknown)}.")
    try:
        values = {k: float(v) for k, v in raw.items()}
    except (TypeError, ValueError):
        raise InvalidRoute(f"Timeouts must be numbers of seconds, got {raw!r}.") from None
    if any(v <= 0 for v in values.values()):
        raise InvalidRoute("Timeouts must be positive.")
    return Timeouts(
        connect=values.get("connect", base.connect),
        send=values.get("send", base.send),
        read=values.get("read", base.read),
        idle=values.get("idle", base.idle),
    )


def _string_list(raw: Any, what: str) -> list[str]:
    if isinstance(raw, str):
        return raw.split()
    if not isinstance(raw, list) or not all(isinstance(x, str) for x in raw):
        raise InvalidRoute(f"{what} must be a string or a list of strings, got {raw!r}.")
    return raw


def parse_server(server: Any, base: Timeouts) -> list[RouteRule]:
    """One server block -> one rule per server_name x listen pair."""
    if not isinstance(server, dict):
        raise InvalidRoute(f"Server block must be a mapping, got {server!r}.")
    names = _string_list(server.get("server_name") or [], "server_name")
    if not names:
        raise InvalidRoute(f"Server block without server_name: {server!r}.")
    if "backend" not in server:
        raise InvalidRoute(f"Server '{names[0]}' has no backend.")
    backend_host, backend_port = parse_backend(server["backend"])
    timeouts = parse_timeouts(server.get("timeouts"), base)
    forwarded = server.get("forward")
    if forwarded is None:
        forwarded_headers = FORWARDED_HEADERS
    else:
        forwarded_headers = frozenset(h.lower() for h in _string_list(forwarded, "forward"))
    credential = server.get("tls")
    listens = server.get("listen") or [80]
    if not isinstance(listens, list):
        listens = [listens]

    rules: list[RouteRule] = []
    for listen in listens:
        port, tls = parse_listen(listen)
        if tls and not credential:
            raise InvalidRoute(f"Server '{names[0]}' listens with TLS on {port} but names no 'tls' credential.")
        for hostname in names:
            rules.append(
                RouteRule(
                    hostname=normalize_host(hostname),
                    port=port,
                    backend_host=backend_host,
                    backend_port=backend_port,
                    tls=tls,
                    credential=str(credential) if tls else None,
                    timeouts=timeouts,
                    forwarded_headers=forwarded_headers,
                )
            )
    return rules


def parse_routes(doc: Any, base_dir: str = ".") -> tuple[list[RouteRule], dict[str, TLSCredential]]:
    """Route document -> (rules, credentials). Structural checks only."""
    if not isinstance(doc, dict) or not isinstance(doc.get("servers"), list):
        raise InvalidRoute("Route document needs a 'servers' list.")

    entries = doc.get("credentials") or {}
    if not isinstance(entries, dict):
        raise CredentialError("'credentials' must map names to {cert, key}.")
    credentials: dict[str, TLSCredential] = {}
    for name, entry in entries.items():
        if (
            not isinstance(entry, dict)
            or not isinstance(entry.get("cert"), str)
            or not isinstance(entry.get("key"), str)
        ):
            raise CredentialError(f"Credential '{name}' needs 'cert' and 'key'.")
        credentials[str(name)] = TLSCredential(
            name=str(name),
            cert_file=os.path.join(base_dir, entry["cert"]),
            key_file=os.path.join(base_dir, entry["key"]),
        )

    base = parse_timeouts(doc.get("timeouts"), default_timeouts())
    rules: list[RouteRule] = []
    for server in doc["servers"]:
        rules.extend(parse_server(server, base))
    return rules, credentials


def load_routes_file(path: str) -> tuple[list[RouteRule], dict[str, TLSCredential]]:
    with open(path, "r", encoding="utf-8") as f:
        try:
            doc = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise InvalidRoute(f"{path} is not valid YAML: {e}") from e
    return parse_routes(doc, base_dir=os.path.dirname(os.path.abspath(path)))


@dataclass(frozen=True)
class RouteTable:
    """Immutable, validated set of routes. Replaced wholesale on reload."""

    rules: Mapping[tuple[str, int], RouteRule] = field(default_factory=lambda: MappingProxyType({}))
    listeners: Mapping[int, bool] = field(default_factory=lambda: MappingProxyType({}))
    credentials: Mapping[str, LoadedCredential] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def build(
        cls,
        rules: Iterable[RouteRule],
        credentials: Mapping[str, TLSCredential] | None = None,
        loader: Any = load_credential,
    ) -> "RouteTable":
        credentials = dict(credentials or {})
        by_key: dict[tuple[str, int], RouteRule] = {}
        listeners: dict[int, bool] = {}
        for rule in rules:
            if rule.key in by_key:
                raise DuplicateHostBinding(rule.hostname, rule.port)
            if rule.tls and rule.credential not in credentials:
                raise MissingCredential(rule.hostname, str(rule.credential))
            if listeners.setdefault(rule.port, rule.tls) != rule.tls:
                raise ListenerConflict(rule.port)
            by_key[rule.key] = rule

        used = {r.credential for r in by_key.values() if r.tls}
        loaded = {name: loader(credentials[name]) for name in sorted(used)}
        return cls(
            rules=MappingProxyType(by_key),
            listeners=MappingProxyType(listeners),
            credentials=MappingProxyType(loaded),
        )

    def lookup(self, hostname: str | None, port: int) -> RouteRule:
        """Exact (hostname, port) match; there is no default route."""
        rule = self.rules.get((normalize_host(hostname), port))
        if rule is None:
            raise NoRouteMatch(f"No route for host {hostname!r} on port {port}.")
        return rule

    def credential_for(self, rule: RouteRule) -> LoadedCredential | None:
        return self.credentials.get(rule.credential) if rule.credential else None

    def default_credential(self, port: int) -> LoadedCredential | None:
        """The listener certificate: first usable credential declared on the port."""
        for rule in self.rules.values():
            if rule.port == port and rule.tls:
                cred = self.credential_for(rule)
                if cred is not None and cred.problem() is None:
                    return cred
        return None

    def problems(self) -> dict[str, str]:
        return {name: p for name, c in self.credentials.items() if (p := c.problem())}
