"""Hostname-routed reverse proxy.

The gateway is an ASGI application (served by uvicorn, one server per listen
port, all on one event loop in a dedicated thread) that forwards each request
to exactly one backend over a pooled httpx client.
"""
from __future__ import annotations

import asyncio
import socket
import ssl
from dataclasses import dataclass
from threading import Event, Lock, Thread
from typing import Any, AsyncIterator, Mapping

import httpx
import uvicorn
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response, StreamingResponse
from uvicorn.protocols.http.h11_impl import H11Protocol

from . import db
from .errors import BackendTimeout, BackendUnavailable, GatewayError, LaunchError, RouteError
from .models import InstanceState, RouteRule, ServiceStatus, Timeouts, TLSCredential
from .registry import ServiceRegistry
from .routes import RouteTable, load_routes_file, normalize_host
from .settings import settings
from .tls import remember_server_name, server_context, server_name_of


STATE_SNI = "meshgate.tls_server_name"

HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)


@dataclass(frozen=True)
class InboundRequest:
    method: str
    target: str  # path plus query string, as received
    headers: list[tuple[str, str]]
    scheme: str
    port: int
    client_ip: str
    sni: str | None = None
    body: AsyncIterator[bytes] | bytes | None = None

    def header(self, name: str) -> str | None:
        name = name.lower()
        for k, v in self.headers:
            if k.lower() == name:
                return v
        return None

    @property
    def requested_host(self) -> str | None:
        """SNI on TLS connections, Host header otherwise (or when no SNI was sent)."""
        if self.scheme == "https" and self.sni:
            return self.sni
        return self.header("host")


@dataclass(frozen=True)
class RouteStatus:
    rule: RouteRule
    state: str  # healthy|degraded|down|unmanaged|tls_error
    detail: str | None = None


def forward_headers(req: InboundRequest, rule: RouteRule) -> list[tuple[str, str]]:
    """Request headers as sent to the backend."""
    policy = rule.forwarded_headers
    prior_xff = [v for k, v in req.headers if k.lower() == "x-forwarded-for"]
    drop = set(HOP_BY_HOP) | {"host"} | (policy - {"host"})
    connection = req.header("connection")
    if connection:
        drop |= {t.strip().lower() for t in connection.split(",")}

    out = [(k, v) for k, v in req.headers if k.lower() not in drop]
    if "host" in policy:
        out.append(("host", req.header("host") or rule.hostname))
    else:
        out.append(("host", f"{rule.backend_host}:{rule.backend_port}"))
    if "x-real-ip" in policy:
        out.append(("x-real-ip", req.client_ip))
    if "x-forwarded-for" in policy:
        out.append(("x-forwarded-for", ", ".join(prior_xff + [req.client_ip])))
    if "x-forwarded-proto" in policy:
        out.append(("x-forwarded-proto", req.scheme))
    return out


def response_headers(headers: httpx.Headers) -> list[tuple[bytes, bytes]]:
    drop = set(HOP_BY_HOP)
    connection = headers.get("connection")
    if connection:
        drop |= {t.strip().lower() for t in connection.split(",")}
    return [(k, v) for k, v in headers.raw if k.decode("latin-1").lower() not in drop]


def error_response(err: GatewayError) -> Response:
    # Generic text only: the exception message may name internal addresses.
    return PlainTextResponse(
        f"{err.status_code} {err.public_message}\n",
        status_code=err.status_code,
        headers={"x-gateway-error": err.code},
    )


class _SNIProtocol(H11Protocol):
    """Carries the client's SNI name into every request scope of the connection."""

    def connection_made(self, transport: asyncio.Transport) -> None:  # type: ignore[override]
        super().connection_made(transport)
        name = server_name_of(transport.get_extra_info("ssl_object"))
        if name:
            self.app_state = {**self.app_state, STATE_SNI: name}


class _SNISelector:
    """sni_callback: pick the certificate for the requested name, per handshake."""

    def __init__(self, gateway: "Gateway", port: int):
        self.gateway = gateway
        self.port = port

    def __call__(self, ssl_object: Any, server_name: str | None, _ctx: ssl.SSLContext) -> int | None:
        remember_server_name(ssl_object, server_name)
        table = self.gateway.table
        rule = table.rules.get((normalize_host(server_name), self.port)) if server_name else None
        cred = table.credential_for(rule) if rule else table.default_credential(self.port)
        if cred is None:
            # Unknown name: finish with the listener certificate, the request gets NoRouteMatch.
            return None
        problem = cred.problem()
        if problem or cred.context is None:
            db.log_event("WARN", f"TLS handshake for '{server_name}' on :{self.port} refused: {problem}")
            return ssl.ALERT_DESCRIPTION_HANDSHAKE_FAILURE
        ssl_object.context = cred.context
        return None


class Gateway:
    def __init__(
        self,
        registry: ServiceRegistry,
        transport: httpx.AsyncBaseTransport | None = None,
        max_connections: int | None = None,
    ):
        self.registry = registry
        self.routes_file: str | None = None
        self._table = RouteTable()
        self._reload_lock = Lock()
        self._transport = transport
        self._max_connections = max_connections or settings.max_backend_connections
        self._client: httpx.AsyncClient | None = None

        self._thread: Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._servers: list[uvicorn.Server] = []
        self._tls_contexts: dict[int, ssl.SSLContext] = {}
        self._start_error: BaseException | None = None
        self._degraded: set[str] = set()
        self._degraded_lock = Lock()
        registry.subscribe(self._on_service_change)

    # --- configuration ---

    @property
    def table(self) -> RouteTable:
        return self._table

    @property
    def listen_ports(self) -> list[int]:
        return sorted(self._table.listeners)

    def load_routes(self, rules: list[RouteRule], credentials: Mapping[str, TLSCredential] | None = None) -> RouteTable:
        """Validate and install a complete route set.

        Either every rule is installed or the current table stays in effect.
        A running gateway cannot change its listener set this way.
        """
        with self._reload_lock:
            table = RouteTable.build(rules, credentials)
            if self.serving and dict(table.listeners) != dict(self._table.listeners):
                raise RouteError(
                    f"Listener set change {dict(self._table.listeners)} -> {dict(table.listeners)} needs a gateway restart."
                )
            self._table = table
            self._refresh_listener_certs()
        for name, problem in table.problems().items():
            db.log_event("WARN", f"TLS credential '{name}' unusable: {problem}")
        db.log_event("INFO", f"Loaded {len(table.rules)} route(s) on port(s) {self.listen_ports}")
        return table

    def reload(self, path: str | None = None) -> RouteTable:
        path = path or self.routes_file
        if not path:
            raise RouteError("No route file configured.")
        try:
            rules, credentials = load_routes_file(path)
            table = self.load_routes(rules, credentials)
        except (RouteError, OSError) as e:
            db.log_event("ERROR", f"Route reload from {path} rejected, previous routes kept: {e}")
            raise
        self.routes_file = path
        return table

    def _refresh_listener_certs(self) -> None:
        # Connections without SNI get the listener certificate; keep it in step with the table.
        for port, ctx in self._tls_contexts.items():
            cred = self._table.default_credential(port)
            if cred is not None and self._loop is not None:
                self._loop.call_soon_threadsafe(
                    ctx.load_cert_chain, cred.credential.cert_file, cred.credential.key_file
                )

    # --- backend resolution and route health ---

    def resolve(self, rule: RouteRule) -> tuple[str, int]:
        """Backend address for a rule; supervised services resolve via the registry."""
        entry = self.registry.get(rule.backend_host)
        if entry is None:
            return rule.backend_host, rule.backend_port
        if not entry.state.running or not entry.address:
            raise BackendUnavailable(f"Service '{entry.name}' is {entry.state.value}.")
        return entry.address, rule.backend_port

    def route_statuses(self) -> list[RouteStatus]:
        table = self._table
        snap = self.registry.snapshot()
        out: list[RouteStatus] = []
        for rule in sorted(table.rules.values(), key=lambda r: (r.hostname, r.port)):
            cred = table.credential_for(rule)
            problem = cred.problem() if cred else None
            entry = snap.get(rule.backend_host)
            if problem:
                out.append(RouteStatus(rule, "tls_error", problem))
            elif entry is None:
                out.append(RouteStatus(rule, "unmanaged"))
            elif entry.state == InstanceState.HEALTHY:
                out.append(RouteStatus(rule, "healthy"))
            elif entry.state == InstanceState.UNHEALTHY:
                out.append(RouteStatus(rule, "degraded", entry.detail))
            else:
                out.append(RouteStatus(rule, "down", entry.state.value))
        return out

    def _on_service_change(self, status: ServiceStatus) -> None:
        affected = sorted({r.hostname for r in self._table.rules.values() if r.backend_host == status.name})
        if not affected:
            return
        with self._degraded_lock:
            if status.state == InstanceState.UNHEALTHY and status.name not in self._degraded:
                self._degraded.add(status.name)
                message = ("WARN", f"Routes degraded: {', '.join(affected)}")
            elif status.state != InstanceState.UNHEALTHY and status.name in self._degraded:
                self._degraded.discard(status.name)
                message = ("INFO", f"Routes no longer degraded ({status.state.value}): {', '.join(affected)}")
            else:
                return
        db.log_event(*message, service_name=status.name)

    # --- request path ---

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                limits=httpx.Limits(max_connections=self._max_connections, max_keepalive_connections=50),
                follow_redirects=False,
                trust_env=False,
            )
        return self._client

    async def aclose(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def handle(self, req: InboundRequest) -> Response:
        try:
            rule = self._table.lookup(req.requested_host, req.port)
            host, port = self.resolve(rule)
            return await self._forward(req, rule, host, port)
        except GatewayError as e:
            db.log_event("WARN", f"{e.code}: {req.method} {req.scheme}://{req.requested_host}:{req.port}: {e}")
            return error_response(e)

    async def _forward(self, req: InboundRequest, rule: RouteRule, host: str, port: int) -> Response:
        t = rule.timeouts
        client = self._get_client()
        # Not client.build_request: that would add the client's default headers.
        upstream_req = httpx.Request(
            req.method,
            f"http://{host}:{port}{req.target}",
            headers=forward_headers(req, rule),
            content=req.body,
            # httpx bounds connect and send; first byte and idle are enforced below.
            extensions={
                "timeout": httpx.Timeout(
                    connect=t.connect, write=t.send, read=max(t.read, t.idle), pool=t.connect
                ).as_dict()
            },
        )
        try:
            upstream = await self._send(client, upstream_req, t)
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as e:
            raise BackendUnavailable(f"{host}:{port} unreachable: {type(e).__name__}: {e}") from e
        except httpx.TimeoutException as e:
            raise BackendTimeout(f"{host}:{port} timed out: {type(e).__name__}") from e
        except httpx.HTTPError as e:
            raise BackendUnavailable(f"{host}:{port} failed: {type(e).__name__}: {e}") from e

        response = StreamingResponse(self._relay(upstream, t, rule), status_code=upstream.status_code)
        response.raw_headers = response_headers(upstream.headers)
        return response

    async def _send(self, client: httpx.AsyncClient, request: httpx.Request, t: Timeouts) -> httpx.Response:
        """Send and wait for response headers.

        The first-byte clock starts once the request body is on the wire,
        which httpcore reports through its trace hook.
        """
        body_sent = asyncio.Event()

        async def trace(event: str, info: dict[str, Any]) -> None:
            if event.endswith("send_request_body.complete"):
                body_sent.set()

        request.extensions["trace"] = trace
        task = asyncio.ensure_future(client.send(request, stream=True))
        waiter = asyncio.ensure_future(body_sent.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if task.done():
                return task.result()
            try:
                return await asyncio.wait_for(asyncio.shield(task), timeout=t.read)
            except asyncio.TimeoutError:
                raise BackendTimeout(f"no response within {t.read:g}s") from None
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                try:
                    await task
                except (asyncio.CancelledError, httpx.HTTPError):
                    pass

    async def _relay(self, upstream: httpx.Response, t: Timeouts, rule: RouteRule) -> AsyncIterator[bytes]:
        """Stream the backend body; the upstream connection is released on every exit path."""
        if upstream.is_stream_consumed:
            # Transports may hand back a response that is already read.
            try:
                if upstream.content:
                    yield upstream.content
            finally:
                await upstream.aclose()
            return
        chunks = upstream.aiter_raw()
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(chunks.__anext__(), timeout=t.idle)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    db.log_event("WARN", f"{rule.hostname}: backend idle for {t.idle:g}s, closing stream")
                    break
                yield chunk
        except httpx.HTTPError as e:
            db.log_event("WARN", f"{rule.hostname}: backend stream broke: {type(e).__name__}: {e}")
        finally:
            await upstream.aclose()

    # --- ASGI ---

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        if scope["type"] == "lifespan":
            await self._lifespan(receive, send)
            return
        if scope["type"] != "http":
            await send({"type": "websocket.close", "code": 1003})
            return
        response = await self.handle(self.inbound(Request(scope, receive)))
        await response(scope, receive, send)

    async def _lifespan(self, receive: Any, send: Any) -> None:
        while True:
            message = await receive()
            if message["type"] == "lifespan.startup":
                await send({"type": "lifespan.startup.complete"})
            elif message["type"] == "lifespan.shutdown":
                await self.aclose()
                await send({"type": "lifespan.shutdown.complete"})
                return

    @staticmethod
    def inbound(request: Request) -> InboundRequest:
        scope = request.scope
        server = scope.get("server") or ("", 443 if scope["scheme"] == "https" else 80)
        client = scope.get("client") or ("", 0)
        target = (scope.get("raw_path") or b"").decode("latin-1").split("?", 1)[0] or scope["path"]
        if scope.get("query_string"):
            target += "?" + scope["query_string"].decode("latin-1")
        has_body = "content-length" in request.headers or "transfer-encoding" in request.headers
        return InboundRequest(
            method=request.method,
            target=target,
            headers=[(k.decode("latin-1"), v.decode("latin-1")) for k, v in scope["headers"]],
            scheme=scope["scheme"],
            port=int(server[1] or 0),
            client_ip=client[0],
            sni=(scope.get("state") or {}).get(STATE_SNI),
            body=request.stream() if has_body else None,
        )

    # --- listeners ---

    @property
    def serving(self) -> bool:
        return (
            self._thread is not None
            and self._thread.is_alive()
            and bool(self._servers)
            and all(s.started for s in self._servers)
        )

    def start(self, host: str | None = None) -> None:
        """Bind every listener and serve in a background thread.

        Failing to bind any port is fatal for the gateway only: nothing is
        left bound and LaunchError is raised.
        """
        if self.serving:
            return
        host = host or settings.gateway_host
        listeners = dict(self._table.listeners)
        if not listeners:
            raise LaunchError("Gateway has no routes, so nothing to listen on.")

        sockets: dict[int, socket.socket] = {}
        try:
            for port in sorted(listeners):
                sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
                sockets[port] = sock
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                sock.bind((host, port))
                sock.listen(2048)
        except OSError as e:
            for sock in sockets.values():
                sock.close()
            raise LaunchError(f"Cannot bind {host}:{port}: {e}") from e

        ready = Event()
        self._start_error = None
        self._thread = Thread(target=self._run, args=(sockets, listeners, ready), name="gateway", daemon=True)
        self._thread.start()
        ready.wait(timeout=30)
        if not self.serving:
            self.stop()
            raise LaunchError(f"Gateway listeners failed to start: {self._start_error!r}")
        db.log_event("INFO", f"Gateway listening on {host} ports {sorted(listeners)}")

    def stop(self) -> None:
        thread = self._thread
        if thread is None:
            return
        for server in self._servers:
            server.should_exit = True
        thread.join(timeout=30)
        if thread.is_alive():
            raise RuntimeError("Gateway listeners did not shut down within 30s.")
        self._thread = None
        self._servers = []
        self._tls_contexts = {}
        db.log_event("INFO", "Gateway stopped")

    def _run(self, sockets: dict[int, socket.socket], listeners: dict[int, bool], ready: Event) -> None:
        try:
            asyncio.run(self._serve(sockets, listeners, ready))
        except Exception as e:
            self._start_error = e
            db.log_event("ERROR", f"Gateway loop crashed: {type(e).__name__}: {e}")
        finally:
            ready.set()
            for sock in sockets.values():
                sock.close()

    def _listener_context(self, port: int) -> ssl.SSLContext:
        ctx = server_context()
        cred = self._table.default_credential(port)
        if cred is not None:
            ctx.load_cert_chain(cred.credential.cert_file, cred.credential.key_file)
        ctx.sni_callback = _SNISelector(self, port)
        return ctx

    async def _serve(self, sockets: dict[int, socket.socket], listeners: dict[int, bool], ready: Event) -> None:
        self._loop = asyncio.get_running_loop()
        servers: list[uvicorn.Server] = []
        for port in sorted(sockets):
            config = uvicorn.Config(
                self,
                interface="asgi3",
                http=_SNIProtocol,
                lifespan="off",
                proxy_headers=False,
                server_header=False,
                date_header=False,
                access_log=False,
                log_config=None,
                timeout_graceful_shutdown=5,
            )
            config.load()
            if listeners[port]:
                config.ssl = self._tls_contexts[port] = self._listener_context(port)
            servers.append(uvicorn.Server(config))
        self._servers = servers

        tasks = [asyncio.create_task(s.serve(sockets=[sockets[p]])) for s, p in zip(servers, sorted(sockets))]
        try:
            while not all(s.started for s in servers) and not any(t.done() for t in tasks):
                await asyncio.sleep(0.01)
            ready.set()
            await asyncio.gather(*tasks)
        finally:
            for s in servers:
                s.should_exit = True
            await self.aclose()
            self._loop = None
