from __future__ import annotations


class MeshgateError(Exception):
    pass


# --- service declaration errors: rejected before anything is allocated ---


class SpecError(MeshgateError):
    pass


class DuplicateName(SpecError):
    def __init__(self, name: str):
        super().__init__(f"Service '{name}' is already declared.")
        self.name = name


class UnknownDependency(SpecError):
    def __init__(self, service: str, dependency: str):
        super().__init__(f"Service '{service}' depends on undeclared service '{dependency}'.")
        self.service = service
        self.dependency = dependency


class CyclicDependency(SpecError):
    def __init__(self, cycle: list[str]):
        super().__init__("Dependency cycle: " + " -> ".join(cycle))
        self.cycle = cycle


class InvalidSpec(SpecError):
    pass


class UnknownService(MeshgateError, LookupError):
    def __init__(self, name: str):
        super().__init__(f"Unknown service '{name}'.")
        self.name = name


# --- startup / shutdown ---


class LaunchError(MeshgateError):
    """A backend could not be started (or a listener could not be bound)."""


class StartCancelled(LaunchError):
    """A start gave way to a later stop or restart of the same service."""

    def __init__(self, service: str):
        super().__init__(f"Start of '{service}' cancelled: the service was stopped or restarted meanwhile.")
        self.service = service


class DependencyTimeout(MeshgateError):
    def __init__(self, service: str, stalled: str, waited_s: float):
        super().__init__(
            f"Service '{service}' not started: dependency '{stalled}' did not become healthy within {waited_s:g}s."
        )
        self.service = service
        self.stalled = stalled
        self.waited_s = waited_s


class StartError(MeshgateError):
    """Aggregate raised by start_all once every branch has settled."""

    def __init__(self, failures: dict[str, Exception], started: list[str]):
        names = ", ".join(sorted(failures))
        super().__init__(f"{len(failures)} service(s) failed to start: {names}")
        self.failures = failures
        self.started = started

    @property
    def partial(self) -> bool:
        return bool(self.started)


class StopError(MeshgateError):
    def __init__(self, failures: dict[str, Exception]):
        names = ", ".join(sorted(failures))
        super().__init__(f"{len(failures)} service(s) failed to stop cleanly: {names}")
        self.failures = failures


# --- route configuration ---


class RouteError(MeshgateError):
    pass


class DuplicateHostBinding(RouteError):
    def __init__(self, hostname: str, port: int):
        super().__init__(f"Hostname '{hostname}' is bound more than once on port {port}.")
        self.hostname = hostname
        self.port = port


class MissingCredential(RouteError):
    def __init__(self, hostname: str, credential: str):
        super().__init__(f"Route '{hostname}' references undeclared TLS credential '{credential}'.")
        self.hostname = hostname
        self.credential = credential


class CredentialError(RouteError):
    pass


class ListenerConflict(RouteError):
    def __init__(self, port: int):
        super().__init__(f"Port {port} is declared both as plain HTTP and as TLS.")
        self.port = port


class InvalidRoute(RouteError):
    pass


# --- per-request gateway conditions ---


class GatewayError(MeshgateError):
    """Raised while handling one request; never escapes the connection.

    `public_message` is what the client sees. The exception text may carry
    internal addresses and only goes to the event log.
    """

    status_code = 502
    public_message = "Bad Gateway"
    code = "gateway_error"


class NoRouteMatch(GatewayError):
    status_code = 421
    public_message = "Misdirected Request"
    code = "no_route_match"


class BackendUnavailable(GatewayError):
    status_code = 502
    public_message = "Bad Gateway"
    code = "backend_unavailable"


class BackendTimeout(GatewayError):
    status_code = 504
    public_message = "Gateway Timeout"
    code = "backend_timeout"
