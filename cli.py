from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict, dataclass

import requests
import uvicorn
from docker.errors import DockerException

from meshgate import db, docker_ops
from meshgate.api import create_app
from meshgate.backends import BackendFactory, default_backend_factory
from meshgate.compose import ComposeProject, load_compose
from meshgate.errors import MeshgateError, RouteError, SpecError, StartError, StopError
from meshgate.fabric import Fabric, FabricDriver
from meshgate.gateway import Gateway
from meshgate.models import ServiceSpec
from meshgate.registry import ServiceRegistry
from meshgate.routes import RouteTable, load_routes_file
from meshgate.settings import settings
from meshgate.supervisor import Supervisor


EXIT_OK = 0
EXIT_PARTIAL = 1  # some services degraded or not started
EXIT_FATAL = 2  # nothing started, or the configuration was rejected


@dataclass
class Stack:
    project: ComposeProject
    registry: ServiceRegistry
    fabric: Fabric
    gateway: Gateway
    supervisor: Supervisor


def build_stack(
    project: ComposeProject,
    backend_factory: BackendFactory | None = None,
    fabric_driver: FabricDriver | None = None,
) -> Stack:
    registry = ServiceRegistry()
    fabric = Fabric(project.network, project.volumes, driver=fabric_driver)
    gateway = Gateway(registry)
    factory = backend_factory or default_backend_factory(fabric, gateway)
    supervisor = Supervisor(fabric, factory, registry=registry)
    supervisor.register_many(project.services)
    return Stack(project, registry, fabric, gateway, supervisor)


def project_from_store() -> ComposeProject:
    """Rebuild the last registered project from the state file."""
    specs = tuple(ServiceSpec.from_dict(d) for d in db.load_specs())
    if not specs:
        raise SpecError("No services recorded; pass -f <compose file>.")
    volumes = tuple(sorted({v for s in specs for v in s.named_volumes()}))
    return ComposeProject(network=specs[0].network or "default", volumes=volumes, services=specs, base_dir=".")


def _load_project(path: str | None) -> ComposeProject:
    return load_compose(path) if path else project_from_store()


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def cmd_up(args: argparse.Namespace) -> int:
    try:
        project = load_compose(args.file)
        stack = build_stack(project)
    except (SpecError, OSError) as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FATAL
    # the state file now describes this project only
    db.forget_specs(keep=[s.name for s in project.services])

    code = EXIT_OK
    try:
        try:
            report = stack.supervisor.start_all()
            print(f"started: {', '.join(report.started)}")
        except StartError as e:
            for name, err in e.failures.items():
                print(f"{name}: {err}", file=sys.stderr)
            code = EXIT_PARTIAL if e.partial else EXIT_FATAL

        if code != EXIT_FATAL and not args.no_api:
            app = create_app(stack.supervisor, stack.gateway)
            uvicorn.run(app, host=args.api_host, port=args.api_port, log_config=None)
    finally:
        try:
            stack.supervisor.stop_all()
        except StopError as e:
            print(f"error: {e}", file=sys.stderr)
            code = max(code, EXIT_PARTIAL)
    return code


def cmd_down(args: argparse.Namespace) -> int:
    try:
        stack = build_stack(_load_project(args.file))
    except (SpecError, OSError) as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FATAL
    try:
        stopped = stack.supervisor.stop_all(adopt=True)
    except StopError as e:
        for name, err in e.failures.items():
            print(f"{name}: {err}", file=sys.stderr)
        return EXIT_PARTIAL
    print(f"stopped: {', '.join(stopped)}")
    return EXIT_OK


def cmd_logs(args: argparse.Namespace) -> int:
    try:
        ref = docker_ops.find_container(settings.project, args.service)
    except DockerException as e:
        print(f"error: docker unavailable: {e}", file=sys.stderr)
        ref = None
    if ref is None:
        # In-process services (the gateway) only have the event log.
        for ev in reversed(db.latest_events(limit=args.tail, service_name=args.service)):
            print(f"{ev['ts']} {ev['level']:5} {ev['message']}")
        return EXIT_OK
    try:
        for chunk in docker_ops.container_logs(ref.id, tail=args.tail, follow=args.follow):
            sys.stdout.write(chunk.decode("utf-8", errors="replace"))
            sys.stdout.flush()
    except KeyboardInterrupt:
        pass
    return EXIT_OK


def cmd_status(args: argparse.Namespace) -> int:
    try:
        r = requests.get(f"{args.api.rstrip('/')}/status", timeout=10)
    except requests.ConnectionError:
        # No running `up`: show what the state file last recorded.
        rows = db.list_instances()
        print(f"status API at {args.api} not reachable; last recorded state:", file=sys.stderr)
        _print([asdict(row) for row in rows])
        if not rows:
            return EXIT_FATAL
        return EXIT_PARTIAL if any(row.state != "healthy" for row in rows) else EXIT_OK

    body = r.json()
    _print(body)
    if not r.ok:
        return EXIT_FATAL
    degraded = [s for s in body["services"] if s["state"] != "healthy"]
    degraded += [x for x in body["routes"] if x["state"] not in {"healthy", "unmanaged"}]
    return EXIT_PARTIAL if degraded else EXIT_OK


def cmd_events(args: argparse.Namespace) -> int:
    params = {"limit": args.limit}
    if args.service:
        params["service"] = args.service
    _print(requests.get(f"{args.api.rstrip('/')}/events", params=params, timeout=10).json())
    return EXIT_OK


def cmd_volume_rm(args: argparse.Namespace) -> int:
    try:
        project = _load_project(args.file)
        Fabric(project.network, project.volumes).remove_volume(args.name)
    except (MeshgateError, DockerException, OSError) as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FATAL
    print(f"removed: {args.name}")
    return EXIT_OK


def cmd_routes_check(args: argparse.Namespace) -> int:
    try:
        rules, credentials = load_routes_file(args.path)
        table = RouteTable.build(rules, credentials)
    except (RouteError, OSError) as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FATAL
    for rule in sorted(table.rules.values(), key=lambda r: (r.port, r.hostname)):
        print(f"{rule.scheme}://{rule.hostname}:{rule.port} -> {rule.backend_host}:{rule.backend_port}")
    problems = table.problems()
    for name, problem in problems.items():
        print(f"warning: credential {name}: {problem}", file=sys.stderr)
    return EXIT_PARTIAL if problems else EXIT_OK


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="meshgate: service supervisor and routing gateway")
    p.add_argument("--db", default=None, help="State file (default: MESHGATE_DB_PATH)")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_up = sub.add_parser("up", help="Create network/volumes, start all services, serve status API")
    s_up.add_argument("-f", "--file", default="docker-compose.yml")
    s_up.add_argument("--api-host", default=settings.api_host)
    s_up.add_argument("--api-port", type=int, default=settings.api_port)
    s_up.add_argument("--no-api", action="store_true", help="Start, then stop again (smoke test)")
    s_up.set_defaults(func=cmd_up)

    s_down = sub.add_parser("down", help="Stop all services")
    s_down.add_argument("-f", "--file", default=None, help="Compose file (default: last registered project)")
    s_down.set_defaults(func=cmd_down)

    s_logs = sub.add_parser("logs", help="Show recent output of a service")
    s_logs.add_argument("service")
    s_logs.add_argument("--tail", type=int, default=100)
    s_logs.add_argument("--follow", action="store_true")
    s_logs.set_defaults(func=cmd_logs)

    s_status = sub.add_parser("status", help="Query a running status API")
    s_status.add_argument("--api", default=f"http://{settings.api_host}:{settings.api_port}")
    s_status.set_defaults(func=cmd_status)

    s_ev = sub.add_parser("events", help="Show events from a running status API")
    s_ev.add_argument("--api", default=f"http://{settings.api_host}:{settings.api_port}")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--service", default=None)
    s_ev.set_defaults(func=cmd_events)

    s_vol = sub.add_parser("volume", help="Volume operations")
    vol_sub = s_vol.add_subparsers(dest="volume_cmd", required=True)
    s_vrm = vol_sub.add_parser("rm", help="Destroy a named volume")
    s_vrm.add_argument("name")
    s_vrm.add_argument("-f", "--file", default=None)
    s_vrm.set_defaults(func=cmd_volume_rm)

    s_routes = sub.add_parser("routes", help="Route file operations")
    routes_sub = s_routes.add_subparsers(dest="routes_cmd", required=True)
    s_check = routes_sub.add_parser("check", help="Validate a route file")
    s_check.add_argument("path")
    s_check.set_defaults(func=cmd_routes_check)

    args = p.parse_args(argv)

    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)-5s %(message)s")
    db.use_path(args.db)
    db.init_db()
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
