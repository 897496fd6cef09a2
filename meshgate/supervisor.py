from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Event, Lock, Thread, current_thread
from typing import Iterable

from . import db
from .backends import BackendFactory, ServiceBackend
from .errors import DependencyTimeout, LaunchError, StartCancelled, StartError, StopError, UnknownService
from .fabric import Fabric
from .graph import DependencyGraph
from .models import Health, InstanceState, ProbeResult, ServiceSpec, ServiceStatus, validate_service_name
from .registry import ServiceRegistry
from .settings import settings


@dataclass(frozen=True)
class StartReport:
    order: list[str]
    started: list[str]


class _Instance:
    """Mutable bookkeeping for one ServiceInstance; only the supervisor touches it."""

    def __init__(self, spec: ServiceSpec, backend: ServiceBackend):
        self.spec = spec
        self.backend = backend
        self.lock = Lock()
        self.stop_event = Event()
        self.prober: Thread | None = None
        self.failures = 0


def _settled(entry: ServiceStatus | None) -> bool:
    if entry is None:
        return False
    if entry.state == InstanceState.HEALTHY:
        return True
    # Will never become healthy without operator action.
    return entry.state in {InstanceState.FAILED, InstanceState.STOPPED} or entry.blocked_by is not None


class Supervisor:
    """Starts, probes and stops the declared services in dependency order."""

    def __init__(
        self,
        fabric: Fabric | None,
        backend_factory: BackendFactory,
        registry: ServiceRegistry | None = None,
        probe_interval_s: float | None = None,
        fail_threshold: int | None = None,
        max_failures: int | None = None,
        dependency_wait_s: float | None = None,
    ):
        self.fabric = fabric
        self.backend_factory = backend_factory
        self.registry = registry or ServiceRegistry()
        self.probe_interval_s = probe_interval_s if probe_interval_s is not None else settings.probe_interval_s
        self.fail_threshold = max(1, int(fail_threshold or settings.fail_threshold))
        # unhealthy must be reachable before failed
        self.max_failures = max(self.fail_threshold + 1, int(max_failures or settings.max_failures))
        self.dependency_wait_s = dependency_wait_s if dependency_wait_s is not None else settings.dependency_wait_s

        self.graph = DependencyGraph()
        self._lock = Lock()
        self._specs: dict[str, ServiceSpec] = {}
        self._instances: dict[str, _Instance] = {}
        # bumped by every start and stop; a start only proceeds while its number is current
        self._start_gen: dict[str, int] = {}
        self._closing = Event()

    # --- registration ---

    def register(self, spec: ServiceSpec) -> None:
        self.register_many([spec])

    def register_many(self, specs: Iterable[ServiceSpec]) -> None:
        """Validate and add a batch of specs atomically."""
        specs = list(specs)
        for spec in specs:
            validate_service_name(spec.name)
        with self._lock:
            self.graph.add_all((s.name, s.depends_on) for s in specs)
            for spec in specs:
                self._specs[spec.name] = spec
                db.save_spec(spec.name, len(self._specs), spec.to_dict())
        for spec in specs:
            self._publish(spec.name, InstanceState.PENDING, Health.UNKNOWN)
            db.log_event("INFO", "Registered service", service_name=spec.name)

    def spec(self, name: str) -> ServiceSpec:
        try:
            return self._specs[name]
        except KeyError:
            raise UnknownService(name) from None

    def order(self) -> list[str]:
        return self.graph.order()

    # --- status ---

    def status(self, name: str) -> ServiceStatus:
        entry = self.registry.get(name)
        if entry is None:
            raise UnknownService(name)
        return entry

    def statuses(self) -> list[ServiceStatus]:
        snap = self.registry.snapshot()
        return [snap[n] for n in self.graph.order() if n in snap]

    # --- start ---

    def start_all(self) -> StartReport:
        """Start every service not already running, dependencies first.

        One thread per service; each waits for its dependencies to report
        healthy before launching. A stalled subtree does not hold back
        unrelated ones. Raises StartError after all threads have settled
        when anything failed.
        """
        self._closing.clear()
        order = self.graph.order()
        todo = [n for n in order if not self.status(n).state.running]
        gens: dict[str, int] = {}
        for name in todo:
            gens[name] = self._bump_start_gen(name)
            self._publish(name, InstanceState.PENDING, Health.UNKNOWN)

        results: dict[str, Exception | None] = {}
        threads = []
        for name in todo:
            t = Thread(target=self._start_thread, args=(name, gens[name], results), name=f"start-{name}", daemon=True)
            threads.append(t)
            t.start()
        for t in threads:
            t.join()

        # a start cancelled by a later stop or restart is neither started nor failed
        failures = {n: e for n, e in results.items() if e is not None and not isinstance(e, StartCancelled)}
        started = [n for n in order if n in results and results[n] is None]
        if failures:
            raise StartError(failures, started)
        return StartReport(order=order, started=started)

    def _start_thread(self, name: str, gen: int, results: dict[str, Exception | None]) -> None:
        result = results[name] = self._start_one(name, gen)
        if isinstance(result, StartCancelled):
            db.log_event("INFO", str(result), service_name=name)

    def _bump_start_gen(self, name: str) -> int:
        with self._lock:
            gen = self._start_gen.get(name, 0) + 1
            self._start_gen[name] = gen
            return gen

    def _is_current(self, name: str, gen: int) -> bool:
        return self._start_gen.get(name) == gen

    def _start_one(self, name: str, gen: int | None = None) -> Exception | None:
        spec = self._specs[name]
        if gen is None:
            gen = self._bump_start_gen(name)
        deadline = time.monotonic() + self.dependency_wait_s

        def ready(entry: ServiceStatus | None) -> bool:
            return _settled(entry) or not self._is_current(name, gen)

        for dep in spec.depends_on:
            entry = self.registry.wait_for(dep, ready, timeout=max(0.0, deadline - time.monotonic()))
            if not self._is_current(name, gen):
                return StartCancelled(name)
            if entry is None or entry.state != InstanceState.HEALTHY:
                stalled = self._stalled_root(dep)
                err = DependencyTimeout(name, stalled, self.dependency_wait_s)
                self._publish(name, InstanceState.PENDING, Health.UNKNOWN, detail=str(err), blocked_by=stalled)
                db.log_event("ERROR", str(err), service_name=name)
                return err
        if self._closing.is_set():
            err = LaunchError(f"Service '{name}' not started: shutdown in progress.")
            self._publish(name, InstanceState.PENDING, Health.UNKNOWN, detail=str(err), blocked_by=name)
            return err
        return self._launch(name, gen)

    def _stalled_root(self, name: str) -> str:
        """Follow pending services down to the one that is actually stuck."""
        seen: set[str] = set()
        while name not in seen:
            seen.add(name)
            entry = self.registry.get(name)
            if entry is None:
                return name
            if entry.blocked_by:
                return entry.blocked_by
            if entry.state != InstanceState.PENDING:
                return name
            waiting = [
                d for d in self._specs[name].depends_on
                if (e := self.registry.get(d)) is None or e.state != InstanceState.HEALTHY
            ]
            if not waiting:
                return name
            name = waiting[0]
        return name

    def _launch(self, name: str, gen: int) -> Exception | None:
        inst = self._instance(name)
        with inst.lock:
            if not self._is_current(name, gen):
                return StartCancelled(name)
            inst.stop_event.clear()
            inst.failures = 0
            self._publish(name, InstanceState.STARTING, Health.STARTING)
            try:
                inst.backend.start()
            except Exception as e:
                err = e if isinstance(e, LaunchError) else LaunchError(f"{type(e).__name__}: {e}")
                self._publish(name, InstanceState.FAILED, Health.UNHEALTHY, detail=str(err))
                db.log_event("ERROR", f"Launch failed: {err}", service_name=name)
                return err
            inst.prober = Thread(target=self._probe_loop, args=(inst,), name=f"probe-{name}", daemon=True)
            inst.prober.start()
        db.log_event("INFO", "Launched; waiting for first healthy probe", service_name=name)
        return None

    def _instance(self, name: str) -> _Instance:
        with self._lock:
            inst = self._instances.get(name)
            if inst is None:
                spec = self._specs[name]
                inst = _Instance(spec, self.backend_factory(spec))
                self._instances[name] = inst
            return inst

    # --- probing ---

    def _probe_loop(self, inst: _Instance) -> None:
        while not inst.stop_event.is_set():
            try:
                result = inst.backend.health_check()
            except Exception as e:
                result = ProbeResult(False, f"Probe error: {type(e).__name__}: {e}")
            if inst.stop_event.is_set():
                return
            if not self._apply_probe(inst, result):
                return
            inst.stop_event.wait(self.probe_interval_s)

    def _apply_probe(self, inst: _Instance, result: ProbeResult) -> bool:
        """Fold one probe result into the instance state. False stops probing."""
        name = inst.spec.name
        with inst.lock:
            if inst.stop_event.is_set():
                return False
            state = self.status(name).state
            if not state.running:
                return False

            if result.ok:
                inst.failures = 0
                if state != InstanceState.HEALTHY:
                    db.log_event("INFO", f"{state.value} -> healthy ({result.message})", service_name=name)
                self._publish(
                    name, InstanceState.HEALTHY, Health.HEALTHY,
                    address=inst.backend.address(), detail=result.message,
                )
                return True

            inst.failures += 1
            if settings.verbose_events:
                db.log_event("DEBUG", f"Probe failed ({inst.failures}): {result.message}", service_name=name)
            address = self.status(name).address

            if state == InstanceState.STARTING:
                self._publish(name, state, Health.STARTING, address=address,
                              detail=result.message, failures=inst.failures)
                return True

            if state == InstanceState.HEALTHY and inst.failures < self.fail_threshold:
                self._publish(name, state, Health.HEALTHY, address=address,
                              detail=result.message, failures=inst.failures)
                return True

            if inst.failures >= self.max_failures:
                self._publish(name, InstanceState.FAILED, Health.UNHEALTHY, address=address,
                              detail=f"{inst.failures} consecutive failed probes: {result.message}",
                              failures=inst.failures)
                db.log_event("ERROR", f"Marked failed after {inst.failures} failed probes; container left for inspection",
                             service_name=name)
                return False

            if state == InstanceState.HEALTHY:
                db.log_event("WARN", f"healthy -> unhealthy after {inst.failures} failed probes: {result.message}",
                             service_name=name)
                running = [d for d in self.graph.dependents(name) if self.status(d).state.running]
                if running:
                    db.log_event("WARN", f"Dependents left running: {', '.join(running)}", service_name=name)
            self._publish(name, InstanceState.UNHEALTHY, Health.UNHEALTHY, address=address,
                          detail=result.message, failures=inst.failures)
            return True

    # --- stop ---

    def stop(self, name: str) -> None:
        """Stop one service. Raises StopError if the backend could not release it."""
        self.spec(name)
        self._bump_start_gen(name)  # a start still waiting on dependencies gives up
        with self._lock:
            inst = self._instances.get(name)
        current = self.status(name)
        if inst is None:
            if current.state != InstanceState.STOPPED:
                self._publish(name, InstanceState.STOPPED, Health.UNKNOWN, detail=current.detail)
            return

        with inst.lock:
            if current.state == InstanceState.STOPPED:
                return
            self._publish(name, InstanceState.STOPPING, current.health, address=current.address)
            inst.stop_event.set()
        if inst.prober is not None and inst.prober is not current_thread():
            inst.prober.join()
        inst.prober = None

        try:
            inst.backend.stop()
        except Exception as e:
            detail = f"Stop failed, resources may still be held: {type(e).__name__}: {e}"
            with inst.lock:
                self._publish(name, InstanceState.FAILED, Health.UNKNOWN, address=current.address, detail=detail)
            db.log_event("ERROR", detail, service_name=name)
            raise StopError({name: e}) from e

        with inst.lock:
            self._publish(name, InstanceState.STOPPED, Health.UNKNOWN)
        db.log_event("INFO", "Stopped", service_name=name)

    def stop_all(self, adopt: bool = False) -> list[str]:
        """Stop everything, dependents before their dependencies.

        Best effort: a failing service is recorded and skipped. With adopt,
        services this process never started are stopped too (their backends
        locate what an earlier process left running).
        """
        self._closing.set()
        failures: dict[str, Exception] = {}
        stopped: list[str] = []
        for name in self.graph.reverse_order():
            if adopt:
                self._instance(name)
            try:
                self.stop(name)
                stopped.append(name)
            except StopError as e:
                failures.update(e.failures)
        if failures:
            raise StopError(failures)
        return stopped

    def restart(self, name: str) -> Exception | None:
        self.stop(name)
        db.bump_restart_count(name)
        db.log_event("INFO", "Restarting", service_name=name)
        return self._start_one(name)

    # --- publication ---

    def _publish(
        self,
        name: str,
        state: InstanceState,
        health: Health,
        address: str | None = None,
        detail: str | None = None,
        blocked_by: str | None = None,
        failures: int = 0,
    ) -> ServiceStatus:
        st = self.registry.publish(
            ServiceStatus(
                name=name, state=state, health=health, address=address,
                detail=detail, blocked_by=blocked_by, consecutive_failures=failures,
            )
        )
        db.save_instance(name, state.value, health.value, address, detail)
        return st
