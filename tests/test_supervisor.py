import threading
import time

import pytest

from conftest import FakeFactory, wait_until
from meshgate import db
from meshgate.errors import (
    CyclicDependency,
    DependencyTimeout,
    DuplicateName,
    InvalidSpec,
    LaunchError,
    StartError,
    StopError,
    UnknownService,
)
from meshgate.models import Health, InstanceState, ProbeResult, ServiceSpec
from meshgate.supervisor import Supervisor


def _spec(name, *deps):
    return ServiceSpec(name=name, image=f"{name}:latest", depends_on=tuple(deps))


def _supervisor(factory, **kwargs):
    kwargs.setdefault("probe_interval_s", 0.02)
    kwargs.setdefault("dependency_wait_s", 5)
    return Supervisor(None, factory, **kwargs)


def _state(sup, name):
    return sup.status(name).state


@pytest.fixture
def cleanup():
    sups = []
    yield sups.append
    for sup in sups:
        try:
            sup.stop_all()
        except StopError:
            pass


def test_register_publishes_pending_and_persists_specs():
    sup = _supervisor(FakeFactory())
    sup.register_many([_spec("web", "db"), _spec("db")])

    assert _state(sup, "web") == InstanceState.PENDING
    assert sup.order() == ["db", "web"]
    assert [d["name"] for d in db.load_specs()] == ["web", "db"]


def test_register_rejects_bad_batches_atomically():
    sup = _supervisor(FakeFactory())
    sup.register(_spec("db"))

    with pytest.raises(DuplicateName):
        sup.register(_spec("db"))
    with pytest.raises(CyclicDependency):
        sup.register_many([_spec("a", "b"), _spec("b", "a")])
    with pytest.raises(InvalidSpec):
        sup.register(_spec("Bad Name"))

    assert sup.order() == ["db"]


def test_unknown_service():
    sup = _supervisor(FakeFactory())
    with pytest.raises(UnknownService):
        sup.status("ghost")
    with pytest.raises(UnknownService):
        sup.stop("ghost")
    with pytest.raises(LookupError):
        sup.spec("ghost")


def test_dependent_starts_only_after_dependency_is_healthy(cleanup):
    # db needs three probes before it reports healthy
    factory = FakeFactory(db={"healthy_after": 3})
    sup = _supervisor(factory)
    cleanup(sup)
    sup.register_many([_spec("db"), _spec("web", "db")])

    healthy_at = {}
    sup.registry.subscribe(
        lambda st: healthy_at.setdefault(st.name, st.updated_at) if st.state == InstanceState.HEALTHY else None
    )

    report = sup.start_all()

    assert report.order == ["db", "web"]
    assert report.started == ["db", "web"]
    assert factory.journal.names("start") == ["db", "web"]
    assert factory.journal.when("start", "web") >= healthy_at["db"]
    # within a handful of probe intervals
    assert wait_until(lambda: _state(sup, "web") == InstanceState.HEALTHY, timeout=5 * 0.02 + 2)


def test_stalled_dependency_fails_its_subtree_but_not_independent_branch(cleanup):
    factory = FakeFactory(db={"healthy_after": 10**9})
    sup = _supervisor(factory, dependency_wait_s=0.3)
    cleanup(sup)
    sup.register_many([_spec("db"), _spec("app", "db"), _spec("web", "app"), _spec("cache")])

    with pytest.raises(StartError) as exc:
        sup.start_all()

    err = exc.value
    assert set(err.failures) == {"app", "web"}
    assert isinstance(err.failures["app"], DependencyTimeout)
    assert err.failures["app"].stalled == "db"
    # the root cause is named, not the intermediate service
    assert err.failures["web"].stalled == "db"
    assert "cache" in err.started
    assert err.partial

    assert sup.status("web").blocked_by == "db"
    assert _state(sup, "db") == InstanceState.STARTING
    assert "web" not in factory.journal.names("start")
    assert wait_until(lambda: _state(sup, "cache") == InstanceState.HEALTHY)


def test_launch_failure_gives_up_on_dependents_early(cleanup):
    factory = FakeFactory(db={"fail_start": True})
    sup = _supervisor(factory, dependency_wait_s=30)
    cleanup(sup)
    sup.register_many([_spec("db"), _spec("web", "db")])

    start = time.monotonic()
    with pytest.raises(StartError) as exc:
        sup.start_all()

    assert time.monotonic() - start < 10
    assert isinstance(exc.value.failures["db"], LaunchError)
    assert "image not found" in str(exc.value.failures["db"])
    assert exc.value.failures["web"].stalled == "db"
    assert not exc.value.partial
    assert _state(sup, "db") == InstanceState.FAILED


def test_start_all_skips_running_services(cleanup):
    factory = FakeFactory()
    sup = _supervisor(factory)
    cleanup(sup)
    sup.register(_spec("db"))
    sup.start_all()
    assert wait_until(lambda: _state(sup, "db") == InstanceState.HEALTHY)

    report = sup.start_all()

    assert report.started == []
    assert factory.journal.names("start") == ["db"]


def test_probe_transitions_healthy_unhealthy_healthy(cleanup):
    factory = FakeFactory()
    # long interval: probes below are applied by hand
    sup = _supervisor(factory, probe_interval_s=60, fail_threshold=3, max_failures=10)
    cleanup(sup)
    sup.register(_spec("db"))
    sup.start_all()
    assert wait_until(lambda: _state(sup, "db") == InstanceState.HEALTHY)
    inst = sup._instances["db"]

    sup._apply_probe(inst, ProbeResult(False, "refused"))
    sup._apply_probe(inst, ProbeResult(False, "refused"))
    assert _state(sup, "db") == InstanceState.HEALTHY
    assert sup.status("db").consecutive_failures == 2

    sup._apply_probe(inst, ProbeResult(False, "refused"))
    st = sup.status("db")
    assert st.state == InstanceState.UNHEALTHY
    assert st.health == Health.UNHEALTHY
    assert st.detail == "refused"

    sup._apply_probe(inst, ProbeResult(True, "ok"))
    st = sup.status("db")
    assert st.state == InstanceState.HEALTHY
    assert st.consecutive_failures == 0

    messages = [e["message"] for e in db.latest_events(service_name="db")]
    assert any("healthy -> unhealthy" in m for m in messages)
    assert any("unhealthy -> healthy" in m for m in messages)


def test_unhealthy_dependency_leaves_dependents_running(cleanup):
    factory = FakeFactory()
    sup = _supervisor(factory, probe_interval_s=60, fail_threshold=1)
    cleanup(sup)
    sup.register_many([_spec("db"), _spec("web", "db")])
    sup.start_all()
    assert wait_until(lambda: _state(sup, "web") == InstanceState.HEALTHY)

    sup._apply_probe(sup._instances["db"], ProbeResult(False, "down"))

    assert _state(sup, "db") == InstanceState.UNHEALTHY
    assert _state(sup, "web") == InstanceState.HEALTHY
    assert factory.journal.names("stop") == []
    warnings = [e["message"] for e in db.latest_events(service_name="db") if e["level"] == "WARN"]
    assert any("Dependents left running: web" in m for m in warnings)


def test_persistent_probe_failures_mark_failed(cleanup):
    factory = FakeFactory()
    sup = _supervisor(factory, fail_threshold=2, max_failures=4)
    cleanup(sup)
    sup.register(_spec("db"))
    sup.start_all()
    assert wait_until(lambda: _state(sup, "db") == InstanceState.HEALTHY)

    factory.backends["db"].healthy = False

    assert wait_until(lambda: _state(sup, "db") == InstanceState.FAILED)
    assert sup.status("db").consecutive_failures == 4
    # left in place for inspection
    assert factory.journal.names("stop") == []


def test_stop_publishes_stopping_then_stopped(cleanup):
    factory = FakeFactory()
    sup = _supervisor(factory)
    cleanup(sup)
    sup.register(_spec("db"))
    sup.start_all()
    assert wait_until(lambda: _state(sup, "db") == InstanceState.HEALTHY)

    seen = []
    sup.registry.subscribe(lambda st: seen.append(st.state))
    sup.stop("db")

    assert seen[0] == InstanceState.STOPPING
    assert seen[-1] == InstanceState.STOPPED
    assert sup.status("db").address is None
    assert db.get_instance("db").state == "stopped"

    # stopping twice is a no-op
    sup.stop("db")
    assert factory.journal.names("stop") == ["db"]


def test_stop_all_reverse_order_and_continues_past_failures():
    factory = FakeFactory(app={"fail_stop": True})
    sup = _supervisor(factory)
    sup.register_many([_spec("db"), _spec("app", "db"), _spec("web", "app")])
    sup.start_all()
    assert wait_until(lambda: _state(sup, "web") == InstanceState.HEALTHY)

    with pytest.raises(StopError) as exc:
        sup.stop_all()

    assert set(exc.value.failures) == {"app"}
    assert factory.journal.names("stop") == ["web", "app", "db"]
    assert _state(sup, "app") == InstanceState.FAILED
    assert "resources may still be held" in sup.status("app").detail
    assert _state(sup, "db") == InstanceState.STOPPED


def test_stop_all_adopt_stops_services_started_elsewhere():
    factory = FakeFactory()
    sup = _supervisor(factory)
    sup.register_many([_spec("db"), _spec("web", "db")])

    stopped = sup.stop_all(adopt=True)

    assert stopped == ["web", "db"]
    assert factory.journal.names("stop") == ["web", "db"]
    assert _state(sup, "db") == InstanceState.STOPPED


def test_restart(cleanup):
    factory = FakeFactory()
    sup = _supervisor(factory)
    cleanup(sup)
    sup.register(_spec("db"))
    sup.start_all()
    assert wait_until(lambda: _state(sup, "db") == InstanceState.HEALTHY)

    assert sup.restart("db") is None

    assert factory.journal.names("start") == ["db", "db"]
    assert db.get_instance("db").restart_count == 1
    assert wait_until(lambda: _state(sup, "db") == InstanceState.HEALTHY)


def _start_all_in_background(sup):
    outcome = {}

    def run():
        try:
            outcome["report"] = sup.start_all()
        except StartError as e:
            outcome["error"] = e

    t = threading.Thread(target=run, daemon=True)
    t.start()
    return t, outcome


def _probe_threads(name):
    return [t for t in threading.enumerate() if t.name == f"probe-{name}" and t.is_alive()]


def test_restart_while_waiting_on_dependencies_launches_once(cleanup):
    factory = FakeFactory(db={"healthy_after": 25})
    sup = _supervisor(factory)
    cleanup(sup)
    sup.register_many([_spec("db"), _spec("web", "db")])

    t, outcome = _start_all_in_background(sup)
    assert wait_until(lambda: _state(sup, "db") == InstanceState.STARTING)
    assert _state(sup, "web") == InstanceState.PENDING

    assert sup.restart("web") is None
    t.join(timeout=5)

    # the restart took over; the original start stood down
    assert outcome["report"].started == ["db"]
    assert factory.journal.names("start").count("web") == 1
    assert len(_probe_threads("web")) == 1
    assert wait_until(lambda: _state(sup, "web") == InstanceState.HEALTHY)


def test_stop_cancels_a_start_waiting_on_dependencies(cleanup):
    factory = FakeFactory(db={"healthy_after": 10**9})
    sup = _supervisor(factory, dependency_wait_s=30)
    cleanup(sup)
    sup.register_many([_spec("db"), _spec("web", "db")])

    t, outcome = _start_all_in_background(sup)
    assert wait_until(lambda: _state(sup, "db") == InstanceState.STARTING)

    start = time.monotonic()
    sup.stop("web")
    t.join(timeout=5)

    assert time.monotonic() - start < 5
    assert "error" not in outcome
    assert outcome["report"].started == ["db"]
    assert any("cancelled" in e["message"] for e in db.latest_events(service_name="web"))
    assert _state(sup, "web") == InstanceState.STOPPED
    assert "web" not in factory.journal.names("start")
