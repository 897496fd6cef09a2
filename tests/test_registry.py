import threading
import time

from meshgate.models import InstanceState, ServiceStatus
from meshgate.registry import ServiceRegistry


def test_publish_replaces_snapshot_and_old_snapshot_is_unchanged():
    reg = ServiceRegistry()
    reg.publish(ServiceStatus("db"))
    before = reg.snapshot()

    reg.publish(ServiceStatus("db", state=InstanceState.HEALTHY, address="10.0.0.2"))

    assert before["db"].state == InstanceState.PENDING
    assert reg.get("db").state == InstanceState.HEALTHY
    assert reg.get("db").updated_at > 0
    assert reg.get("nope") is None


def test_subscribers_get_every_change_until_unsubscribed():
    reg = ServiceRegistry()
    seen = []
    unsubscribe = reg.subscribe(lambda st: seen.append((st.name, st.state)))

    reg.publish(ServiceStatus("a", state=InstanceState.STARTING))
    unsubscribe()
    reg.publish(ServiceStatus("a", state=InstanceState.HEALTHY))

    assert seen == [("a", InstanceState.STARTING)]


def test_wait_for_wakes_on_publish():
    reg = ServiceRegistry()
    reg.publish(ServiceStatus("db"))

    def later():
        time.sleep(0.05)
        reg.publish(ServiceStatus("db", state=InstanceState.HEALTHY))

    threading.Thread(target=later).start()
    entry = reg.wait_for("db", lambda e: e is not None and e.state == InstanceState.HEALTHY, timeout=5)
    assert entry.state == InstanceState.HEALTHY


def test_wait_for_times_out_with_last_entry():
    reg = ServiceRegistry()
    reg.publish(ServiceStatus("db", state=InstanceState.STARTING))

    start = time.monotonic()
    entry = reg.wait_for("db", lambda e: e.state == InstanceState.HEALTHY, timeout=0.1)

    assert entry.state == InstanceState.STARTING
    assert time.monotonic() - start < 2


def test_remove():
    reg = ServiceRegistry()
    reg.publish(ServiceStatus("db"))
    reg.remove("db")
    reg.remove("db")
    assert "db" not in reg.snapshot()
