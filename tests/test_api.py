import base64

import httpx
from fastapi.testclient import TestClient

from conftest import FakeFactory, wait_until
from meshgate import db
from meshgate.api import create_app
from meshgate.gateway import Gateway
from meshgate.models import InstanceState, RouteRule, ServiceSpec
from meshgate.supervisor import Supervisor


def _basic_auth(user: str, password: str) -> dict:
    token = base64.b64encode(f"{user}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


ADMIN = _basic_auth("admin", "s3cret")


def _stack(user="admin", password="s3cret"):
    factory = FakeFactory()
    sup = Supervisor(None, factory, probe_interval_s=0.02, dependency_wait_s=5)
    gw = Gateway(sup.registry, transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    sup.register_many([
        ServiceSpec(name="db", image="postgres:13", environment={"POSTGRES_PASSWORD": "hunter2"}),
        ServiceSpec(name="jenkins", image="jenkins:latest", depends_on=("db",)),
    ])
    gw.load_routes([RouteRule("jenkins.local", 80, "jenkins", 8080)])
    return sup, gw, create_app(sup, gw, admin_user=user, admin_password=password)


def test_health():
    _, _, app = _stack()
    with TestClient(app) as client:
        assert client.get("/health").json() == {"status": "healthy"}


def test_status_lists_services_in_order_and_hides_environment():
    _, _, app = _stack()
    with TestClient(app) as client:
        r = client.get("/status")

    assert r.status_code == 200
    body = r.json()
    assert [s["name"] for s in body["services"]] == ["db", "jenkins"]
    assert body["services"][0]["state"] == "pending"
    assert body["routes"] == [
        {
            "hostname": "jenkins.local",
            "port": 80,
            "scheme": "http",
            "backend": "jenkins:8080",
            "state": "down",
            "detail": "pending",
        }
    ]
    assert "hunter2" not in r.text


def test_service_detail_and_404():
    _, _, app = _stack()
    with TestClient(app) as client:
        assert client.get("/services/db").json()["health"] == "unknown"
        assert client.get("/services/ghost").status_code == 404


def test_events_filtered_by_service():
    _, _, app = _stack()
    db.log_event("WARN", "probe flapping", service_name="db")
    with TestClient(app) as client:
        events = client.get("/events", params={"service": "db", "limit": 1}).json()
    assert len(events) == 1
    assert events[0]["message"] == "probe flapping"


def test_reload_requires_credentials(tmp_path):
    routes = tmp_path / "routes.yml"
    routes.write_text("servers:\n  - server_name: jenkins.local\n    backend: jenkins:8081\n")
    _, gw, app = _stack()

    with TestClient(app) as client:
        assert client.post("/routes/reload", json={"path": str(routes)}).status_code == 401
        r = client.post("/routes/reload", json={"path": str(routes)}, headers=_basic_auth("admin", "nope"))
        assert r.status_code == 401

        r = client.post("/routes/reload", json={"path": str(routes)}, headers=ADMIN)
        assert r.status_code == 200
        assert r.json() == {"routes": 1, "listeners": [80]}

    assert gw.table.lookup("jenkins.local", 80).backend_port == 8081


def test_reload_rejected_keeps_routes(tmp_path):
    _, gw, app = _stack()
    with TestClient(app) as client:
        r = client.post("/routes/reload", json={"path": str(tmp_path / "missing.yml")}, headers=ADMIN)
    assert r.status_code == 422
    assert gw.table.lookup("jenkins.local", 80).backend_port == 8080


def test_reload_of_malformed_documents_is_422_and_keeps_routes(tmp_path):
    bad_docs = {
        "slow.yml": "servers:\n  - server_name: jenkins.local\n    backend: jenkins:1\n    timeouts: {read: slow}\n",
        "string.yml": "servers:\n  - just-a-string\n",
        "broken.yml": "servers: [\n  - server_name: jenkins.local\n",
    }
    _, gw, app = _stack()
    with TestClient(app) as client:
        for name, text in bad_docs.items():
            path = tmp_path / name
            path.write_text(text)
            r = client.post("/routes/reload", json={"path": str(path)}, headers=ADMIN)
            assert r.status_code == 422, name

    assert gw.table.lookup("jenkins.local", 80).backend_port == 8080
    rejected = [e for e in db.latest_events() if "rejected, previous routes kept" in e["message"]]
    assert len(rejected) == 3


def test_operator_actions_disabled_without_configured_admin():
    _, _, app = _stack(user="", password="")
    with TestClient(app) as client:
        r = client.post("/routes/reload", json={}, headers=ADMIN)
    assert r.status_code == 403


def test_restart_service():
    sup, _, app = _stack()
    sup.start_all()
    assert wait_until(lambda: sup.status("jenkins").state == InstanceState.HEALTHY)

    try:
        with TestClient(app) as client:
            r = client.post("/services/db/restart", headers=ADMIN)
            assert r.status_code == 200
            assert r.json()["name"] == "db"
            assert r.json()["state"] in {"starting", "healthy"}
            assert client.post("/services/ghost/restart", headers=ADMIN).status_code == 404
    finally:
        sup.stop_all()

    assert db.get_instance("db").restart_count == 1
