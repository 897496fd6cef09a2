import sys
import time
from datetime import datetime, timedelta, timezone
from threading import Event, Lock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

# Ensure project root is importable (so `import cli` works without installing)
import os as _os
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from meshgate import db  # noqa: E402
from meshgate.models import ProbeResult  # noqa: E402


@pytest.fixture(autouse=True)
def state_db(tmp_path):
    """Every test gets its own sqlite state file."""
    db.use_path(tmp_path / "meshgate.db")
    db.init_db()
    yield
    db.use_path(None)


def wait_until(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeBackend:
    """In-memory ServiceBackend; tests flip `healthy` to simulate probe failures."""

    def __init__(self, spec, journal, healthy_after=1, fail_start=False, fail_stop=False):
        self.spec = spec
        self.journal = journal
        self.healthy_after = healthy_after
        self.fail_start = fail_start
        self.fail_stop = fail_stop
        self.healthy = True
        self.running = False
        self.probes = 0
        self.stopped = Event()

    def start(self):
        self.journal.record("start", self.spec.name)
        if self.fail_start:
            raise RuntimeError("image not found")
        self.running = True

    def stop(self):
        self.journal.record("stop", self.spec.name)
        if self.fail_stop:
            raise RuntimeError("container is wedged")
        self.running = False
        self.stopped.set()

    def health_check(self):
        self.probes += 1
        if not self.running:
            return ProbeResult(False, "not running")
        if self.probes < self.healthy_after or not self.healthy:
            return ProbeResult(False, "not ready")
        return ProbeResult(True, "ok")

    def address(self):
        return f"10.9.0.{len(self.spec.name)}" if self.running else None


class Journal:
    def __init__(self):
        self._lock = Lock()
        self.entries = []

    def record(self, action, name):
        with self._lock:
            self.entries.append((action, name, time.time()))

    def names(self, action):
        return [n for a, n, _ in self.entries if a == action]

    def when(self, action, name):
        for a, n, t in self.entries:
            if a == action and n == name:
                return t
        return None


class FakeFactory:
    """Backend factory handing out FakeBackends with per-service options."""

    def __init__(self, **options):
        self.journal = Journal()
        self.options = options
        self.backends = {}

    def __call__(self, spec):
        backend = FakeBackend(spec, self.journal, **self.options.get(spec.name, {}))
        self.backends[spec.name] = backend
        return backend


class FakeFabricDriver:
    def __init__(self):
        self.networks = []
        self.volumes = []
        self.removed = []

    def ensure_network(self, name):
        self.networks.append(name)
        return True

    def ensure_volume(self, name):
        self.volumes.append(name)
        return True

    def remove_volume(self, name):
        self.removed.append(name)


def make_certificate(directory, name, hostnames, expired=False):
    """Self-signed cert/key pair for `hostnames`; returns (cert_path, key_path)."""
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostnames[0])])
    now = datetime.now(timezone.utc)
    not_after = now - timedelta(days=1) if expired else now + timedelta(days=30)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=60))
        .not_valid_after(not_after)
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(h) for h in hostnames]), critical=False)
        .sign(key, hashes.SHA256())
    )
    cert_path = directory / f"{name}.crt"
    key_path = directory / f"{name}.key"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    return str(cert_path), str(key_path)
