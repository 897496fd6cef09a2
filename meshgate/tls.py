from __future__ import annotations

import ssl
import time
import weakref
from dataclasses import dataclass
from typing import Any

from cryptography import x509

from .models import TLSCredential


# SSLObject -> SNI name sent by the client, filled in during the handshake.
_server_names: "weakref.WeakKeyDictionary[Any, str]" = weakref.WeakKeyDictionary()


def remember_server_name(ssl_object: Any, server_name: str | None) -> None:
    if server_name:
        try:
            _server_names[ssl_object] = server_name
        except TypeError:
            pass


def server_name_of(ssl_object: Any) -> str | None:
    if ssl_object is None:
        return None
    try:
        return _server_names.get(ssl_object)
    except TypeError:
        return None


def _not_after(cert_file: str) -> float:
    with open(cert_file, "rb") as f:
        cert = x509.load_pem_x509_certificate(f.read())
    return cert.not_valid_after_utc.timestamp()


@dataclass(frozen=True)
class LoadedCredential:
    """A TLS credential with its server context, or the reason it is unusable."""

    credential: TLSCredential
    context: ssl.SSLContext | None
    error: str | None = None
    not_after: float | None = None

    @property
    def name(self) -> str:
        return self.credential.name

    def problem(self, now: float | None = None) -> str | None:
        if self.error:
            return self.error
        if self.not_after is not None and (now or time.time()) > self.not_after:
            return f"certificate '{self.credential.cert_file}' expired"
        return None


def server_context() -> ssl.SSLContext:
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.set_alpn_protocols(["http/1.1"])
    return ctx


def load_credential(cred: TLSCredential) -> LoadedCredential:
    """Load a cert/key pair. Failures are kept, not raised: they only break
    handshakes that select this credential."""
    ctx = server_context()
    try:
        ctx.load_cert_chain(cred.cert_file, cred.key_file)
    except (OSError, ssl.SSLError) as e:
        return LoadedCredential(cred, None, error=f"cannot load '{cred.name}': {e}")
    try:
        not_after = _not_after(cred.cert_file)
    except ValueError as e:
        # loaded, but the expiry cannot be checked
        return LoadedCredential(cred, None, error=f"cannot read expiry of '{cred.name}': {e}")
    return LoadedCredential(cred, ctx, not_after=not_after)
