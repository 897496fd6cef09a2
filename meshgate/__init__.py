"""meshgate.

Single-node service orchestrator with a hostname-routed reverse proxy:
 - one bridge network and lazily created named volumes (the fabric)
 - dependency-ordered start/stop with per-service health probing
 - a TLS-terminating gateway that routes by virtual hostname / SNI
 - a read-only status endpoint and an operator CLI
"""

__version__ = "0.1.0"
