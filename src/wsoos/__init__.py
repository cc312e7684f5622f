"""
=============================================================================
WSOOS - SSH over HTTP WebSocket / TLS tunnel proxy
=============================================================================

Accepts client connections, answers with a fixed WebSocket-upgrade (or
custom HTTP) response so middleboxes treat the flow as web traffic, then
splices the client to a fixed backend (usually sshd) and relays bytes in
both directions.

=============================================================================
PACKAGE STRUCTURE
=============================================================================

    wsoos/
    ├── __init__.py          # This file - package exports
    ├── __main__.py          # CLI entry point (python -m wsoos)
    ├── server.py            # ProxyServer: listeners + shutdown
    ├── config.py            # ProxyConfig dataclass, YAML/env loading
    ├── metrics.py           # Prometheus collector + /metrics server
    ├── logging_setup.py     # text / JSON log output
    ├── banner.py            # Startup banner
    ├── core/
    │   ├── socket_server.py # Accept loops (plaintext, TLS)
    │   └── connection.py    # Socket wrapper per session side
    └── tunnel/
        ├── handshake.py     # Handshake response + payload discard
        ├── relay.py         # Bidirectional copy, first completion wins
        ├── handler.py       # Per-connection orchestration
        ├── tls.py           # Server SSLContext
        └── errors.py        # Error taxonomy

=============================================================================
QUICK START
=============================================================================

    from wsoos import ProxyServer, ProxyConfig

    server = ProxyServer(ProxyConfig(address=":8080", dst_address="127.0.0.1:22"))
    server.run()

=============================================================================
"""

__version__ = "1.0.0"

from .config import ProxyConfig, TLSMode, ConfigError, load_config
from .metrics import Metrics
from .server import ProxyServer

__all__ = [
    "ProxyServer",
    "ProxyConfig",
    "TLSMode",
    "ConfigError",
    "load_config",
    "Metrics",
    "__version__",
]
