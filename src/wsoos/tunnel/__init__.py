"""
Tunnel engine: handshake response, payload discard, relay and the
per-connection orchestration that ties them together.
"""

from .errors import (
    ProxyError,
    HandshakeError,
    DialError,
    PayloadDiscardError,
    RelayError,
    ListenError,
)
from .handshake import HandshakeNegotiator, build_response, websocket_accept
from .relay import Relay, RelayResult
from .handler import ConnectionHandler
from .tls import create_tls_context

__all__ = [
    "ProxyError",
    "HandshakeError",
    "DialError",
    "PayloadDiscardError",
    "RelayError",
    "ListenError",
    "HandshakeNegotiator",
    "build_response",
    "websocket_accept",
    "Relay",
    "RelayResult",
    "ConnectionHandler",
    "create_tls_context",
]
