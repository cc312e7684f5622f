"""
=============================================================================
CORE NETWORKING COMPONENTS
=============================================================================

Low-level building blocks shared by every listener:

    socket_server.py   Accept loops (plaintext polling, TLS blocking)
    connection.py      Socket wrapper for one side of a tunnel session

Nothing in here knows about handshakes or backends; accepted sockets are
handed to a callback supplied by the server.

=============================================================================
"""

from .socket_server import SocketServer, TLSSocketServer, ListenerState
from .connection import Connection, ConnectionState

__all__ = [
    "SocketServer",       # Plaintext listener with 1s accept poll
    "TLSSocketServer",    # TLS listener, woken by close()
    "ListenerState",      # Listener lifecycle states
    "Connection",         # One side of a tunnel session
    "ConnectionState",    # Session lifecycle states
]
