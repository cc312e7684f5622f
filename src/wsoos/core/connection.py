"""
=============================================================================
CONNECTION MANAGEMENT
=============================================================================

This module wraps the raw sockets of one tunnel session (the accepted
client and the dialed backend) with a small API used by the handshake,
discard and relay steps.

=============================================================================
TCP IS A BYTE STREAM
=============================================================================

The tunnel never interprets the bytes it relays, so no message framing is
needed here. What matters is:

1. A recv() returning b"" means the peer closed its sending side (EOF).
2. sendall() either writes every byte or raises.
3. Closing a socket does NOT wake another thread blocked in recv() on it.
   shutdown(SHUT_RDWR) does, so close() always shuts down first. The relay
   depends on this to release the copy thread that is still running when
   the first direction finishes.

=============================================================================
SESSION STATE MACHINE
=============================================================================

    NEW ──► HANDSHAKING ──► DIALING ──► DISCARDING ──► RELAYING ──┐
     │           │             │             │                     │
     │           │             │             │  (stunnel skips     │
     │           │             │             │   DISCARDING)       │
     │           ▼             ▼             ▼                     ▼
     └────────────────────────────────► CLOSING ──► CLOSED ◄──────┘

=============================================================================
"""

import socket
import ssl
import time
import logging
import threading
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional
import uuid


logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Lifecycle states of a tunnel session."""
    NEW = "new"                  # Just accepted
    HANDSHAKING = "handshaking"  # TLS handshake / handshake response
    DIALING = "dialing"          # Connecting to the backend
    DISCARDING = "discarding"    # Swallowing the client's HTTP payload
    RELAYING = "relaying"        # Bytes flow in both directions
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class Connection:
    """
    One side of a tunnel session.

    Attributes:
        socket: The underlying socket (ssl.SSLSocket after wrap_tls()).
        address: Peer (ip, port) tuple.
        is_tls: True when accepted on the TLS listener.
        id: Short identifier used in log lines.
        state: Current session state.
        created_at: Accept (or dial) timestamp.
        bytes_in: Bytes received from the peer.
        bytes_out: Bytes sent to the peer.
        outcome: "success" or "failed" once counted in connections_total.
    """

    socket: socket.socket
    address: tuple

    is_tls: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    state: ConnectionState = ConnectionState.NEW
    created_at: float = field(default_factory=time.time)
    bytes_in: int = 0
    bytes_out: int = 0
    outcome: Optional[str] = None

    timeout: Optional[float] = None
    """Socket timeout; None keeps the socket fully blocking."""

    _close_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self):
        self.socket.setblocking(True)
        if self.timeout:
            self.socket.settimeout(self.timeout)

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def client_ip(self) -> str:
        return self.address[0]

    @property
    def client_port(self) -> int:
        return self.address[1]

    @property
    def age(self) -> float:
        """Seconds since the connection was created."""
        return time.time() - self.created_at

    # =========================================================================
    # TLS
    # =========================================================================

    def wrap_tls(self, context: ssl.SSLContext) -> None:
        """
        Run the server-side TLS handshake and swap in the TLS socket.

        Runs on the connection's own thread so a slow client never stalls
        the accept loop.

        Raises:
            ssl.SSLError, OSError: If the handshake fails.
        """
        self.socket = context.wrap_socket(self.socket, server_side=True)

    # =========================================================================
    # I/O
    # =========================================================================

    def recv(self, size: int) -> bytes:
        """Receive up to size bytes; b"" means EOF."""
        data = self.socket.recv(size)
        self.bytes_in += len(data)
        return data

    def recv_into(self, buffer) -> int:
        count = self.socket.recv_into(buffer)
        self.bytes_in += count
        return count

    def sendall(self, data: bytes) -> None:
        """Send every byte or raise OSError."""
        self.socket.sendall(data)
        self.bytes_out += len(data)

    # =========================================================================
    # CLOSING
    # =========================================================================

    def close(self):
        """
        Shut down and close the socket. Idempotent and thread-safe.

        shutdown(SHUT_RDWR) wakes any thread blocked in recv() on this
        socket before the descriptor is released.
        """
        with self._close_lock:
            if self.state == ConnectionState.CLOSED:
                return
            self.state = ConnectionState.CLOSING

            try:
                self.socket.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass  # Peer already gone

            try:
                self.socket.close()
            except OSError:
                pass

            self.state = ConnectionState.CLOSED

        logger.debug(
            f"[{self.id}] Connection closed after {self.age:.2f}s "
            f"(in={self.bytes_in} out={self.bytes_out})"
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
