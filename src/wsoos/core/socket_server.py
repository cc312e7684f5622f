"""
=============================================================================
TCP LISTENERS
=============================================================================

This module implements the accept loops of the proxy. There are two
flavours that differ only in how they notice shutdown:

    SocketServer (plaintext)
        accept() runs with a 1 second timeout. Every timeout re-checks the
        shared cancellation event, so shutdown latency is at most one poll
        interval.

    TLSSocketServer
        accept() blocks without a timeout. Shutdown closes the listening
        socket, which makes the pending accept() fail immediately with an
        OSError that the loop treats as "listener closed".

Both hand every accepted socket to a callback as a Connection. The TLS
handshake itself is NOT done here: the handler performs it on the
connection's own thread.

=============================================================================
LISTENER STATE MACHINE
=============================================================================

    STARTING ──bind/listen──► LISTENING ──cancel──► SHUTTING_DOWN ──► STOPPED
        │                                                               ▲
        └──────────────────────── bind error ───────────────────────────┘

=============================================================================
SOCKET OPTIONS
=============================================================================

SO_REUSEADDR on the listener avoids "Address already in use" on restart.

Accepted plaintext sockets get:
    SO_KEEPALIVE (+ 30s idle where TCP_KEEPIDLE exists)   if keep_alive
    TCP_NODELAY                                           if no_delay

=============================================================================
"""

import socket
import logging
import threading
from enum import Enum
from typing import Optional, Callable, Tuple

from ..config import parse_address
from .connection import Connection


logger = logging.getLogger(__name__)

KEEP_ALIVE_PERIOD = 30


class ListenerState(Enum):
    STARTING = "starting"
    LISTENING = "listening"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class SocketServer:
    """
    Plaintext TCP listener with an interruptible (polling) accept loop.

    Usage:
        cancel = threading.Event()
        server = SocketServer(":2086", cancel, handle_connection)
        server.bind()
        server.serve_forever()   # Blocks until cancel is set
    """

    name = "HTTP"
    is_tls = False

    # accept() timeout used to re-check the cancellation event.
    poll_interval: Optional[float] = 1.0

    def __init__(
        self,
        address: str,
        cancel_event: threading.Event,
        connection_handler: Callable[[Connection], None],
        keep_alive: bool = True,
        no_delay: bool = True,
        backlog: int = 128,
    ):
        self.address_spec = address
        self.cancel_event = cancel_event
        self.connection_handler = connection_handler
        self.keep_alive = keep_alive
        self.no_delay = no_delay
        self.backlog = backlog

        self.state = ListenerState.STARTING
        self._socket: Optional[socket.socket] = None
        self._lock = threading.Lock()

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """The bound (ip, port), available after bind()."""
        sock = self._socket
        if sock is None:
            return None
        try:
            return sock.getsockname()[:2]
        except OSError:
            return None

    def _create_socket(self, host: str) -> socket.socket:
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.settimeout(self.poll_interval)
        return sock

    def bind(self) -> None:
        """
        Resolve, bind and listen.

        Raises:
            ValueError: Malformed address.
            OSError: Address in use, permission denied, ...
        """
        host, port = parse_address(self.address_spec)
        sock = self._create_socket(host)
        try:
            sock.bind((host, port))
            sock.listen(self.backlog)
        except OSError:
            sock.close()
            self.state = ListenerState.STOPPED
            raise

        self._socket = sock
        self.state = ListenerState.LISTENING

    def serve_forever(self) -> None:
        """Run the accept loop until the cancellation event is set."""
        if self._socket is None:
            self.bind()

        try:
            self._accept_loop()
        finally:
            self.close()
            self.state = ListenerState.STOPPED
            logger.info(f"{self.name} server stopped")

    def _accept_loop(self) -> None:
        while not self.cancel_event.is_set():
            sock = self._socket
            if sock is None:
                break

            try:
                client_socket, client_address = sock.accept()
            except socket.timeout:
                # Normal: lets us re-check the cancellation event.
                continue
            except OSError as e:
                if self.cancel_event.is_set() or self._socket is None:
                    logger.debug(f"{self.name} listener closed")
                    break
                logger.error(f"Failed to accept {self.name} connection: {e}")
                continue

            logger.debug(f"Accepted {self.name} connection from {client_address[0]}:{client_address[1]}")

            try:
                self._configure(client_socket)
            except OSError as e:
                logger.error(f"Failed to configure connection: {e}")
                client_socket.close()
                continue

            conn = Connection(
                socket=client_socket,
                address=client_address,
                is_tls=self.is_tls,
            )
            self.connection_handler(conn)

    def _configure(self, client_socket: socket.socket) -> None:
        """Apply keep-alive and TCP_NODELAY to an accepted socket."""
        client_socket.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1 if self.keep_alive else 0)

        if self.keep_alive and hasattr(socket, "TCP_KEEPIDLE"):
            try:
                client_socket.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, KEEP_ALIVE_PERIOD)
            except OSError as e:
                logger.debug(f"Failed to set keep-alive period: {e}")

        client_socket.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1 if self.no_delay else 0)

    def close(self) -> None:
        """
        Close the listening socket. Safe to call from any thread, repeatedly.

        shutdown() first: on Linux that wakes a thread blocked in accept().
        """
        with self._lock:
            sock, self._socket = self._socket, None
            if sock is None:
                return
            if self.state == ListenerState.LISTENING:
                self.state = ListenerState.SHUTTING_DOWN

        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # Not supported on listening sockets everywhere

        try:
            sock.close()
        except OSError:
            pass


class TLSSocketServer(SocketServer):
    """
    TLS listener: blocking accept, woken by close() on shutdown.

    Accepted sockets are still raw TCP; the handler wraps them with the
    server SSLContext on the connection thread.
    """

    name = "TLS"
    is_tls = True
    poll_interval = None

    def _configure(self, client_socket: socket.socket) -> None:
        # TLS clients keep OS defaults.
        pass
