"""
=============================================================================
CONNECTION HANDLER
=============================================================================

Runs the per-connection sequence on its own thread:

    ┌─────────────────────────────────────────────────────────────────────┐
    │  (TLS listener only) server TLS handshake                           │
    │        │                                                            │
    │        ▼                                                            │
    │  perform_handshake ── always, also for TLS + stunnel                │
    │        │                                                            │
    │        ▼                                                            │
    │  dial backend (timeout = config.timeout)                            │
    │        │                                                            │
    │        ├── TLS origin and tls_mode == stunnel ──► relay             │
    │        │                                                            │
    │        └── otherwise: discard_payload ──► relay                     │
    │                                                                     │
    │  finally: close backend, close client, record_connection_closed     │
    └─────────────────────────────────────────────────────────────────────┘

The handshake response is also written on the TLS + stunnel path, before
the relay starts, even though stunnel-style clients do not expect it.
Existing clients are built around this byte sequence, so it is kept.

=============================================================================
METRICS PER CONNECTION
=============================================================================

    handshake failure   record_error("handshake")   + connection(type, "failed")
    dial failure        record_error("destination") + connection(type, "failed")
    dial success        connection(type, "success")
    discard failure     record_error("payload")
    relay error         record_error("relay")
    relay done          connection_duration(type[-stunnel], seconds)
    unexpected error    record_error("proxy")       + connection(type, "failed")
                        (only if no outcome was recorded yet)
    always              connection_closed()

=============================================================================
"""

import logging
import socket
import ssl
import threading
import time
from typing import Optional

from ..config import ProxyConfig, parse_address
from ..core.connection import Connection, ConnectionState
from ..metrics import Metrics
from .errors import DialError, HandshakeError, PayloadDiscardError, ProxyError
from .handshake import HandshakeNegotiator
from .relay import Relay


logger = logging.getLogger(__name__)


class ConnectionHandler:
    """
    Orchestrates handshake, dial, discard and relay for accepted clients.

    Usage:
        handler = ConnectionHandler(config, metrics, tls_context)
        socket_server = SocketServer(config.address, cancel, handler.dispatch)
    """

    def __init__(
        self,
        config: ProxyConfig,
        metrics: Metrics,
        tls_context: Optional[ssl.SSLContext] = None,
        negotiator: Optional[HandshakeNegotiator] = None,
        relay: Optional[Relay] = None,
    ):
        self.config = config
        self.metrics = metrics
        self.tls_context = tls_context
        self.negotiator = negotiator or HandshakeNegotiator(config.handshake_code)
        self.relay = relay or Relay(metrics, buffer_size=config.buffer_size)

    def dispatch(self, conn: Connection) -> threading.Thread:
        """Handle conn on a new daemon thread. Threads are not tracked."""
        thread = threading.Thread(
            target=self.handle,
            args=(conn,),
            name=f"conn-{conn.id}",
            daemon=True,
        )
        thread.start()
        return thread

    def handle(self, conn: Connection) -> None:
        """
        Run the full sequence for one client. Blocks until the relay ends.

        The client is closed and record_connection_closed() is emitted on
        every exit path.
        """
        conn_type = "tls" if conn.is_tls else "http"
        started = time.time()

        try:
            with conn:
                self._process(conn, conn_type, started)
        except Exception as e:
            logger.exception(f"[{conn.id}] Unexpected connection error")
            if conn.outcome is None:
                self.metrics.record_error(ProxyError.metric_type, str(e))
                self._record_outcome(conn, conn_type, "failed")
        finally:
            self.metrics.record_connection_closed()

    def _process(self, conn: Connection, conn_type: str, started: float) -> None:
        if conn.is_tls:
            try:
                self._start_tls(conn)
            except HandshakeError as e:
                self._fail(conn, conn_type, e, "Handshake failed")
                return

        try:
            self.negotiator.perform_handshake(conn)
        except HandshakeError as e:
            self._fail(conn, conn_type, e, "Handshake failed")
            return

        try:
            backend = self._dial(conn)
        except DialError as e:
            self._fail(conn, conn_type, e, "Failed to connect to destination")
            return

        self._record_outcome(conn, conn_type, "success")

        with backend:
            if conn.is_tls and self.config.is_stunnel:
                self._relay(backend, conn)
                self.metrics.record_connection_duration(f"{conn_type}-stunnel", time.time() - started)
                return

            try:
                self.negotiator.discard_payload(conn)
            except PayloadDiscardError as e:
                logger.error(f"[{conn.id}] Failed to discard payload: {e}")
                self.metrics.record_error(e.metric_type, str(e))
                return

            self._relay(backend, conn)
            self.metrics.record_connection_duration(conn_type, time.time() - started)

    def _start_tls(self, conn: Connection) -> None:
        if self.tls_context is None:
            raise HandshakeError("TLS connection received without a TLS context")
        try:
            conn.wrap_tls(self.tls_context)
        except (ssl.SSLError, OSError) as e:
            raise HandshakeError(f"TLS handshake failed: {e}") from e

    def _dial(self, conn: Connection) -> Connection:
        """
        Connect to the configured backend.

        Raises:
            DialError: Resolution failure, refusal or timeout.
        """
        conn.state = ConnectionState.DIALING
        try:
            host, port = parse_address(self.config.dst_address)
            sock = socket.create_connection((host or "127.0.0.1", port), timeout=self.config.timeout)
        except (OSError, ValueError) as e:
            raise DialError(f"failed to dial {self.config.dst_address}: {e}") from e

        # Relay phase runs without timeouts.
        sock.settimeout(None)
        logger.debug(f"[{conn.id}] Connected to destination {self.config.dst_address}")
        return Connection(socket=sock, address=(host, port))

    def _relay(self, backend: Connection, conn: Connection) -> None:
        result = self.relay.start(backend, conn)
        if result.error is not None:
            logger.warning(f"[{conn.id}] Relay ended with error: {result.error}")
            self.metrics.record_error(result.error.metric_type, str(result.error))
        else:
            logger.debug(f"[{conn.id}] Relay finished ({result.direction})")

    def _fail(self, conn: Connection, conn_type: str, error: ProxyError, message: str) -> None:
        logger.error(f"[{conn.id}] {message}: {error}")
        self.metrics.record_error(error.metric_type, str(error))
        self._record_outcome(conn, conn_type, "failed")

    def _record_outcome(self, conn: Connection, conn_type: str, status: str) -> None:
        conn.outcome = status
        self.metrics.record_connection(conn_type, status)
