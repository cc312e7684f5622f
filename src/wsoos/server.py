"""
=============================================================================
PROXY SERVER
=============================================================================

Owns every listener of the process and coordinates their shutdown.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                          ProxyServer                                │
    │                                                                     │
    │   cancel: threading.Event  (shared by every accept loop)            │
    │                                                                     │
    │   ┌──────────────┐   ┌──────────────────┐   ┌─────────────────┐    │
    │   │ SocketServer │   │ TLSSocketServer  │   │ MetricsServer   │    │
    │   │  (:2086)     │   │  (:443, opt.)    │   │ (:9090, opt.)   │    │
    │   └──────┬───────┘   └────────┬─────────┘   └─────────────────┘    │
    │          │                    │                                     │
    │          └────────┬───────────┘                                     │
    │                   ▼                                                 │
    │          ConnectionHandler.dispatch  → one thread per client        │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
FAILURE AND SHUTDOWN POLICY
=============================================================================

- A fatal error on the plaintext OR the TLS listener (bind, TLS context,
  crashed accept loop) stops the whole server. Partial availability is not
  attempted.
- The metrics listener is independent: its failure is only logged.
- stop() sets the cancellation event, closes the listeners and joins the
  plaintext and TLS accept threads. It does NOT wait for connection
  threads: relays that are still running keep going until their sockets
  hit EOF or an error.

=============================================================================
"""

import logging
import signal
import threading
from typing import Dict, List, Optional, Tuple

from .config import ProxyConfig
from .core import SocketServer, TLSSocketServer, ListenerState
from .logging_setup import setup_logging
from .metrics import Metrics, MetricsServer
from .tunnel import ConnectionHandler, ListenError, create_tls_context


logger = logging.getLogger(__name__)


class ProxyServer:
    """
    Tunnel proxy with plaintext, TLS and metrics listeners.

    Usage:
        server = ProxyServer(load_config())
        server.run()            # Blocks until SIGINT/SIGTERM

    Or, non-blocking (tests, embedding):
        server.start()
        ...
        server.stop()
    """

    def __init__(self, config: ProxyConfig, metrics: Optional[Metrics] = None):
        config.validate()
        self.config = config
        self.metrics = metrics or Metrics(enabled=config.metrics_enabled)

        self._cancel = threading.Event()
        self.handler = ConnectionHandler(config, self.metrics)

        self._http_server: Optional[SocketServer] = None
        self._tls_server: Optional[TLSSocketServer] = None
        self._metrics_server: Optional[MetricsServer] = None
        self._threads: List[threading.Thread] = []

        self._stop_lock = threading.Lock()
        self._stopped = False
        self._original_handlers: dict = {}

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """Bound plaintext (ip, port)."""
        return self._http_server.address if self._http_server else None

    @property
    def tls_address(self) -> Optional[Tuple[str, int]]:
        return self._tls_server.address if self._tls_server else None

    @property
    def metrics_address(self) -> Optional[Tuple[str, int]]:
        return self._metrics_server.address if self._metrics_server else None

    @property
    def listener_states(self) -> Dict[str, ListenerState]:
        states = {}
        if self._http_server:
            states["http"] = self._http_server.state
        if self._tls_server:
            states["tls"] = self._tls_server.state
        return states

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        """
        Bind every listener and start the accept threads. Non-blocking.

        Raises:
            ListenError: A primary listener could not be set up. The server
                         has already been stopped when this is raised.
        """
        try:
            self._start_http()
            if self.config.tls_enabled:
                self._start_tls()
        except ListenError as e:
            logger.error(f"Server error: {e}")
            self.stop()
            raise

        if self.config.metrics_enabled:
            self._start_metrics()

    def _start_http(self) -> None:
        server = SocketServer(
            self.config.address,
            self._cancel,
            self.handler.dispatch,
            keep_alive=self.config.keep_alive,
            no_delay=self.config.no_delay,
        )
        try:
            server.bind()
        except (OSError, ValueError) as e:
            raise ListenError("HTTP", e) from e

        self._http_server = server
        logger.info(f"HTTP Server listening on {self.config.address}, redirect {self.config.dst_address}")
        self._spawn(server, "wsoos-http")

    def _start_tls(self) -> None:
        try:
            self.handler.tls_context = create_tls_context(
                self.config.tls_private_key,
                self.config.tls_public_key,
            )
        except OSError as e:
            raise ListenError("TLS", e) from e

        server = TLSSocketServer(self.config.tls_address, self._cancel, self.handler.dispatch)
        try:
            server.bind()
        except (OSError, ValueError) as e:
            raise ListenError("TLS", e) from e

        self._tls_server = server
        logger.info(f"TLS Server listening on {self.config.tls_address}, redirect {self.config.dst_address}")
        self._spawn(server, "wsoos-tls")

    def _start_metrics(self) -> None:
        server = MetricsServer(self.metrics, self.config.metrics_port)
        try:
            server.start()
        except (OSError, ValueError) as e:
            logger.error(f"Metrics server failed: {e}")
            return
        self._metrics_server = server

    def _spawn(self, server: SocketServer, name: str) -> None:
        thread = threading.Thread(target=self._serve, args=(server,), name=name, daemon=True)
        self._threads.append(thread)
        thread.start()

    def _serve(self, server: SocketServer) -> None:
        try:
            server.serve_forever()
        except Exception as e:
            error = ListenError(server.name, e)
            logger.error(f"Server error: {error}")
            self.stop()

    def stop(self) -> None:
        """
        Signal cancellation and wait for the accept loops. Idempotent.

        In-flight connections are not waited for.
        """
        with self._stop_lock:
            if self._stopped:
                return
            self._stopped = True

        logger.info("Shutting down servers...")
        self._cancel.set()

        for server in (self._http_server, self._tls_server):
            if server is not None:
                logger.info(f"Shutting down {server.name} server...")
                server.close()

        if self._metrics_server is not None:
            self._metrics_server.stop()

        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join()

        logger.info("All servers stopped")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the accept threads to exit.

        Returns:
            True if every accept thread has exited.
        """
        for thread in self._threads:
            thread.join(timeout)
        return not any(t.is_alive() for t in self._threads)

    def run(self) -> None:
        """Configure logging, start, and block until a shutdown signal."""
        setup_logging(self.config.log_level_value(), self.config.log_format)

        in_main_thread = threading.current_thread() is threading.main_thread()
        if in_main_thread:
            self._setup_signals()

        try:
            self.start()
            while not self.wait(timeout=0.5):
                pass
        except KeyboardInterrupt:
            logger.info("Received keyboard interrupt")
        finally:
            self.stop()
            if in_main_thread:
                self._restore_signals()

        logger.info("Server shutdown complete")

    # =========================================================================
    # SIGNALS
    # =========================================================================

    def _setup_signals(self):
        def shutdown_handler(signum, frame):
            logger.info(f"Received shutdown signal {signal.Signals(signum).name}")
            self.stop()

        for name in ("SIGINT", "SIGTERM", "SIGQUIT"):
            sig = getattr(signal, name, None)
            if sig is not None:
                self._original_handlers[sig] = signal.signal(sig, shutdown_handler)

    def _restore_signals(self):
        for sig, handler in self._original_handlers.items():
            signal.signal(sig, handler)
        self._original_handlers.clear()
