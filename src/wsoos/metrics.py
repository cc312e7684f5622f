"""
=============================================================================
PROMETHEUS METRICS
=============================================================================

Counters, gauges and histograms describing tunnel traffic, plus the small
HTTP server that exposes them at /metrics.

    ┌─────────────────────────────────────────────────────────────────────┐
    │ wsoos_connections_total{type,status}     counter                    │
    │ wsoos_connections_active                 gauge                      │
    │ wsoos_bytes_transferred_total{direction} counter                    │
    │ wsoos_connection_duration_seconds{type}  histogram                  │
    │ wsoos_errors_total{type,error}           counter                    │
    └─────────────────────────────────────────────────────────────────────┘

A Metrics instance is created once at startup and passed to every
component that records something. Each instance owns its own
CollectorRegistry, so building a second collector in the same process
(tests, embedding) never hits a duplicate-registration error.

When metrics are disabled every record_* call is a no-op. Recording never
raises into the connection path.

=============================================================================
"""

import logging
import threading
from typing import Optional, Tuple
from wsgiref.simple_server import make_server, WSGIRequestHandler, WSGIServer

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    make_wsgi_app,
)

from .config import parse_address


logger = logging.getLogger(__name__)

# Label values for error messages are clipped to keep series names sane.
MAX_ERROR_LABEL = 200


class Metrics:
    """
    Metrics collector injected into the server, handler and relay.

    Usage:
        metrics = Metrics(enabled=True)
        metrics.record_connection("http", "success")
        ...
        metrics.record_connection_closed()
    """

    def __init__(self, enabled: bool = False, registry: Optional[CollectorRegistry] = None):
        self.enabled = enabled
        self.registry = registry if registry is not None else CollectorRegistry()

        self._register_lock = threading.Lock()
        self._registered = False

        self.connections_total: Optional[Counter] = None
        self.connections_active: Optional[Gauge] = None
        self.bytes_transferred: Optional[Counter] = None
        self.connection_duration: Optional[Histogram] = None
        self.errors_total: Optional[Counter] = None

        if enabled:
            self.register()
            logger.info("Metrics enabled")

    def register(self) -> None:
        """Create and register the metric families. Safe to call repeatedly."""
        with self._register_lock:
            if self._registered:
                return

            self.connections_total = Counter(
                "wsoos_connections_total",
                "Total number of connections",
                ["type", "status"],
                registry=self.registry,
            )
            self.connections_active = Gauge(
                "wsoos_connections_active",
                "Number of active connections",
                registry=self.registry,
            )
            self.bytes_transferred = Counter(
                "wsoos_bytes_transferred_total",
                "Total bytes transferred",
                ["direction"],
                registry=self.registry,
            )
            self.connection_duration = Histogram(
                "wsoos_connection_duration_seconds",
                "Connection duration in seconds",
                ["type"],
                registry=self.registry,
            )
            self.errors_total = Counter(
                "wsoos_errors_total",
                "Total number of errors",
                ["type", "error"],
                registry=self.registry,
            )
            self._registered = True

    # =========================================================================
    # RECORDING INTERFACE
    # =========================================================================

    def record_connection(self, conn_type: str, status: str) -> None:
        """Count a connection outcome and bump the active gauge."""
        if not self.enabled:
            return
        try:
            self.connections_total.labels(conn_type, status).inc()
            self.connections_active.inc()
        except Exception:
            logger.debug("Failed to record connection", exc_info=True)

    def record_connection_closed(self) -> None:
        if not self.enabled:
            return
        try:
            self.connections_active.dec()
        except Exception:
            logger.debug("Failed to record connection close", exc_info=True)

    def record_bytes_transferred(self, direction: str, count: int) -> None:
        if not self.enabled:
            return
        try:
            self.bytes_transferred.labels(direction).inc(count)
        except Exception:
            logger.debug("Failed to record bytes", exc_info=True)

    def record_connection_duration(self, conn_type: str, seconds: float) -> None:
        if not self.enabled:
            return
        try:
            self.connection_duration.labels(conn_type).observe(seconds)
        except Exception:
            logger.debug("Failed to record duration", exc_info=True)

    def record_error(self, error_type: str, message: str) -> None:
        if not self.enabled:
            return
        try:
            self.errors_total.labels(error_type, str(message)[:MAX_ERROR_LABEL]).inc()
        except Exception:
            logger.debug("Failed to record error", exc_info=True)

    # =========================================================================
    # INSPECTION (tests, debugging)
    # =========================================================================

    def sample(self, name: str, labels: Optional[dict] = None) -> Optional[float]:
        """Return the current value of one sample, or None if absent."""
        return self.registry.get_sample_value(name, labels or {})


class _QuietHandler(WSGIRequestHandler):
    """Route wsgiref's stderr access log into the package logger."""

    def log_message(self, format, *args):
        logger.debug("metrics %s - %s", self.address_string(), format % args)


class MetricsServer:
    """
    HTTP listener serving GET /metrics from a Metrics registry.

    Runs on its own thread with an independent lifecycle: a failure here is
    logged by the caller and does not affect the proxy listeners.
    """

    def __init__(self, metrics: Metrics, address: str):
        self.metrics = metrics
        self.address_spec = address
        self._httpd: Optional[WSGIServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        if self._httpd is None:
            return None
        return self._httpd.server_address[:2]

    def start(self) -> None:
        """
        Bind and start serving in a background thread.

        Raises:
            OSError: If the address cannot be bound.
        """
        host, port = parse_address(self.address_spec)
        app = make_wsgi_app(self.metrics.registry)
        self._httpd = make_server(host or "0.0.0.0", port, app, handler_class=_QuietHandler)

        self._thread = threading.Thread(
            target=self._httpd.serve_forever,
            name="wsoos-metrics",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Starting metrics server on {self.address_spec}")

    def stop(self) -> None:
        if self._httpd is None:
            return
        self._httpd.shutdown()
        self._httpd.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
        self._httpd = None
        logger.info("Metrics server stopped")
