"""
Unit tests for the metrics collector and /metrics endpoint.
"""

import urllib.request

from prometheus_client import CollectorRegistry

from conftest import scraped_value

from wsoos.metrics import MAX_ERROR_LABEL, Metrics, MetricsServer


class TestMetrics:
    """Tests for the recording interface."""

    def test_disabled_is_noop(self):
        metrics = Metrics(enabled=False)

        metrics.record_connection("http", "success")
        metrics.record_connection_closed()
        metrics.record_bytes_transferred("src_to_dst", 10)
        metrics.record_connection_duration("http", 1.5)
        metrics.record_error("handshake", "boom")

        assert metrics.connections_total is None
        assert metrics.sample("wsoos_connections_active") is None

    def test_register_is_idempotent(self):
        registry = CollectorRegistry()
        metrics = Metrics(enabled=True, registry=registry)

        metrics.register()
        metrics.register()

        metrics.record_connection("http", "success")
        assert metrics.sample(
            "wsoos_connections_total", {"type": "http", "status": "success"}
        ) == 1.0

    def test_two_collectors_in_one_process(self):
        first = Metrics(enabled=True)
        second = Metrics(enabled=True)

        first.record_connection("tls", "success")

        assert first.sample("wsoos_connections_active") == 1.0
        assert second.sample("wsoos_connections_active") == 0.0

    def test_active_gauge_tracks_connection_and_close(self, metrics):
        metrics.record_connection("http", "success")
        metrics.record_connection("http", "failed")
        assert metrics.sample("wsoos_connections_active") == 2.0

        metrics.record_connection_closed()
        metrics.record_connection_closed()
        assert metrics.sample("wsoos_connections_active") == 0.0

    def test_bytes_by_direction(self, metrics):
        metrics.record_bytes_transferred("src_to_dst", 100)
        metrics.record_bytes_transferred("src_to_dst", 50)
        metrics.record_bytes_transferred("dst_to_src", 7)

        assert metrics.sample("wsoos_bytes_transferred_total", {"direction": "src_to_dst"}) == 150.0
        assert metrics.sample("wsoos_bytes_transferred_total", {"direction": "dst_to_src"}) == 7.0

    def test_duration_histogram(self, metrics):
        metrics.record_connection_duration("tls-stunnel", 2.5)

        assert metrics.sample("wsoos_connection_duration_seconds_count", {"type": "tls-stunnel"}) == 1.0
        assert metrics.sample("wsoos_connection_duration_seconds_sum", {"type": "tls-stunnel"}) == 2.5

    def test_error_label_clipped(self, metrics):
        long_message = "x" * (MAX_ERROR_LABEL + 50)
        metrics.record_error("destination", long_message)

        assert metrics.sample(
            "wsoos_errors_total",
            {"type": "destination", "error": "x" * MAX_ERROR_LABEL},
        ) == 1.0

    def test_recording_failure_does_not_raise(self, metrics):
        metrics.record_bytes_transferred("src_to_dst", -1)  # Counters reject negatives


class TestMetricsServer:
    """Tests for the /metrics HTTP endpoint."""

    def test_serves_exposition(self, metrics, free_port):
        metrics.record_connection("http", "success")
        server = MetricsServer(metrics, f"127.0.0.1:{free_port}")
        server.start()
        try:
            host, port = server.address
            with urllib.request.urlopen(f"http://{host}:{port}/metrics", timeout=5) as response:
                body = response.read().decode()
        finally:
            server.stop()

        assert scraped_value(
            body, "wsoos_connections_total", {"type": "http", "status": "success"}
        ) == 1.0
        assert scraped_value(body, "wsoos_connections_active") == 1.0

    def test_stop_before_start(self, metrics):
        MetricsServer(metrics, "127.0.0.1:0").stop()
