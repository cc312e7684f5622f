"""
pytest configuration and fixtures.
"""

import shutil
import socket
import subprocess
import threading
import time
from typing import Generator, List, Optional, Tuple
import pytest
from prometheus_client.parser import text_string_to_metric_families

# Add src to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from wsoos import ProxyConfig, ProxyServer, Metrics


BACKEND_GREETING = b"SSH-2.0-wsoos-test\r\n"


def recv_exact(sock: socket.socket, size: int) -> bytes:
    """Read exactly size bytes or fail the test on EOF."""
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            raise AssertionError(f"EOF after {len(data)} of {size} bytes: {data!r}")
        data += chunk
    return data


def recv_until_closed(sock: socket.socket) -> bytes:
    data = b""
    while True:
        try:
            chunk = sock.recv(65536)
        except (ConnectionResetError, socket.timeout):
            return data
        if not chunk:
            return data
        data += chunk


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll predicate until it is true or timeout expires."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def scraped_value(body: str, name: str, labels: Optional[dict] = None) -> Optional[float]:
    """Value of one sample in a /metrics text body, matched on name and labels."""
    for family in text_string_to_metric_families(body):
        for sample in family.samples:
            if sample.name == name and sample.labels == (labels or {}):
                return sample.value
    return None


class EchoBackend:
    """
    Stub SSH backend: sends a greeting on connect, then echoes.

    The greeting only reaches the client once the proxy relay runs, so a
    client that has read it knows discard is over.
    """

    def __init__(self, greeting: bytes = BACKEND_GREETING):
        self.greeting = greeting
        self.accepted = 0
        self.received: List[bytes] = []
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind(("127.0.0.1", 0))
        self._sock.listen(16)
        self._running = True
        self._thread = threading.Thread(target=self._accept_loop, daemon=True)

    @property
    def address(self) -> str:
        return f"127.0.0.1:{self._sock.getsockname()[1]}"

    def start(self) -> "EchoBackend":
        self._thread.start()
        return self

    def _accept_loop(self):
        while self._running:
            try:
                client, _ = self._sock.accept()
            except OSError:
                return
            self.accepted += 1
            self.received.append(b"")
            index = len(self.received) - 1
            threading.Thread(target=self._echo, args=(client, index), daemon=True).start()

    def _echo(self, client: socket.socket, index: int):
        with client:
            try:
                if self.greeting:
                    client.sendall(self.greeting)
                while True:
                    data = client.recv(65536)
                    if not data:
                        return
                    self.received[index] += data
                    client.sendall(data)
            except OSError:
                return

    def stop(self):
        self._running = False
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()


class TestServer:
    """Runs a ProxyServer with start()/stop() around a test."""

    __test__ = False

    def __init__(self, config: ProxyConfig, metrics: Optional[Metrics] = None):
        self.server = ProxyServer(config, metrics=metrics)

    @property
    def metrics(self) -> Metrics:
        return self.server.metrics

    @property
    def address(self) -> Tuple[str, int]:
        return self.server.address

    @property
    def tls_address(self) -> Tuple[str, int]:
        return self.server.tls_address

    def connect(self, tls: bool = False, timeout: float = 5.0) -> socket.socket:
        address = self.tls_address if tls else self.address
        sock = socket.create_connection(address, timeout=timeout)
        return sock

    def start(self) -> "TestServer":
        self.server.start()
        return self

    def stop(self):
        self.server.stop()


def make_config(**overrides) -> ProxyConfig:
    """Test configuration bound to ephemeral loopback ports."""
    values = dict(
        address="127.0.0.1:0",
        tls_address="127.0.0.1:0",
        dst_address="127.0.0.1:1",
        timeout=2,
        log_level="debug",
    )
    values.update(overrides)
    return ProxyConfig(**values)


@pytest.fixture
def free_port() -> int:
    """Get a free port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


@pytest.fixture
def echo_backend() -> Generator[EchoBackend, None, None]:
    """Stub backend that greets and echoes."""
    backend = EchoBackend().start()
    yield backend
    backend.stop()


@pytest.fixture
def metrics() -> Metrics:
    """Enabled metrics collector with a private registry."""
    return Metrics(enabled=True)


@pytest.fixture
def tls_cert(tmp_path) -> Tuple[str, str]:
    """Self-signed (cert, key) PEM pair generated with the openssl CLI."""
    openssl = shutil.which("openssl")
    if openssl is None:
        pytest.skip("openssl CLI not available")

    cert = tmp_path / "cert.pem"
    key = tmp_path / "key.pem"
    result = subprocess.run(
        [
            openssl, "req", "-x509", "-newkey", "rsa:2048", "-nodes",
            "-keyout", str(key), "-out", str(cert),
            "-days", "1", "-subj", "/CN=localhost",
        ],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.PIPE,
        timeout=60,
    )
    if result.returncode != 0:
        pytest.skip(f"openssl failed: {result.stderr.decode(errors='replace')}")
    return str(cert), str(key)


@pytest.fixture
def proxy_factory() -> Generator:
    """Start ProxyServers from config overrides; all are stopped afterwards."""
    servers: List[TestServer] = []

    def factory(metrics: Optional[Metrics] = None, **overrides) -> TestServer:
        server = TestServer(make_config(**overrides), metrics=metrics)
        servers.append(server)
        return server.start()

    yield factory

    for server in servers:
        server.stop()
