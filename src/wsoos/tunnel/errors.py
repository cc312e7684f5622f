"""
Tunnel error taxonomy.

Every per-connection error is terminal for that connection only: it is
logged, reported once to metrics and the sockets are closed. ListenError is
the only class that affects other connections (it stops the whole server).
"""

from typing import Optional


class ProxyError(Exception):
    """Base class for tunnel errors."""

    # Label used for wsoos_errors_total{type=...}
    metric_type = "proxy"


class HandshakeError(ProxyError):
    """Writing the handshake response (or the TLS handshake) failed."""

    metric_type = "handshake"


class DialError(ProxyError):
    """The backend address could not be reached."""

    metric_type = "destination"


class PayloadDiscardError(ProxyError):
    """The client closed or stalled before sending the initial payload."""

    metric_type = "payload"


class RelayError(ProxyError):
    """A copy direction failed with an I/O error."""

    metric_type = "relay"

    def __init__(self, direction: str, cause: Optional[BaseException] = None):
        self.direction = direction
        self.cause = cause
        message = f"failed to copy {direction}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class ListenError(ProxyError):
    """A primary listener could not be set up."""

    metric_type = "listen"

    def __init__(self, listener: str, cause: Optional[BaseException] = None):
        self.listener = listener
        self.cause = cause
        message = f"{listener} server failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
