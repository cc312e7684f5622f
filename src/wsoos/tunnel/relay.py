"""
=============================================================================
BIDIRECTIONAL RELAY
=============================================================================

Splices two open connections by copying bytes in both directions on two
threads.

    ┌──────────┐   src_to_dst (thread 1)   ┌──────────┐
    │   src    │ ────────────────────────► │   dst    │
    │          │ ◄──────────────────────── │          │
    └──────────┘   dst_to_src (thread 2)   └──────────┘
                          │
                          ▼
                 results: Queue(maxsize=2)
                          │
                 start() takes ONE item and returns

=============================================================================
FIRST COMPLETION WINS
=============================================================================

start() returns as soon as either direction finishes (EOF or error). It
does not wait for the other one. The caller then closes both sockets,
which wakes the remaining copy thread; anything that thread had not yet
forwarded is dropped. A peer that stops reading can therefore never hold
the session open after the other side is done, and data still in flight
on the open direction may be truncated.

The queue has room for both results, so the late thread never blocks when
it reports after start() has already returned.

=============================================================================
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional

from ..core.connection import Connection, ConnectionState
from ..metrics import Metrics
from .errors import RelayError


logger = logging.getLogger(__name__)


SRC_TO_DST = "src_to_dst"
DST_TO_SRC = "dst_to_src"


@dataclass
class _DirectionResult:
    direction: str
    error: Optional[RelayError] = None


@dataclass
class RelayResult:
    """
    Outcome of Relay.start().

    Attributes:
        direction: The direction that finished first.
        error: RelayError if that direction failed, None on clean EOF.
        bytes_transferred: Bytes copied per direction when start() returned.
    """

    direction: str
    error: Optional[RelayError] = None
    bytes_transferred: Dict[str, int] = field(default_factory=dict)


class ByteCounter:
    """
    Read side of one copy direction, reporting every chunk to metrics.
    """

    def __init__(self, conn: Connection, metrics: Metrics, direction: str):
        self.conn = conn
        self.metrics = metrics
        self.direction = direction
        self.total = 0

    def recv(self, size: int) -> bytes:
        data = self.conn.recv(size)
        if data:
            self.total += len(data)
            self.metrics.record_bytes_transferred(self.direction, len(data))
        return data


class Relay:
    """
    Copies bytes between two connections until the first direction ends.

    Usage:
        relay = Relay(metrics, buffer_size=32768)
        result = relay.start(backend, client)
        # close both connections now
    """

    def __init__(self, metrics: Metrics, buffer_size: int = 32 * 1024):
        self.metrics = metrics
        self.buffer_size = buffer_size

    def start(self, src: Connection, dst: Connection) -> RelayResult:
        """
        Start both copy threads and block until the first one finishes.

        Args:
            src: First connection (read by src_to_dst).
            dst: Second connection (read by dst_to_src).

        Returns:
            RelayResult for the first finished direction.
        """
        src.state = ConnectionState.RELAYING
        dst.state = ConnectionState.RELAYING

        results: "queue.Queue[_DirectionResult]" = queue.Queue(maxsize=2)
        forward = ByteCounter(src, self.metrics, SRC_TO_DST)
        backward = ByteCounter(dst, self.metrics, DST_TO_SRC)

        for reader, writer in ((forward, dst), (backward, src)):
            threading.Thread(
                target=self._copy,
                args=(reader, writer, results),
                name=f"relay-{src.id}-{reader.direction}",
                daemon=True,
            ).start()

        first = results.get()

        return RelayResult(
            direction=first.direction,
            error=first.error,
            bytes_transferred={SRC_TO_DST: forward.total, DST_TO_SRC: backward.total},
        )

    def _copy(self, reader: ByteCounter, writer: Connection, results: queue.Queue) -> None:
        """Copy until EOF or error, then report exactly one result."""
        try:
            while True:
                data = reader.recv(self.buffer_size)
                if not data:
                    break
                writer.sendall(data)
        except Exception as e:
            results.put(_DirectionResult(reader.direction, RelayError(reader.direction, e)))
            return

        logger.debug(f"Data transfer completed: direction={reader.direction} bytes={reader.total}")
        results.put(_DirectionResult(reader.direction))
