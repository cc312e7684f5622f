"""
=============================================================================
HANDSHAKE NEGOTIATION
=============================================================================

Middleboxes that only allow "web" traffic look at the first bytes the
server sends back. This module writes a fixed response that makes the flow
look like either a WebSocket upgrade or a plain custom HTTP reply. The
client's own request is never parsed.

=============================================================================
WIRE FORMAT
=============================================================================

Custom status code configured (e.g. "200"):

    HTTP/1.1 200 Ok\\r\\n
    \\r\\n

Default (WebSocket upgrade):

    HTTP/1.1 101 Switching Protocols\\r\\n
    Upgrade: websocket\\r\\n
    Connection: Upgrade\\r\\n
    Sec-WebSocket-Accept: <base64(sha1(WEBSOCKET_KEY + WEBSOCKET_GUID))>\\r\\n
    \\r\\n

The accept value is computed from a hardcoded key, not from the client's
Sec-WebSocket-Key (which is never read), so the response is constant.

=============================================================================
PAYLOAD DISCARD
=============================================================================

After the response, clients such as HTTP Injector send their HTTP request
("payload") before starting SSH. discard_payload() reads and drops at least
MIN_PAYLOAD_BYTES of it (up to one DISCARD_BUFFER_SIZE read batch) so the
backend only ever sees the SSH stream.

=============================================================================
"""

import base64
import hashlib
import logging
from typing import Optional

from ..core.connection import Connection, ConnectionState
from .errors import HandshakeError, PayloadDiscardError


logger = logging.getLogger(__name__)


WEBSOCKET_GUID = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"
WEBSOCKET_KEY = "Y2FmcnQ2NTRlY2Z2Z3ludTg="
DEFAULT_HANDSHAKE_STATUS = "101 Switching Protocols"

DISCARD_BUFFER_SIZE = 32 * 1024
MIN_PAYLOAD_BYTES = 5


def websocket_accept(key: str = WEBSOCKET_KEY) -> str:
    """Compute the Sec-WebSocket-Accept value for a key."""
    digest = hashlib.sha1((key + WEBSOCKET_GUID).encode("ascii")).digest()
    return base64.b64encode(digest).decode("ascii")


def build_response(handshake_code: Optional[str] = None) -> bytes:
    """
    Build the handshake response bytes.

    Args:
        handshake_code: Custom status code ("200", "403", ...). Empty or
                        None selects the WebSocket upgrade response.
    """
    if handshake_code:
        return f"HTTP/1.1 {handshake_code} Ok\r\n\r\n".encode("utf-8")

    return (
        f"HTTP/1.1 {DEFAULT_HANDSHAKE_STATUS}\r\n"
        "Upgrade: websocket\r\n"
        "Connection: Upgrade\r\n"
        f"Sec-WebSocket-Accept: {websocket_accept()}\r\n\r\n"
    ).encode("utf-8")


class HandshakeNegotiator:
    """
    Writes the handshake response and discards the client's payload.

    Usage:
        negotiator = HandshakeNegotiator(config.handshake_code)
        negotiator.perform_handshake(conn)
        negotiator.discard_payload(conn)
    """

    def __init__(self, handshake_code: Optional[str] = None):
        self.handshake_code = handshake_code or ""
        self._response = build_response(self.handshake_code)

    def perform_handshake(self, conn: Connection) -> None:
        """
        Write the handshake response. Never reads from the client.

        Raises:
            HandshakeError: If the write fails.
        """
        conn.state = ConnectionState.HANDSHAKING
        try:
            conn.sendall(self._response)
        except OSError as e:
            if self.handshake_code:
                raise HandshakeError(f"failed to write custom handshake response: {e}") from e
            raise HandshakeError(f"failed to write websocket handshake response: {e}") from e

    def discard_payload(self, conn: Connection) -> int:
        """
        Read and drop the client's initial payload.

        Reads into a DISCARD_BUFFER_SIZE buffer until at least
        MIN_PAYLOAD_BYTES have arrived.

        Returns:
            Number of bytes discarded.

        Raises:
            PayloadDiscardError: EOF, timeout or socket error before
                                 MIN_PAYLOAD_BYTES were read.
        """
        conn.state = ConnectionState.DISCARDING
        buffer = bytearray(DISCARD_BUFFER_SIZE)
        view = memoryview(buffer)
        total = 0

        try:
            while total < MIN_PAYLOAD_BYTES:
                count = conn.recv_into(view[total:])
                if count == 0:
                    raise PayloadDiscardError(
                        f"failed to discard initial payload: unexpected EOF after {total} bytes"
                    )
                total += count
        except OSError as e:
            raise PayloadDiscardError(f"failed to discard initial payload: {e}") from e

        logger.debug(f"[{conn.id}] Discarded {total} payload bytes")
        return total
